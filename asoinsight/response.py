"""Wire response assembly.

``AnalyticsResult`` is the value held by the hot cache. ``ResponseAssembler``
turns it into the JSON body for one request, adding per-request metadata
(request id, cache flag, timestamp) that must never be cached.
"""
import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .aggregation import AggregatedResult, AggregationEngine
from .models import AnalyticsRequest, FactRow, PeriodLabel, QueryScope, ResponseFormat

NO_APPS_MESSAGE = "No apps attached to this organization"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AnalyticsResult(BaseModel):
    """Computed result for one normalized query."""
    aggregated: AggregatedResult
    rows: List[FactRow] = Field(default_factory=list)
    available_traffic_sources: List[str] = Field(default_factory=list)
    row_count: int = 0
    query_duration_ms: float = 0.0
    computed_at: dt.datetime = Field(default_factory=_utcnow)

    @classmethod
    def empty(cls, comparison: bool = False) -> "AnalyticsResult":
        return cls(aggregated=AggregationEngine().reduce([], comparison=comparison))


class ResponseAssembler:
    """Builds the response body from an ``AnalyticsResult``."""

    def build(
        self,
        request: AnalyticsRequest,
        scope: QueryScope,
        result: AnalyticsResult,
        request_id: str,
        from_cache: bool = False,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        aggregated = result.aggregated
        current = aggregated.current

        body: Dict[str, Any] = {
            "summary": current.summary.model_dump(mode="json", by_alias=True),
            "timeseries": [p.model_dump(mode="json", by_alias=True) for p in current.timeseries],
            "breakdown": [b.model_dump(mode="json", by_alias=True) for b in current.breakdown],
        }

        if aggregated.comparison is not None:
            body["comparison"] = aggregated.comparison.model_dump(mode="json", by_alias=True)

        if request.include_raw_rows:
            body["rawRows"] = [row.to_wire() for row in result.rows]

        if request.response_format is ResponseFormat.LEGACY:
            # Legacy clients chart the requested range only
            body["data"] = [
                row.to_legacy() for row in result.rows if row.period_label is PeriodLabel.CURRENT
            ]

        body["scope"] = {
            "organization_id": scope.primary_org_id,
            "org_id": scope.primary_org_id,
            "app_ids": list(scope.app_ids),
            "date_range": request.date_range.as_dict(),
            "scope_source": scope.source,
            "metrics": request.metrics,
            "traffic_sources": request.traffic_sources or None,
        }

        body["meta"] = {
            "rowCount": result.row_count,
            "queryDurationMs": result.query_duration_ms,
            "availableTrafficSources": list(result.available_traffic_sources),
            "accessibleAppIds": list(scope.app_ids),
            "fromCache": from_cache,
            "filteredByTrafficSource": bool(request.traffic_sources),
            "timestamp": _utcnow().isoformat(),
            "requestId": request_id,
        }

        if message:
            body["message"] = message
        return body
