"""Warehouse query construction and execution.

One statement per invocation. A period comparison spans both ranges in the
same statement and every row is tagged ``current`` or ``previous``. The
authorized app set is always bound as a named array parameter; application
ids are never interpolated into SQL text.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import settings
from .errors import AnalyticsError, WarehouseUnavailableError
from .metrics import warehouse_failures_total, warehouse_query_duration_seconds
from .models import DateRange, FactRow, PeriodLabel, QueryScope
from .resilience import retry_with_backoff
from .warehouse import QueryParameter, WarehouseClient

logger = logging.getLogger(__name__)


def _count(value: Any) -> int:
    """Metric cell as an int. FLOAT64 and NUMERIC cells arrive as "120.0" or "1.2E2"."""
    if value is None or value == "":
        return 0
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, OverflowError) as e:
        raise ValueError(f"Not a metric value: {value!r}") from e


_SELECT = """SELECT
  DATE(date) AS date,
  COALESCE(app_id, client) AS app_id,
  traffic_source,
  impressions,
  product_page_views,
  downloads{period_column}
FROM `{table}`
WHERE COALESCE(app_id, client) IN UNNEST(@app_ids)
  AND {date_filter}
ORDER BY date, app_id, traffic_source"""

_PERIOD_COLUMN = """,
  CASE WHEN DATE(date) BETWEEN @start_date AND @end_date
    THEN 'current' ELSE 'previous' END AS period_label"""

_CURRENT_RANGE = "DATE(date) BETWEEN @start_date AND @end_date"
_BOTH_RANGES = (
    "(DATE(date) BETWEEN @start_date AND @end_date"
    " OR DATE(date) BETWEEN @previous_start_date AND @previous_end_date)"
)


@dataclass(frozen=True)
class PlannedQuery:
    sql: str
    params: List[QueryParameter]
    shape: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryResult:
    rows: List[FactRow]
    duration_ms: float


class QueryPlanner:
    """Builds and runs the single fact-row query for a scope."""

    def __init__(self, warehouse: WarehouseClient, table: Optional[str] = None, timeout: Optional[float] = None):
        self.warehouse = warehouse
        self.table = table or self._default_table()
        self.timeout = timeout or settings.warehouse_timeout

    def _default_table(self) -> str:
        name = f"{settings.bigquery_dataset}.{settings.bigquery_table}"
        if self.warehouse.project_id:
            return f"{self.warehouse.project_id}.{name}"
        return name

    def build(
        self,
        scope: QueryScope,
        date_range: DateRange,
        comparison_range: Optional[DateRange] = None,
    ) -> PlannedQuery:
        params = [
            QueryParameter("app_ids", "STRING", list(scope.app_ids), array=True),
            QueryParameter("start_date", "DATE", date_range.start.isoformat()),
            QueryParameter("end_date", "DATE", date_range.end.isoformat()),
        ]
        if comparison_range is not None:
            params.append(QueryParameter("previous_start_date", "DATE", comparison_range.start.isoformat()))
            params.append(QueryParameter("previous_end_date", "DATE", comparison_range.end.isoformat()))
            sql = _SELECT.format(period_column=_PERIOD_COLUMN, table=self.table, date_filter=_BOTH_RANGES)
        else:
            sql = _SELECT.format(period_column="", table=self.table, date_filter=_CURRENT_RANGE)

        shape = {
            "query_params": [p.shape() for p in params],
            "app_count": len(scope.app_ids),
            "range_days": date_range.days,
            "comparison_days": comparison_range.days if comparison_range else 0,
        }
        return PlannedQuery(sql=sql, params=params, shape=shape)

    async def execute(
        self,
        scope: QueryScope,
        date_range: DateRange,
        comparison_range: Optional[DateRange] = None,
    ) -> QueryResult:
        """
        Run the query for ``scope`` and return its rows tagged by period.

        Raises:
            WarehouseUnavailableError: Timeout or transient failure, after retries
            WarehouseQueryRejectedError: The warehouse refused the statement
        """
        if scope.is_empty:
            return QueryResult(rows=[], duration_ms=0.0)

        planned = self.build(scope, date_range, comparison_range)
        started = time.perf_counter()
        try:
            if settings.retry_enabled:
                raw_rows = await retry_with_backoff(
                    self._run_once,
                    planned,
                    max_attempts=settings.retry_max_attempts,
                    initial_delay=settings.retry_initial_delay,
                    max_delay=settings.retry_max_delay,
                    exponential_base=settings.retry_exponential_base,
                    jitter=settings.retry_jitter,
                    service_name="warehouse",
                )
            else:
                raw_rows = await self._run_once(planned)
        except AnalyticsError as e:
            warehouse_failures_total.labels(kind=e.kind).inc()
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                f"Warehouse query failed: {e.kind}",
                extra={**planned.shape, "duration_ms": duration_ms},
            )
            raise

        elapsed = time.perf_counter() - started
        warehouse_query_duration_seconds.labels(
            comparison="true" if comparison_range else "false"
        ).observe(elapsed)

        rows = self._to_fact_rows(raw_rows, scope, date_range, comparison_range)
        logger.debug(
            f"Warehouse query returned {len(rows)} rows in {elapsed * 1000:.1f}ms",
            extra=planned.shape,
        )
        return QueryResult(rows=rows, duration_ms=round(elapsed * 1000, 2))

    async def _run_once(self, planned: PlannedQuery) -> List[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(
                self.warehouse.run_query(planned.sql, planned.params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise WarehouseUnavailableError("Warehouse query timed out") from e

    def _to_fact_rows(
        self,
        raw_rows: List[Dict[str, Any]],
        scope: QueryScope,
        date_range: DateRange,
        comparison_range: Optional[DateRange],
    ) -> List[FactRow]:
        rows: List[FactRow] = []
        out_of_scope = 0
        malformed = 0

        for raw in raw_rows:
            app_id = raw.get("app_id")
            if not scope.allows(app_id):
                out_of_scope += 1
                continue
            try:
                row = FactRow(
                    date=raw.get("date"),
                    app_id=app_id,
                    traffic_source=raw.get("traffic_source") or "Unknown",
                    impressions=_count(raw.get("impressions")),
                    product_page_views=_count(raw.get("product_page_views")),
                    downloads=_count(raw.get("downloads")),
                    period_label=raw.get("period_label") or PeriodLabel.CURRENT,
                )
            except (ValidationError, TypeError, ValueError):
                malformed += 1
                continue

            if not raw.get("period_label") and comparison_range is not None:
                if comparison_range.contains(row.date):
                    row = row.model_copy(update={"period_label": PeriodLabel.PREVIOUS})
                elif not date_range.contains(row.date):
                    malformed += 1
                    continue
            rows.append(row)

        if out_of_scope:
            logger.warning(
                f"Discarded {out_of_scope} warehouse rows for apps outside the query scope",
                extra={"app_count": len(scope.app_ids)},
            )
        if malformed:
            logger.warning(f"Discarded {malformed} malformed warehouse rows")
        return rows
