"""Request and domain models shared across the analytics components."""
import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PeriodLabel(str, Enum):
    """Which side of a period comparison a fact row belongs to."""
    CURRENT = "current"
    PREVIOUS = "previous"


class ResponseFormat(str, Enum):
    AGGREGATED = "aggregated"
    LEGACY = "legacy"  # raw `data` rows kept for pre-aggregation clients


class ScopeKind(str, Enum):
    RESTRICTED = "restricted"
    UNRESTRICTED = "unrestricted"


# Request keys sent by clients written against the first version of the API
LEGACY_REQUEST_KEYS = ("organizationId", "dateRange", "selectedApps")


class DateRange(BaseModel):
    """Inclusive calendar date range. Accepts ``start``/``end`` or ``from``/``to``."""

    model_config = ConfigDict(frozen=True)

    start: dt.date
    end: dt.date

    @model_validator(mode="before")
    @classmethod
    def _accept_from_to(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("start") and data.get("from"):
                data["start"] = data.pop("from")
            if not data.get("end") and data.get("to"):
                data["end"] = data.pop("to")
        return data

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("date range start must not be after its end")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: dt.date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, other: "DateRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def previous_period(self) -> "DateRange":
        """The range of equal length ending the day before this one starts."""
        end = self.start - dt.timedelta(days=1)
        return DateRange(start=end - dt.timedelta(days=self.days - 1), end=end)

    def as_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return None


def _unique(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class AnalyticsRequest(BaseModel):
    """Body of an analytics data request.

    Current clients send snake_case keys. Older dashboard builds send
    ``organizationId``/``dateRange``/``selectedApps``; those are folded into
    the same fields and switch the response to the legacy format.
    """

    model_config = ConfigDict(extra="ignore")

    organization_id: Optional[str] = None
    date_range: DateRange
    app_ids: List[str] = Field(default_factory=list)
    traffic_sources: List[str] = Field(default_factory=list)
    compare: bool = False
    comparison_range: Optional[DateRange] = None
    include_raw_rows: bool = False
    response_format: ResponseFormat = ResponseFormat.AGGREGATED
    metrics: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        legacy = any(key in data for key in LEGACY_REQUEST_KEYS)
        folded = {
            "organization_id": _first_present(data, "organization_id", "org_id", "organizationId"),
            "date_range": _first_present(data, "date_range", "dateRange"),
            "app_ids": _first_present(data, "app_ids", "selectedApps") or [],
            "traffic_sources": _first_present(data, "traffic_sources", "trafficSources") or [],
            "compare": _first_present(data, "compare", "compare_previous", "comparePrevious"),
            "comparison_range": _first_present(data, "comparison_range", "comparisonRange"),
            "include_raw_rows": _first_present(data, "include_raw_rows", "includeRawRows"),
            "metrics": data.get("metrics"),
        }
        if data.get("response_format"):
            folded["response_format"] = data["response_format"]
        elif legacy:
            folded["response_format"] = ResponseFormat.LEGACY
        return {key: value for key, value in folded.items() if value is not None}

    @field_validator("app_ids", "traffic_sources", mode="before")
    @classmethod
    def _strings_only(cls, value: Any) -> List[str]:
        # Malformed filters are rejected, never read as "no filter"
        if not isinstance(value, list):
            raise ValueError("must be a list of strings")
        if any(not isinstance(item, str) or not item.strip() for item in value):
            raise ValueError("must contain only non-empty strings")
        return _unique([item.strip() for item in value])

    @model_validator(mode="after")
    def _check_comparison(self) -> "AnalyticsRequest":
        if self.comparison_range is not None:
            self.compare = True
            if self.comparison_range.overlaps(self.date_range):
                raise ValueError("comparison range must not overlap the requested date range")
        return self

    def effective_comparison_range(self) -> Optional[DateRange]:
        """Explicit comparison range, else the preceding period when ``compare`` is set."""
        if self.comparison_range is not None:
            return self.comparison_range
        if self.compare:
            return self.date_range.previous_period()
        return None


class FactRow(BaseModel):
    """One warehouse record: a single app, date and traffic source."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    app_id: str
    traffic_source: str
    impressions: int = 0
    product_page_views: int = 0
    downloads: int = 0
    period_label: PeriodLabel = PeriodLabel.CURRENT

    @property
    def conversion_rate(self) -> Optional[float]:
        if self.product_page_views > 0:
            return self.downloads / self.product_page_views
        return None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "appId": self.app_id,
            "trafficSource": self.traffic_source,
            "impressions": self.impressions,
            "productPageViews": self.product_page_views,
            "downloads": self.downloads,
            "periodLabel": self.period_label.value,
        }

    def to_legacy(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "app_id": self.app_id,
            "traffic_source": self.traffic_source,
            "impressions": self.impressions,
            "product_page_views": self.product_page_views,
            "downloads": self.downloads,
            "conversion_rate": self.conversion_rate,
        }


@dataclass(frozen=True)
class Principal:
    """Identity resolved from a bearer credential. Never persisted."""
    principal_id: str
    home_org_id: Optional[str] = None
    is_elevated: bool = False
    role: Optional[str] = None


@dataclass(frozen=True)
class QueryScope:
    """Organizations and applications a single request may read.

    Built only by ``AccessScopeExpander``. Consumers use ``org_ids`` and
    ``app_ids``; ``kind`` exists for cache keys and audit attribution.
    """
    kind: ScopeKind
    org_ids: Tuple[str, ...]
    app_ids: Tuple[str, ...]
    source: str
    primary_org_id: Optional[str] = None
    requested_app_ids: Tuple[str, ...] = ()
    dropped_app_ids: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.app_ids

    def allows(self, app_id: str) -> bool:
        return app_id in self.app_ids
