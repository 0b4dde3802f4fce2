"""Scoped, cached ASO analytics aggregation over a BigQuery warehouse."""

from .models import (  # noqa: F401
    AnalyticsRequest,
    DateRange,
    FactRow,
    PeriodLabel,
    Principal,
    QueryScope,
    ResponseFormat,
    ScopeKind,
)
from .errors import (  # noqa: F401
    AnalyticsError,
    InvalidRequestError,
    MalformedCredentialError,
    UnauthenticatedError,
    NoAccessibleOrganizationError,
    AccessDeniedError,
    WarehouseUnavailableError,
    WarehouseQueryRejectedError,
    CacheCorruptionError,
    create_error_response,
)
from .logging_config import setup_logging, log_request, log_response, log_error  # noqa: F401
from .config import settings  # noqa: F401
from .access_scope import AccessScopeExpander, OverAskPolicy, ScopeSource  # noqa: F401
from .aggregation import AggregationEngine, AggregatedResult  # noqa: F401
from .cache import HotCache, MemoryHotCache, NullHotCache, RedisHotCache, build_cache_key  # noqa: F401
from .query_planner import QueryPlanner, QueryResult  # noqa: F401
from .response import AnalyticsResult, ResponseAssembler  # noqa: F401
from .audit import AuditEvent, AuditSink  # noqa: F401
from .service import AnalyticsService, create_analytics_service  # noqa: F401
