"""Request pipeline for analytics data.

credential -> principal -> scope -> cache (or warehouse + aggregation)
-> response, with one audit event per request whatever the outcome.
"""
import logging
import time
import uuid
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .access_scope import AccessScopeExpander
from .aggregation import AggregationEngine
from .audit import AuditEvent, AuditSink, NullAuditSink, create_audit_sink
from .auth_context import AuthContextResolver, SqlIdentityStore
from .authorization_store import SqlAuthorizationStore
from .cache import HotCache, NullHotCache, build_cache_key, create_hot_cache
from .errors import AnalyticsError, InvalidRequestError
from .logging_config import log_error, log_request, log_response
from .metrics import analytics_request_duration_seconds, analytics_requests_total
from .models import AnalyticsRequest, DateRange, QueryScope
from .query_planner import QueryPlanner
from .response import NO_APPS_MESSAGE, AnalyticsResult, ResponseAssembler
from .warehouse import BigQueryClient

logger = logging.getLogger(__name__)


def parse_request(body: Any) -> AnalyticsRequest:
    """Validate a request body, mapping validation failures to ``InvalidRequestError``."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return AnalyticsRequest.model_validate(body)
    except ValidationError as e:
        problems = [
            {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidRequestError("Invalid analytics request", details={"errors": problems}) from e


class AnalyticsService:
    """Serves one analytics request end to end. Components are injected."""

    def __init__(
        self,
        resolver: AuthContextResolver,
        expander: AccessScopeExpander,
        planner: QueryPlanner,
        cache: Optional[HotCache[AnalyticsResult]] = None,
        engine: Optional[AggregationEngine] = None,
        assembler: Optional[ResponseAssembler] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.resolver = resolver
        self.expander = expander
        self.planner = planner
        self.cache = cache if cache is not None else NullHotCache(AnalyticsResult)
        self.engine = engine or AggregationEngine()
        self.assembler = assembler or ResponseAssembler()
        self.audit = audit if audit is not None else NullAuditSink()

    async def handle(
        self,
        credential: Optional[str],
        body: Any,
        request_id: Optional[str] = None,
        endpoint: str = "/v1/aso-data",
    ) -> Dict[str, Any]:
        """
        Authenticate, scope, compute and assemble one response.

        Raises:
            AnalyticsError: Any caller-visible failure; already audited
        """
        request_id = request_id or str(uuid.uuid4())
        started = time.perf_counter()
        event = AuditEvent(request_id=request_id)
        log_request(logger, request_id, endpoint)

        try:
            principal = await self.resolver.resolve(credential)
            event.principal_id = principal.principal_id

            request = parse_request(body)
            event.date_range = request.date_range.as_dict()
            event.requested_app_ids = list(request.app_ids)

            scope = await self.expander.expand(principal, request.app_ids, request.organization_id)
            event.scope_kind = scope.kind.value
            event.org_ids = list(scope.org_ids)
            event.authorized_app_ids = list(scope.app_ids)
            event.dropped_app_ids = list(scope.dropped_app_ids)

            comparison_range = request.effective_comparison_range()
            message = None
            if scope.is_empty:
                # Nothing to read; skip the warehouse and do not cache
                result = AnalyticsResult.empty(comparison=comparison_range is not None)
                from_cache = False
                message = NO_APPS_MESSAGE
            else:
                key = build_cache_key(scope, request.date_range, comparison_range, request.traffic_sources)
                result, from_cache = await self.cache.get_or_compute(
                    key,
                    lambda: self._compute(request, scope, comparison_range),
                )

            response = self.assembler.build(
                request, scope, result, request_id, from_cache=from_cache, message=message
            )
            if message:
                response.setdefault("data", [])

            event.row_count = result.row_count
            event.from_cache = from_cache
        except AnalyticsError as e:
            self._finish(event, started, outcome=e.outcome, error_kind=e.kind)
            log_error(logger, request_id, e, endpoint=endpoint)
            raise
        except Exception as e:
            self._finish(event, started, outcome="error", error_kind="InternalError")
            logger.exception(f"Unexpected error serving request {request_id}")
            raise AnalyticsError("An internal error occurred") from e

        duration_ms = self._finish(event, started, outcome="success")
        log_response(
            logger, request_id, "success", duration_ms,
            rows=result.row_count, from_cache=from_cache, apps=len(scope.app_ids),
        )
        return response

    async def _compute(
        self,
        request: AnalyticsRequest,
        scope: QueryScope,
        comparison_range: Optional[DateRange],
    ) -> AnalyticsResult:
        query = await self.planner.execute(scope, request.date_range, comparison_range)

        # Sources are reported from the unfiltered rows so the dashboard can offer them all
        available = sorted({row.traffic_source for row in query.rows})
        rows = query.rows
        if request.traffic_sources:
            wanted = set(request.traffic_sources)
            rows = [row for row in rows if row.traffic_source in wanted]

        return AnalyticsResult(
            aggregated=self.engine.reduce(rows, comparison=comparison_range is not None),
            rows=rows,
            available_traffic_sources=available,
            row_count=len(rows),
            query_duration_ms=query.duration_ms,
        )

    def _finish(self, event: AuditEvent, started: float, outcome: str, error_kind: Optional[str] = None) -> float:
        elapsed = time.perf_counter() - started
        event.latency_ms = round(elapsed * 1000, 2)
        event.outcome = outcome
        event.error_kind = error_kind

        analytics_requests_total.labels(outcome=outcome, error_kind=error_kind or "").inc()
        analytics_request_duration_seconds.labels(outcome=outcome).observe(elapsed)
        self.audit.record(event)
        return event.latency_ms

    async def aclose(self) -> None:
        await self.audit.drain()
        await self.planner.warehouse.aclose()


def create_analytics_service() -> AnalyticsService:
    """Wire the production components from settings."""
    from .database import get_postgres_session_maker

    session_maker = get_postgres_session_maker()
    return AnalyticsService(
        resolver=AuthContextResolver(SqlIdentityStore(session_maker)),
        expander=AccessScopeExpander(SqlAuthorizationStore(session_maker)),
        planner=QueryPlanner(BigQueryClient()),
        cache=create_hot_cache(AnalyticsResult),
        audit=create_audit_sink(session_maker),
    )
