"""Fire-and-forget audit trail of analytics reads.

Every request, successful or not, produces one ``AuditEvent``. Sinks write in
a background task so recording never delays or fails the response; write
failures are logged and counted.
"""
import asyncio
import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import settings
from .db_models import AnalyticsAuditLog
from .metrics import audit_write_failures_total

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    """Who queried which scope, and how it went."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    principal_id: Optional[str] = None
    scope_kind: Optional[str] = None
    org_ids: List[str] = Field(default_factory=list)
    requested_app_ids: List[str] = Field(default_factory=list)
    authorized_app_ids: List[str] = Field(default_factory=list)
    dropped_app_ids: List[str] = Field(default_factory=list)
    date_range: Optional[Dict[str, str]] = None
    row_count: Optional[int] = None
    latency_ms: float = 0.0
    from_cache: bool = False
    outcome: str = "success"  # success | denied | error
    error_kind: Optional[str] = None
    occurred_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


class AuditSink:
    """Base sink. ``record`` schedules ``write`` and returns immediately."""

    backend = "none"

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def record(self, event: AuditEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._safe_write(event))
        # Hold a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_write(self, event: AuditEvent) -> None:
        try:
            await self.write(event)
        except Exception as e:
            audit_write_failures_total.labels(backend=self.backend).inc()
            logger.error(
                f"Audit write failed for request {event.request_id}: {type(e).__name__}",
                extra={"event_id": event.event_id, "outcome": event.outcome},
            )

    async def write(self, event: AuditEvent) -> None:
        pass

    async def drain(self) -> None:
        """Wait for pending writes. Used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class NullAuditSink(AuditSink):
    backend = "none"


class LoggingAuditSink(AuditSink):
    """Writes each event as a structured log line."""

    backend = "log"

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        super().__init__()
        self.audit_logger = audit_logger or logging.getLogger("asoinsight.audit.events")

    async def write(self, event: AuditEvent) -> None:
        payload: Dict[str, Any] = event.model_dump(mode="json")
        self.audit_logger.info(
            f"[AUDIT] analytics_read outcome={event.outcome} request_id={event.request_id}",
            extra={"audit": payload},
        )


class DatabaseAuditSink(AuditSink):
    """Persists events to ``analytics_audit_logs``."""

    backend = "database"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        super().__init__()
        self.session_maker = session_maker

    async def write(self, event: AuditEvent) -> None:
        async with self.session_maker() as session:
            session.add(AnalyticsAuditLog(
                id=event.event_id,
                request_id=event.request_id,
                principal_id=event.principal_id,
                scope_kind=event.scope_kind,
                org_ids=event.org_ids,
                requested_app_ids=event.requested_app_ids,
                authorized_app_ids=event.authorized_app_ids,
                dropped_app_ids=event.dropped_app_ids,
                date_range=event.date_range,
                row_count=event.row_count,
                latency_ms=event.latency_ms,
                from_cache=event.from_cache,
                outcome=event.outcome,
                error_kind=event.error_kind,
                created_at=event.occurred_at,
            ))
            await session.commit()


def create_audit_sink(session_maker: Optional[async_sessionmaker[AsyncSession]] = None) -> AuditSink:
    """Build the sink selected by ``settings.audit_enabled``/``settings.audit_backend``."""
    if not settings.audit_enabled:
        return NullAuditSink()
    if settings.audit_backend == "database":
        if session_maker is None:
            from .database import get_postgres_session_maker
            session_maker = get_postgres_session_maker()
        return DatabaseAuditSink(session_maker)
    if settings.audit_backend != "log":
        raise ValueError(f"Unknown audit backend: {settings.audit_backend}")
    return LoggingAuditSink()
