"""
Tests for audit sinks.

Tests cover:
- Fire-and-forget recording
- Database persistence
- Log sink output
- Failure isolation
"""
import logging
from unittest.mock import patch

import pytest
from sqlalchemy import select

from asoinsight.audit import AuditEvent, DatabaseAuditSink, LoggingAuditSink, NullAuditSink, create_audit_sink
from asoinsight.db_models import AnalyticsAuditLog


def event(**overrides):
    values = {
        "request_id": "req-1",
        "principal_id": "user-1",
        "scope_kind": "restricted",
        "org_ids": ["org-a", "org-b"],
        "requested_app_ids": ["app1", "app9"],
        "authorized_app_ids": ["app1"],
        "dropped_app_ids": ["app9"],
        "date_range": {"start": "2025-01-01", "end": "2025-01-07"},
        "row_count": 14,
        "latency_ms": 12.5,
    }
    values.update(overrides)
    return AuditEvent(**values)


async def test_database_sink_persists_event(session_maker):
    sink = DatabaseAuditSink(session_maker)

    sink.record(event())
    await sink.drain()

    async with session_maker() as session:
        rows = (await session.execute(select(AnalyticsAuditLog))).scalars().all()

    assert len(rows) == 1
    assert rows[0].request_id == "req-1"
    assert rows[0].dropped_app_ids == ["app9"]
    assert rows[0].outcome == "success"
    assert rows[0].from_cache is False


async def test_database_failure_is_swallowed():
    def broken_session_maker():
        raise RuntimeError("database down")

    sink = DatabaseAuditSink(broken_session_maker)
    sink.record(event())
    await sink.drain()


async def test_logging_sink_writes_structured_line():
    audit_logger = logging.getLogger("test.audit")
    sink = LoggingAuditSink(audit_logger)

    with patch.object(audit_logger, "info") as info:
        sink.record(event(outcome="denied", error_kind="AccessDenied"))
        await sink.drain()

    message = info.call_args.args[0]
    payload = info.call_args.kwargs["extra"]["audit"]
    assert "outcome=denied" in message
    assert payload["error_kind"] == "AccessDenied"
    assert payload["org_ids"] == ["org-a", "org-b"]


async def test_record_does_not_wait_for_write():
    sink = LoggingAuditSink(logging.getLogger("test.audit"))

    sink.record(event())
    assert len(sink._tasks) == 1
    await sink.drain()
    assert len(sink._tasks) == 0


def test_create_audit_sink_respects_settings():
    with patch("asoinsight.audit.settings") as mock_settings:
        mock_settings.audit_enabled = False
        assert isinstance(create_audit_sink(), NullAuditSink)

        mock_settings.audit_enabled = True
        mock_settings.audit_backend = "log"
        assert isinstance(create_audit_sink(), LoggingAuditSink)

        mock_settings.audit_backend = "kafka"
        with pytest.raises(ValueError):
            create_audit_sink()
