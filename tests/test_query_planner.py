"""
Tests for QueryPlanner.

Tests cover:
- Statement shape and bound parameters
- Single query for period comparison
- Period labels
- Scope enforcement on returned rows
- Metric conversion from string and float cells
- Timeout and warehouse error mapping
"""
import datetime as dt
from unittest.mock import patch

import pytest

from asoinsight.config import settings
from asoinsight.errors import WarehouseQueryRejectedError, WarehouseUnavailableError
from asoinsight.models import DateRange, PeriodLabel, QueryScope, ScopeKind
from asoinsight.query_planner import QueryPlanner

CURRENT = DateRange(start=dt.date(2025, 1, 1), end=dt.date(2025, 1, 7))
PREVIOUS = DateRange(start=dt.date(2024, 12, 25), end=dt.date(2024, 12, 31))


def scope(*apps):
    return QueryScope(kind=ScopeKind.RESTRICTED, org_ids=("org-a",), app_ids=tuple(apps), source="user_membership")


@pytest.fixture(autouse=True)
def no_retry(monkeypatch):
    monkeypatch.setattr(settings, "retry_enabled", False)


def test_build_binds_app_ids_as_array_parameter(warehouse):
    planned = QueryPlanner(warehouse).build(scope("app1", "app2"), CURRENT)

    params = {p.name: p for p in planned.params}
    assert params["app_ids"].array is True
    assert params["app_ids"].value == ["app1", "app2"]
    assert params["start_date"].value == "2025-01-01"
    assert "IN UNNEST(@app_ids)" in planned.sql
    assert "app1" not in planned.sql
    assert "period_label" not in planned.sql
    assert "`test-project." in planned.sql


def test_build_comparison_spans_both_ranges(warehouse):
    planned = QueryPlanner(warehouse).build(scope("app1"), CURRENT, PREVIOUS)

    names = [p.name for p in planned.params]
    assert "previous_start_date" in names and "previous_end_date" in names
    assert "period_label" in planned.sql
    assert planned.shape["comparison_days"] == 7
    # Shape is loggable: names and counts only
    assert "app1" not in str(planned.shape)


async def test_comparison_uses_exactly_one_query(warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1"), make_fact("2024-12-26", "app1")]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT, PREVIOUS)

    assert len(warehouse.calls) == 1
    labels = {r.date.isoformat(): r.period_label for r in result.rows}
    assert labels == {"2025-01-02": PeriodLabel.CURRENT, "2024-12-26": PeriodLabel.PREVIOUS}


async def test_rows_converted_from_warehouse_strings(warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-03", "app1", impressions=120, page_views=30, downloads=6)]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    fact = result.rows[0]
    assert fact.date == dt.date(2025, 1, 3)
    assert (fact.impressions, fact.product_page_views, fact.downloads) == (120, 30, 6)
    assert result.duration_ms >= 0


async def test_rows_outside_scope_are_discarded(warehouse, make_fact):
    warehouse.ignore_app_filter = True
    warehouse.rows = [make_fact("2025-01-02", "app1"), make_fact("2025-01-02", "app9")]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    assert [r.app_id for r in result.rows] == ["app1"]


async def test_null_metrics_read_as_zero(warehouse, make_fact):
    row = make_fact("2025-01-02", "app1")
    row["downloads"] = None
    warehouse.rows = [row]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)
    assert result.rows[0].downloads == 0


async def test_float_typed_metrics_are_kept(warehouse, make_fact):
    warehouse.rows = [
        make_fact("2025-01-02", "app1", impressions="120.0", page_views="1.2E1", downloads=6.0),
    ]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    assert len(result.rows) == 1
    fact = result.rows[0]
    assert (fact.impressions, fact.product_page_views, fact.downloads) == (120, 12, 6)


async def test_unparseable_metric_drops_only_that_row(warehouse, make_fact):
    warehouse.rows = [
        make_fact("2025-01-02", "app1", impressions="lots"),
        make_fact("2025-01-03", "app1"),
    ]

    result = await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    assert [r.date.isoformat() for r in result.rows] == ["2025-01-03"]


async def test_empty_scope_skips_the_warehouse(warehouse):
    result = await QueryPlanner(warehouse).execute(scope(), CURRENT)

    assert result.rows == []
    assert warehouse.calls == []


async def test_timeout_maps_to_unavailable(warehouse):
    warehouse.delay = 0.5

    with pytest.raises(WarehouseUnavailableError):
        await QueryPlanner(warehouse, timeout=0.05).execute(scope("app1"), CURRENT)


async def test_failure_log_carries_shape_and_duration(warehouse):
    warehouse.error = WarehouseUnavailableError("down")

    with patch("asoinsight.query_planner.logger") as mock_logger:
        with pytest.raises(WarehouseUnavailableError):
            await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    extra = mock_logger.error.call_args.kwargs["extra"]
    assert extra["app_count"] == 1
    assert extra["duration_ms"] >= 0
    assert "app1" not in str(extra)


async def test_rejected_query_is_not_retried(warehouse, monkeypatch):
    monkeypatch.setattr(settings, "retry_enabled", True)
    warehouse.error = WarehouseQueryRejectedError("rejected")

    with pytest.raises(WarehouseQueryRejectedError):
        await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    assert len(warehouse.calls) == 1


async def test_unavailable_is_retried(warehouse, monkeypatch):
    monkeypatch.setattr(settings, "retry_enabled", True)
    monkeypatch.setattr(settings, "retry_max_attempts", 2)
    monkeypatch.setattr(settings, "retry_initial_delay", 0.01)
    warehouse.error = WarehouseUnavailableError("down")

    with pytest.raises(WarehouseUnavailableError):
        await QueryPlanner(warehouse).execute(scope("app1"), CURRENT)

    assert len(warehouse.calls) == 2
