"""
Tests for AnalyticsService - the full request pipeline with in-memory collaborators.

Tests cover:
- Agency delegation and link deactivation end to end
- Period comparison deltas
- Cache hits within the TTL
- Traffic-source filtering and available sources
- Empty scopes
- Audit events for success, denial and errors
"""
import asyncio

import pytest

from asoinsight.config import settings
from asoinsight.errors import (
    AccessDeniedError,
    InvalidRequestError,
    MalformedCredentialError,
    NoAccessibleOrganizationError,
    UnauthenticatedError,
    WarehouseUnavailableError,
)

from conftest import ADMIN_TOKEN, AGENCY_TOKEN, CLIENT_TOKEN, ORPHAN_TOKEN

WEEK = {"start": "2025-01-01", "end": "2025-01-07"}


@pytest.fixture(autouse=True)
def no_retry(monkeypatch):
    monkeypatch.setattr(settings, "retry_enabled", False)


def bearer(token):
    return f"Bearer {token}"


async def test_agency_reads_own_and_client_apps(analytics_service, warehouse, audit_sink, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1"), make_fact("2025-01-02", "app2")]

    body = await analytics_service.handle(
        bearer(AGENCY_TOKEN), {"date_range": WEEK, "app_ids": ["app1", "app2"]}
    )

    assert body["meta"]["accessibleAppIds"] == ["app1", "app2"]
    assert body["summary"]["impressions"] == 200
    assert body["scope"]["scope_source"] == "agency_delegation"

    await audit_sink.drain()
    event = audit_sink.events[0]
    assert event.outcome == "success"
    assert event.org_ids == ["org-a", "org-b"]
    assert event.dropped_app_ids == []


async def test_deactivated_link_recorded_as_over_ask(analytics_service, authz_store, warehouse, audit_sink, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1"), make_fact("2025-01-02", "app2")]
    authz_store.link("org-a", "org-b", active=False)

    body = await analytics_service.handle(
        bearer(AGENCY_TOKEN), {"date_range": WEEK, "app_ids": ["app1", "app2"]}
    )

    assert body["meta"]["accessibleAppIds"] == ["app1"]
    assert body["summary"]["impressions"] == 100

    await audit_sink.drain()
    assert audit_sink.events[0].dropped_app_ids == ["app2"]
    assert audit_sink.events[0].requested_app_ids == ["app1", "app2"]


async def test_period_comparison(analytics_service, warehouse, make_fact):
    current = [make_fact(f"2025-01-0{d}", "app1", downloads=10) for d in range(1, 8)]
    previous = [make_fact(f"2024-12-{d}", "app1", downloads=5) for d in range(25, 32)]
    warehouse.rows = current + previous

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {
        "date_range": WEEK,
        "comparison_range": {"start": "2024-12-25", "end": "2024-12-31"},
    })

    assert len(warehouse.calls) == 1
    assert body["summary"]["downloads"] == 70
    assert body["comparison"]["previous"]["summary"]["downloads"] == 35
    assert body["comparison"]["delta"]["downloads"] == 35
    assert body["comparison"]["deltaPercent"]["downloads"] == 100


async def test_compare_flag_uses_preceding_period(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-03", "app1"), make_fact("2024-12-28", "app1", downloads=5)]

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK, "compare": True})

    assert body["comparison"]["previous"]["summary"]["downloads"] == 5


async def test_zero_activity_has_null_conversion_rate(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1", impressions=0, page_views=0, downloads=0)]

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK})

    assert body["summary"]["conversionRate"] is None
    assert body["timeseries"][0]["conversionRate"] is None


async def test_second_identical_request_served_from_cache(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1")]
    request = {"date_range": WEEK, "app_ids": ["app1"]}

    first = await analytics_service.handle(bearer(AGENCY_TOKEN), request)
    second = await analytics_service.handle(bearer(AGENCY_TOKEN), request)

    assert first["meta"]["fromCache"] is False
    assert second["meta"]["fromCache"] is True
    assert second["summary"] == first["summary"]
    assert len(warehouse.calls) == 1


async def test_concurrent_identical_requests_query_once(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1")]
    warehouse.delay = 0.05

    results = await asyncio.gather(*(
        analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK}) for _ in range(3)
    ))

    assert len(warehouse.calls) == 1
    assert len({r["summary"]["impressions"] for r in results}) == 1


async def test_elevated_principal_reads_unrelated_org_app(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app3")]

    body = await analytics_service.handle(bearer(ADMIN_TOKEN), {"date_range": WEEK, "app_ids": ["app3"]})

    assert body["meta"]["accessibleAppIds"] == ["app3"]
    assert body["summary"]["impressions"] == 100
    assert body["scope"]["scope_source"] == "platform_admin"


async def test_traffic_source_filter_keeps_available_sources(analytics_service, warehouse, make_fact):
    warehouse.rows = [
        make_fact("2025-01-02", "app1", source="App Store Search", impressions=100),
        make_fact("2025-01-02", "app1", source="App Store Browse", impressions=40),
    ]

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {
        "date_range": WEEK,
        "traffic_sources": ["App Store Browse"],
    })

    assert body["summary"]["impressions"] == 40
    assert body["meta"]["availableTrafficSources"] == ["App Store Browse", "App Store Search"]
    assert body["meta"]["filteredByTrafficSource"] is True
    assert [b["trafficSource"] for b in body["breakdown"]] == ["App Store Browse"]


async def test_raw_rows_only_when_requested(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1")]

    plain = await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK})
    with_rows = await analytics_service.handle(
        bearer(AGENCY_TOKEN), {"date_range": WEEK, "include_raw_rows": True}
    )

    assert "rawRows" not in plain
    assert "data" not in plain
    assert with_rows["rawRows"][0]["appId"] == "app1"


async def test_legacy_request_gets_data_rows(analytics_service, warehouse, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1", page_views=0, downloads=0)]

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {
        "organizationId": "org-a",
        "dateRange": {"from": "2025-01-01", "to": "2025-01-07"},
        "selectedApps": ["app1"],
    })

    assert body["data"] == [{
        "date": "2025-01-02",
        "app_id": "app1",
        "traffic_source": "App Store Search",
        "impressions": 100,
        "product_page_views": 0,
        "downloads": 0,
        "conversion_rate": None,
    }]
    assert "summary" in body
    assert body["scope"]["organization_id"] == "org-a"


async def test_empty_scope_skips_warehouse(analytics_service, warehouse):
    body = await analytics_service.handle(bearer(CLIENT_TOKEN), {"date_range": WEEK})

    assert body["message"] == "No apps attached to this organization"
    assert body["data"] == []
    assert body["scope"]["app_ids"] == []
    assert body["summary"]["impressions"] == 0
    assert warehouse.calls == []


# ============================================================================
# Errors
# ============================================================================

@pytest.mark.parametrize("credential, error, outcome", [
    (None, MalformedCredentialError, "denied"),
    ("Bearer unknown.principal.token", UnauthenticatedError, "denied"),
    (bearer(ORPHAN_TOKEN), NoAccessibleOrganizationError, "denied"),
])
async def test_auth_failures_audited_as_denied(analytics_service, audit_sink, credential, error, outcome):
    with pytest.raises(error):
        await analytics_service.handle(credential, {"date_range": WEEK})

    await audit_sink.drain()
    assert audit_sink.events[0].outcome == outcome
    assert audit_sink.events[0].error_kind == error.kind


async def test_cross_org_hint_denied(analytics_service, warehouse):
    with pytest.raises(AccessDeniedError):
        await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK, "organization_id": "org-c"})
    assert warehouse.calls == []


@pytest.mark.parametrize("body", [
    None,
    [],
    {},
    {"date_range": {"start": "2025-01-07", "end": "2025-01-01"}},
    {"date_range": {"start": "not a date", "end": "2025-01-01"}},
    {"date_range": WEEK, "comparison_range": {"start": "2025-01-05", "end": "2025-01-10"}},
])
async def test_invalid_bodies(analytics_service, audit_sink, body):
    with pytest.raises(InvalidRequestError):
        await analytics_service.handle(bearer(AGENCY_TOKEN), body)

    await audit_sink.drain()
    assert audit_sink.events[0].outcome == "error"


async def test_warehouse_failure_not_cached(analytics_service, warehouse, audit_sink, make_fact):
    warehouse.rows = [make_fact("2025-01-02", "app1")]
    warehouse.error = WarehouseUnavailableError("down")

    with pytest.raises(WarehouseUnavailableError):
        await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK})

    warehouse.error = None
    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK})
    assert body["meta"]["fromCache"] is False

    await audit_sink.drain()
    assert [e.error_kind for e in audit_sink.events] == ["WarehouseUnavailable", None]


async def test_audit_failure_does_not_fail_request(analytics_service, audit_sink, warehouse, make_fact):
    async def broken_write(event):
        raise RuntimeError("audit store down")

    audit_sink.write = broken_write
    warehouse.rows = [make_fact("2025-01-02", "app1")]

    body = await analytics_service.handle(bearer(AGENCY_TOKEN), {"date_range": WEEK})
    await audit_sink.drain()

    assert body["summary"]["impressions"] == 100
