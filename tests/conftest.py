import asyncio
import pathlib
import sys
from typing import Dict, Iterable, List, Optional

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from asoinsight.access_scope import AccessScopeExpander  # noqa: E402
from asoinsight.audit import AuditEvent, AuditSink  # noqa: E402
from asoinsight.auth_context import AuthContextResolver, IdentityStore  # noqa: E402
from asoinsight.authorization_store import AuthorizationStore  # noqa: E402
from asoinsight.cache import MemoryHotCache  # noqa: E402
from asoinsight.database import create_tables  # noqa: E402
from asoinsight.models import Principal  # noqa: E402
from asoinsight.query_planner import QueryPlanner  # noqa: E402
from asoinsight.response import AnalyticsResult  # noqa: E402
from asoinsight.service import AnalyticsService  # noqa: E402
from asoinsight.warehouse import WarehouseClient  # noqa: E402


AGENCY_TOKEN = "agency.principal.token"
CLIENT_TOKEN = "client.principal.token"
ADMIN_TOKEN = "admin.principal.token"
ORPHAN_TOKEN = "orphan.principal.token"


class FakeWarehouse(WarehouseClient):
    """Applies the app and date filters the real statement would, and records every call."""

    project_id = "test-project"

    def __init__(self, rows: Optional[List[Dict]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.rows = rows or []
        self.error = error
        self.delay = delay
        self.ignore_app_filter = False
        self.calls = []
        self.closed = False

    async def run_query(self, sql, params):
        self.calls.append((sql, list(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        values = {p.name: p.value for p in params}
        comparing = "previous_start_date" in values
        result = []
        for row in self.rows:
            if not self.ignore_app_filter and row["app_id"] not in values["app_ids"]:
                continue
            day = row["date"]
            if values["start_date"] <= day <= values["end_date"]:
                label = "current"
            elif comparing and values["previous_start_date"] <= day <= values["previous_end_date"]:
                label = "previous"
            else:
                continue
            out = {key: (str(value) if value is not None else None) for key, value in row.items()}
            if comparing:
                out["period_label"] = label
            result.append(out)
        return result

    async def aclose(self):
        self.closed = True


class StaticAuthorizationStore(AuthorizationStore):
    def __init__(self):
        self.agencies = set()
        self.links: Dict[str, Dict[str, bool]] = {}
        self.grants: Dict[str, set] = {}

    def link(self, agency_org_id: str, client_org_id: str, active: bool = True) -> None:
        self.agencies.add(agency_org_id)
        self.links.setdefault(agency_org_id, {})[client_org_id] = active

    def grant(self, org_id: str, *app_ids: str) -> None:
        self.grants.setdefault(org_id, set()).update(app_ids)

    async def is_agency(self, org_id: str) -> bool:
        return org_id in self.agencies

    async def list_active_client_links(self, agency_org_id: str) -> List[str]:
        return sorted(c for c, active in self.links.get(agency_org_id, {}).items() if active)

    async def list_live_grants(self, org_ids: Iterable[str]) -> List[str]:
        return sorted({app for org in org_ids for app in self.grants.get(org, ())})


class StaticIdentityStore(IdentityStore):
    def __init__(self, principals: Dict[str, Principal]):
        self.principals = principals

    async def verify_credential(self, token: str) -> Optional[Principal]:
        return self.principals.get(token)


class RecordingAuditSink(AuditSink):
    backend = "memory"

    def __init__(self):
        super().__init__()
        self.events: List[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)


def fact(day: str, app_id: str, source: str = "App Store Search", impressions: int = 100,
         page_views: int = 20, downloads: int = 10) -> Dict:
    return {
        "date": day,
        "app_id": app_id,
        "traffic_source": source,
        "impressions": impressions,
        "product_page_views": page_views,
        "downloads": downloads,
    }


@pytest.fixture
def make_fact():
    return fact


@pytest.fixture
def authz_store():
    """Agency org-a linked to client org-b; org-c unrelated; org-empty has no apps."""
    store = StaticAuthorizationStore()
    store.link("org-a", "org-b")
    store.grant("org-a", "app1")
    store.grant("org-b", "app2")
    store.grant("org-c", "app3")
    return store


@pytest.fixture
def identity_store():
    return StaticIdentityStore({
        AGENCY_TOKEN: Principal(principal_id="user-agency", home_org_id="org-a", role="ORG_ADMIN"),
        CLIENT_TOKEN: Principal(principal_id="user-client", home_org_id="org-empty", role="VIEWER"),
        ADMIN_TOKEN: Principal(principal_id="user-admin", is_elevated=True, role="SUPER_ADMIN"),
        ORPHAN_TOKEN: Principal(principal_id="user-orphan"),
    })


@pytest.fixture
def warehouse():
    return FakeWarehouse()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def hot_cache():
    return MemoryHotCache(AnalyticsResult, default_ttl=30)


@pytest.fixture
def analytics_service(identity_store, authz_store, warehouse, hot_cache, audit_sink):
    return AnalyticsService(
        resolver=AuthContextResolver(identity_store),
        expander=AccessScopeExpander(authz_store, over_ask_policy="narrow"),
        planner=QueryPlanner(warehouse),
        cache=hot_cache,
        audit=audit_sink,
    )


@pytest.fixture
async def session_maker():
    """In-memory SQLite authorization store with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
