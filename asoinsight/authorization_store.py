"""Read-only lookups against the authorization store."""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import AgencyClient, Organization, OrgAppAccess


class AuthorizationStore(ABC):
    """Organization, delegation and app-grant lookups used to build a scope."""

    @abstractmethod
    async def is_agency(self, org_id: str) -> bool:
        """Whether the organization may act on behalf of client organizations."""

    @abstractmethod
    async def list_active_client_links(self, agency_org_id: str) -> List[str]:
        """Client organization ids with an active, unexpired link from the agency."""

    @abstractmethod
    async def list_live_grants(self, org_ids: Iterable[str]) -> List[str]:
        """App ids attached (not detached) to any of the organizations."""


class SqlAuthorizationStore(AuthorizationStore):
    """SQLAlchemy implementation. Every call reads fresh rows; nothing is cached."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def is_agency(self, org_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Organization.is_agency).where(Organization.id == org_id)
            )
            return bool(result.scalar_one_or_none())

    async def list_active_client_links(self, agency_org_id: str) -> List[str]:
        now = datetime.now(timezone.utc)
        stmt = (
            select(AgencyClient.client_org_id)
            .where(
                AgencyClient.agency_org_id == agency_org_id,
                AgencyClient.is_active == True,  # noqa: E712
                or_(AgencyClient.expires_at.is_(None), AgencyClient.expires_at > now),
            )
            .order_by(AgencyClient.client_org_id)
        )
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return list(dict.fromkeys(result.scalars().all()))

    async def list_live_grants(self, org_ids: Iterable[str]) -> List[str]:
        org_ids = list(org_ids)
        if not org_ids:
            return []
        stmt = (
            select(OrgAppAccess.app_id)
            .where(
                OrgAppAccess.organization_id.in_(org_ids),
                OrgAppAccess.detached_at.is_(None),
            )
            .order_by(OrgAppAccess.app_id)
        )
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return list(dict.fromkeys(result.scalars().all()))
