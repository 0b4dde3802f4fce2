"""Resolution of a bearer credential into a request principal."""
from abc import ABC, abstractmethod
from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import decode_token, extract_bearer_token
from .config import settings
from .db_models import UserRole
from .errors import MalformedCredentialError, UnauthenticatedError
from .models import Principal

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Trusted identity oracle backed by the auth provider."""

    @abstractmethod
    async def verify_credential(self, token: str) -> Optional[Principal]:
        """Return the principal for a token, or None if the token is not recognised."""


class SqlIdentityStore(IdentityStore):
    """
    Verifies provider-issued JWTs and reads role membership from ``user_roles``.

    A role listed in ``settings.elevated_roles`` without an organization marks
    a platform-wide identity. Otherwise the earliest organization membership
    is the principal's home organization.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], elevated_roles: Optional[list] = None):
        self.session_maker = session_maker
        self.elevated_roles = {role.upper() for role in (elevated_roles or settings.elevated_roles)}

    async def verify_credential(self, token: str) -> Optional[Principal]:
        payload = decode_token(token)
        if not payload:
            return None

        user_id = payload.get("sub")
        if not user_id:
            return None

        async with self.session_maker() as session:
            stmt = (
                select(UserRole)
                .where(UserRole.user_id == user_id)
                .order_by(UserRole.created_at, UserRole.id)
            )
            result = await session.execute(stmt)
            roles = result.scalars().all()

        elevated = next(
            (r for r in roles if r.organization_id is None and r.role.upper() in self.elevated_roles),
            None,
        )
        if elevated is not None:
            return Principal(principal_id=user_id, home_org_id=None, is_elevated=True, role=elevated.role)

        membership = next((r for r in roles if r.organization_id is not None), None)
        if membership is None:
            # Authenticated but not assigned to any organization
            return Principal(principal_id=user_id)

        return Principal(principal_id=user_id, home_org_id=membership.organization_id, role=membership.role)


class AuthContextResolver:
    """Maps a bearer credential to a ``Principal``. No caching, no side effects."""

    def __init__(self, identity_store: IdentityStore):
        self.identity_store = identity_store

    async def resolve(self, credential: Optional[str]) -> Principal:
        """
        Resolve the principal behind a credential.

        Args:
            credential: Authorization header value, with or without the Bearer scheme

        Returns:
            The resolved principal

        Raises:
            MalformedCredentialError: Credential is empty or not a JWT
            UnauthenticatedError: Credential does not map to a known identity
        """
        token = extract_bearer_token(credential)
        if token is None:
            raise MalformedCredentialError("Authorization credential is missing or malformed")

        principal = await self.identity_store.verify_credential(token)
        if principal is None:
            raise UnauthenticatedError("Authentication required")

        logger.debug(
            "Principal resolved",
            extra={
                "principal_id": principal.principal_id,
                "home_org_id": principal.home_org_id,
                "is_elevated": principal.is_elevated,
            },
        )
        return principal
