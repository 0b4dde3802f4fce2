"""Computation of the organizations and applications a request may read.

``AccessScopeExpander`` is the single place a ``QueryScope`` is built. The
planner, cache and response layers only ever consume the scope it returns.
"""
from enum import Enum
from typing import Iterable, List, Optional, Sequence
import logging

from .authorization_store import AuthorizationStore
from .config import settings
from .errors import AccessDeniedError, InvalidRequestError, NoAccessibleOrganizationError
from .metrics import over_ask_total
from .models import Principal, QueryScope, ScopeKind

logger = logging.getLogger(__name__)


class OverAskPolicy(str, Enum):
    """What to do with requested app ids outside the authorized set."""
    NARROW = "narrow"  # drop them, record in audit
    STRICT = "strict"  # reject the request with AccessDenied


class ScopeSource(str, Enum):
    USER_MEMBERSHIP = "user_membership"
    AGENCY_DELEGATION = "agency_delegation"
    CLIENT_SELECTION = "client_selection"
    PLATFORM_ADMIN = "platform_admin"
    PLATFORM_ADMIN_SELECTION = "platform_admin_selection"


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


class AccessScopeExpander:
    """Expands a principal into a ``QueryScope``."""

    def __init__(self, store: AuthorizationStore, over_ask_policy: Optional[str] = None):
        self.store = store
        self.over_ask_policy = OverAskPolicy(over_ask_policy or settings.over_ask_policy)

    async def expand(
        self,
        principal: Principal,
        requested_app_ids: Sequence[str] = (),
        requested_org_hint: Optional[str] = None,
    ) -> QueryScope:
        """
        Build the scope for one request.

        Args:
            principal: Resolved identity
            requested_app_ids: App ids the caller asked for (empty means all accessible)
            requested_org_hint: Organization the caller selected, if any

        Returns:
            The resolved scope

        Raises:
            NoAccessibleOrganizationError: Non-elevated principal without a home organization
            AccessDeniedError: Org hint outside the scope, or over-asking under the strict policy
            InvalidRequestError: Elevated principal with neither an org hint nor app ids
        """
        requested = _unique(requested_app_ids)

        if principal.is_elevated:
            return await self._expand_elevated(principal, requested, requested_org_hint)

        if not principal.home_org_id:
            raise NoAccessibleOrganizationError(
                "User not assigned to organization",
                hint="Contact admin to assign you to an organization",
            )

        home_org_id = principal.home_org_id
        org_ids = [home_org_id]
        source = ScopeSource.USER_MEMBERSHIP

        if await self.store.is_agency(home_org_id):
            client_org_ids = await self.store.list_active_client_links(home_org_id)
            org_ids.extend(c for c in client_org_ids if c not in org_ids)
            if client_org_ids:
                source = ScopeSource.AGENCY_DELEGATION

        primary_org_id = home_org_id
        if requested_org_hint and requested_org_hint != home_org_id:
            if requested_org_hint not in org_ids:
                logger.warning(
                    "[SECURITY] Cross-org access attempt rejected",
                    extra={
                        "principal_id": principal.principal_id,
                        "home_org_id": home_org_id,
                        "attempted_org_id": requested_org_hint,
                    },
                )
                raise AccessDeniedError(
                    "Organization is outside the caller's scope",
                    details={"organization_id": requested_org_hint},
                )
            # Agency narrowed to one of its clients
            org_ids = [requested_org_hint]
            primary_org_id = requested_org_hint
            source = ScopeSource.CLIENT_SELECTION

        authorized = await self.store.list_live_grants(org_ids)
        authorized_set = set(authorized)

        if requested:
            effective = [app_id for app_id in requested if app_id in authorized_set]
            dropped = [app_id for app_id in requested if app_id not in authorized_set]
        else:
            effective = list(authorized)
            dropped = []

        if dropped:
            over_ask_total.labels(policy=self.over_ask_policy.value).inc()
            if self.over_ask_policy is OverAskPolicy.STRICT:
                raise AccessDeniedError(
                    "Requested applications are outside the caller's scope",
                    details={"app_ids": sorted(dropped)},
                )
            logger.info(
                "Requested apps outside scope dropped",
                extra={
                    "principal_id": principal.principal_id,
                    "dropped_app_ids": sorted(dropped),
                },
            )

        return QueryScope(
            kind=ScopeKind.RESTRICTED,
            org_ids=tuple(sorted(org_ids)),
            app_ids=tuple(sorted(effective)),
            source=source.value,
            primary_org_id=primary_org_id,
            requested_app_ids=tuple(requested),
            dropped_app_ids=tuple(sorted(dropped)),
        )

    async def _expand_elevated(
        self,
        principal: Principal,
        requested: List[str],
        requested_org_hint: Optional[str],
    ) -> QueryScope:
        if requested_org_hint:
            org_ids = (requested_org_hint,)
            app_ids = requested or await self.store.list_live_grants(org_ids)
            source = ScopeSource.PLATFORM_ADMIN_SELECTION
        elif requested:
            org_ids = ()
            app_ids = requested
            source = ScopeSource.PLATFORM_ADMIN
        else:
            raise InvalidRequestError(
                "Platform admin must select an organization",
                hint="Use the organization picker to select an org",
            )

        logger.info(
            "[PLATFORM_ADMIN] Unrestricted scope granted",
            extra={
                "principal_id": principal.principal_id,
                "selected_org_id": requested_org_hint,
                "app_count": len(app_ids),
            },
        )
        return QueryScope(
            kind=ScopeKind.UNRESTRICTED,
            org_ids=tuple(org_ids),
            app_ids=tuple(sorted(app_ids)),
            source=source.value,
            primary_org_id=requested_org_hint,
            requested_app_ids=tuple(requested),
        )
