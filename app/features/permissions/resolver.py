"""
Permission resolver.

Computes the effective permission map of a person inside a tenant. For every
effective role assignment the role's parent chain is folded from the root down
to the assigned role:

1. built-in default permissions of each built-in ancestor
2. grants of each custom role in the chain
3. the assignment's own grants

A later layer overrides an earlier one for every key it mentions, so an
explicit deny on a custom role suppresses an inherited default.

Assignments are then merged key by key. The decision from the more specific
layer wins; equal layers go to the latest ``granted_at`` and a full tie
denies. Every catalog key is present in the result, defaulting to False.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.database.base import utcnow, as_utc
from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.catalog import PermissionCatalog, get_catalog
from app.features.permissions.errors import (
    AuthorizationUnavailableError,
    InvalidParentError,
    UnknownRoleError,
)
from app.features.permissions.hierarchy import RoleHierarchyNode, RoleHierarchyRegistry
from app.features.permissions.models import CustomRole, Grant, RoleAssignment
from app.features.persons.models import Person
from app.features.tenants.models import Tenant
from app.utils import get_logger


log = get_logger(__name__)

RANK_NONE = -1
RANK_DEFAULT = 0
RANK_CUSTOM_ROLE_GRANT = 1
RANK_ASSIGNMENT_GRANT = 2

SOURCE_BY_RANK = {
    RANK_NONE: "none",
    RANK_DEFAULT: "default",
    RANK_CUSTOM_ROLE_GRANT: "custom_role_grant",
    RANK_ASSIGNMENT_GRANT: "assignment_grant",
}

_TRANSIENT_ERRORS = (asyncio.TimeoutError, SQLAlchemyError, OSError)


@dataclass(frozen=True)
class Decision:
    """Outcome for one key plus the record that decided it."""

    key: str
    granted: bool
    rank: int = RANK_NONE
    role_type: Optional[str] = None
    assignment_id: Optional[str] = None
    grant_id: Optional[str] = None
    granted_at: Optional[datetime] = None

    @property
    def source(self) -> str:
        return SOURCE_BY_RANK[self.rank]


def prefer(current: Decision, candidate: Decision) -> Decision:
    """Pick between two decisions for the same key from different assignments."""
    if candidate.rank != current.rank:
        return candidate if candidate.rank > current.rank else current

    current_at = as_utc(current.granted_at)
    candidate_at = as_utc(candidate.granted_at)
    if current_at != candidate_at:
        if current_at is None:
            return candidate
        if candidate_at is None:
            return current
        return candidate if candidate_at > current_at else current

    if current.granted != candidate.granted:
        return current if not current.granted else candidate
    return current


def fold_assignment(
    assignment: RoleAssignment,
    chain: List[RoleHierarchyNode],
    custom_role_grants: Mapping[str, Iterable[Grant]],
    assignment_grants: Iterable[Grant],
    catalog: PermissionCatalog,
) -> Dict[str, Decision]:
    """Fold one assignment's chain from the root to the assigned role, then its own grants."""
    decisions: Dict[str, Decision] = {}

    for node in reversed(chain):
        if node.is_custom:
            for grant in custom_role_grants.get(node.custom_role_id, ()):
                if grant.permission_key in catalog:
                    decisions[grant.permission_key] = Decision(
                        key=grant.permission_key,
                        granted=grant.granted,
                        rank=RANK_CUSTOM_ROLE_GRANT,
                        role_type=node.role_type,
                        assignment_id=assignment.id,
                        grant_id=grant.id,
                        granted_at=grant.granted_at,
                    )
        else:
            for key in node.default_permissions:
                decisions[key] = Decision(
                    key=key,
                    granted=True,
                    rank=RANK_DEFAULT,
                    role_type=node.role_type,
                    assignment_id=assignment.id,
                )

    for grant in assignment_grants:
        if grant.permission_key in catalog:
            decisions[grant.permission_key] = Decision(
                key=grant.permission_key,
                granted=grant.granted,
                rank=RANK_ASSIGNMENT_GRANT,
                role_type=assignment.role_type,
                assignment_id=assignment.id,
                grant_id=grant.id,
                granted_at=grant.granted_at,
            )
    return decisions


class PermissionResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RoleHierarchyRegistry,
        cache: ResolvedPermissionCache,
        catalog: Optional[PermissionCatalog] = None,
        read_timeout: Optional[float] = None,
        retry_backoff: Optional[float] = None,
        include_global: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.cache = cache
        self.catalog = catalog or get_catalog()
        self.read_timeout = config.AUTHZ_READ_TIMEOUT_SECONDS if read_timeout is None else read_timeout
        self.retry_backoff = config.AUTHZ_READ_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self.include_global = config.AUTHZ_INCLUDE_GLOBAL_ASSIGNMENTS if include_global is None else include_global

    async def resolve(self, subject_id: str, tenant_id: Optional[str]) -> Dict[str, bool]:
        """
        Effective permission map covering every catalog key.

        Raises:
            AuthorizationUnavailableError: the store could not be read after one retry
        """
        cached = self.cache.get(subject_id, tenant_id)
        if cached is not None:
            return cached

        generation = self.cache.generation
        decisions = await self._read(subject_id, tenant_id)
        resolved = {key: decision.granted for key, decision in decisions.items()}
        self.cache.put(subject_id, tenant_id, resolved, generation)
        return resolved

    async def explain(self, subject_id: str, tenant_id: Optional[str]) -> Dict[str, Decision]:
        """Like ``resolve`` but with the deciding record of every key. Never cached."""
        return await self._read(subject_id, tenant_id)

    async def _read(self, subject_id: str, tenant_id: Optional[str]) -> Dict[str, Decision]:
        try:
            return await asyncio.wait_for(self._compute(subject_id, tenant_id), self.read_timeout)
        except _TRANSIENT_ERRORS as exc:
            log.warning("Permission read for %s in %s failed (%r), retrying", subject_id, tenant_id, exc)

        await asyncio.sleep(self.retry_backoff)
        try:
            return await asyncio.wait_for(self._compute(subject_id, tenant_id), self.read_timeout)
        except _TRANSIENT_ERRORS as exc:
            log.error("Permission read for %s in %s failed after retry: %r", subject_id, tenant_id, exc)
            raise AuthorizationUnavailableError("Permission store is unavailable") from exc

    def _all_denied(self) -> Dict[str, Decision]:
        return {key: Decision(key=key, granted=False) for key in self.catalog.keys()}

    async def _effective_assignments(
        self,
        session: AsyncSession,
        subject_id: str,
        tenant_id: Optional[str],
    ) -> List[RoleAssignment]:
        scope = RoleAssignment.tenant_id == tenant_id if tenant_id is not None else RoleAssignment.tenant_id.is_(None)
        if self.include_global and tenant_id is not None:
            scope = or_(scope, RoleAssignment.tenant_id.is_(None))

        result = await session.execute(
            select(RoleAssignment).where(
                RoleAssignment.person_id == subject_id,
                scope,
                RoleAssignment.is_active.is_(True),
                RoleAssignment.deleted_at.is_(None),
            )
        )
        now = utcnow()
        return [assignment for assignment in result.scalars().all() if assignment.is_effective(now)]

    @staticmethod
    async def _grants_by_owner(session: AsyncSession, column: str, owner_ids: List[str]) -> Dict[str, List[Grant]]:
        grouped: Dict[str, List[Grant]] = defaultdict(list)
        if not owner_ids:
            return grouped
        owner = getattr(Grant, column)
        result = await session.execute(
            select(Grant).where(owner.in_(owner_ids), Grant.deleted_at.is_(None))
        )
        for grant in result.scalars().all():
            grouped[getattr(grant, column)].append(grant)
        return grouped

    async def _compute(self, subject_id: str, tenant_id: Optional[str]) -> Dict[str, Decision]:
        async with self.session_factory() as session:
            person = await session.get(Person, subject_id)
            if person is None or not person.is_active:
                log.debug("Person %s is unknown or inactive, denying everything", subject_id)
                return self._all_denied()

            if tenant_id is not None:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None or not tenant.is_live:
                    log.debug("Tenant %s is unknown or inactive, denying everything", tenant_id)
                    return self._all_denied()

            assignments = await self._effective_assignments(session, subject_id, tenant_id)
            if not assignments:
                return self._all_denied()

            custom_roles: Dict[str, CustomRole] = await self.registry.load_custom_roles(session, tenant_id)
            assignment_grants = await self._grants_by_owner(
                session, "role_assignment_id", [assignment.id for assignment in assignments]
            )
            role_grants = await self._grants_by_owner(
                session, "custom_role_id", [role.id for role in custom_roles.values()]
            )

        merged: Dict[str, Decision] = {}
        for assignment in assignments:
            # Global assignments only see built-in roles
            visible_roles = custom_roles if assignment.tenant_id == tenant_id else {}
            try:
                chain = self.registry.chain_nodes(assignment.role_type, assignment.tenant_id, visible_roles)
            except (UnknownRoleError, InvalidParentError) as exc:
                log.warning("Skipping assignment %s: %s", assignment.id, exc.message)
                continue

            folded = fold_assignment(
                assignment, chain, role_grants, assignment_grants.get(assignment.id, ()), self.catalog
            )
            for key, decision in folded.items():
                current = merged.get(key)
                merged[key] = decision if current is None else prefer(current, decision)

        decisions = self._all_denied()
        decisions.update(merged)
        log.debug(
            "Resolved %d granted permission(s) for %s in %s",
            sum(1 for decision in decisions.values() if decision.granted), subject_id, tenant_id,
        )
        return decisions
