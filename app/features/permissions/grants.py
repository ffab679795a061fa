"""
Grant store: the only write path for explicit allow/deny entries.

Grants hang off a role assignment or off a tenant custom role. Keys are
validated against the catalog before anything touches the database, and every
mutation invalidates the cached resolutions it affects before returning.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.database.base import as_utc, utcnow
from app.features.permissions.audit import AuditEvent, AuditSink
from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.catalog import PermissionCatalog, get_catalog
from app.features.permissions.errors import (
    AssignmentNotFoundError,
    ConcurrentModificationError,
    InvalidPermissionKeyError,
    UnknownRoleError,
)
from app.features.permissions.models import CustomRole, Grant, RoleAssignment
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class _Owner:
    """Which column owns the grant, plus who must be invalidated when it changes."""

    column: str
    owner_id: str
    tenant_id: Optional[str]
    subject_id: Optional[str] = None

    @property
    def resource_type(self) -> str:
        return "role_assignment" if self.column == "role_assignment_id" else "custom_role"


def _snapshot(grant: Optional[Grant]) -> Dict[str, Any]:
    if grant is None:
        return {"granted": None, "granted_at": None, "granted_by": None, "version": None}
    return {
        "granted": grant.granted,
        "granted_at": as_utc(grant.granted_at).isoformat() if grant.granted_at else None,
        "granted_by": grant.granted_by_id,
        "version": grant.version,
    }


class GrantStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditSink,
        cache: ResolvedPermissionCache,
        catalog: Optional[PermissionCatalog] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.cache = cache
        self.catalog = catalog or get_catalog()

    def _validate_key(self, permission_key: str) -> None:
        if not self.catalog.is_valid_key(permission_key):
            raise InvalidPermissionKeyError(permission_key)

    # ==================================================================
    # Owners
    # ==================================================================

    async def _assignment_owner(self, session: AsyncSession, role_assignment_id: str) -> _Owner:
        assignment = await session.get(RoleAssignment, role_assignment_id)
        if assignment is None or assignment.deleted_at is not None:
            raise AssignmentNotFoundError(f"Role assignment {role_assignment_id} not found")
        return _Owner("role_assignment_id", assignment.id, assignment.tenant_id, assignment.person_id)

    async def _custom_role_owner(self, session: AsyncSession, custom_role_id: str) -> _Owner:
        custom = await session.get(CustomRole, custom_role_id)
        if custom is None or custom.deleted_at is not None:
            raise UnknownRoleError(custom_role_id)
        return _Owner("custom_role_id", custom.id, custom.tenant_id)

    def _invalidate(self, owner: _Owner) -> None:
        if owner.subject_id is not None:
            # A global assignment affects the subject in every tenant
            self.cache.invalidate(owner.subject_id, owner.tenant_id)
        elif owner.tenant_id is not None:
            self.cache.invalidate_tenant(owner.tenant_id)
        else:
            self.cache.clear()

    @staticmethod
    async def _live_grant(session: AsyncSession, column: str, owner_id: str, permission_key: str) -> Optional[Grant]:
        result = await session.execute(
            select(Grant).where(
                getattr(Grant, column) == owner_id,
                Grant.permission_key == permission_key,
                Grant.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _live_grants(session: AsyncSession, column: str, owner_id: str) -> List[Grant]:
        result = await session.execute(
            select(Grant)
            .where(getattr(Grant, column) == owner_id, Grant.deleted_at.is_(None))
            .order_by(Grant.permission_key)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _retired_grant(session: AsyncSession, column: str, owner_id: str, permission_key: str) -> Optional[Grant]:
        result = await session.execute(
            select(Grant)
            .where(
                getattr(Grant, column) == owner_id,
                Grant.permission_key == permission_key,
                Grant.deleted_at.is_not(None),
            )
            .order_by(Grant.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ==================================================================
    # Shared write paths
    # ==================================================================

    async def _upsert(
        self,
        session: AsyncSession,
        owner: _Owner,
        permission_key: str,
        granted: bool,
        granted_by: Optional[str],
        expected_version: Optional[int],
    ) -> Grant:
        grant = await self._live_grant(session, owner.column, owner.owner_id, permission_key)

        if expected_version is not None:
            current = grant.version if grant is not None else 0
            if current != expected_version:
                raise ConcurrentModificationError(
                    f"Grant {permission_key} on {owner.resource_type} {owner.owner_id} "
                    f"is at version {current}, not {expected_version}"
                )

        previous = _snapshot(grant)
        now = utcnow()
        if grant is None:
            # Revive the revoked row so its version keeps counting up
            grant = await self._retired_grant(session, owner.column, owner.owner_id, permission_key)
            if grant is not None:
                grant.restore()
        if grant is None:
            grant = Grant(permission_key=permission_key, granted=granted, granted_at=now, granted_by_id=granted_by)
            setattr(grant, owner.column, owner.owner_id)
            session.add(grant)
        else:
            grant.granted = granted
            grant.granted_at = now
            grant.granted_by_id = granted_by

        try:
            await session.commit()
        except (StaleDataError, IntegrityError):
            await session.rollback()
            raise ConcurrentModificationError(
                f"Grant {permission_key} on {owner.resource_type} {owner.owner_id} was modified concurrently"
            )

        self._invalidate(owner)
        log.info(
            "Grant %s=%s on %s %s by %s",
            permission_key, granted, owner.resource_type, owner.owner_id, granted_by,
        )
        await self.audit.emit(AuditEvent(
            action="grant.upserted",
            resource_type=owner.resource_type,
            resource_id=owner.owner_id,
            actor_id=granted_by,
            tenant_id=owner.tenant_id,
            details={
                "permission_key": permission_key,
                "granted": granted,
                "granted_at": now,
                "version": grant.version,
                "previous": previous,
            },
        ))
        return grant

    async def _revoke(
        self,
        session: AsyncSession,
        owner: _Owner,
        permission_key: str,
        revoked_by: Optional[str],
    ) -> None:
        grant = await self._live_grant(session, owner.column, owner.owner_id, permission_key)
        if grant is None:
            return

        previous = _snapshot(grant)
        grant.soft_delete()
        try:
            await session.commit()
        except StaleDataError:
            await session.rollback()
            raise ConcurrentModificationError(
                f"Grant {permission_key} on {owner.resource_type} {owner.owner_id} was modified concurrently"
            )

        self._invalidate(owner)
        log.info("Revoked grant %s on %s %s", permission_key, owner.resource_type, owner.owner_id)
        await self.audit.emit(AuditEvent(
            action="grant.revoked",
            resource_type=owner.resource_type,
            resource_id=owner.owner_id,
            actor_id=revoked_by,
            tenant_id=owner.tenant_id,
            details={"permission_key": permission_key, "previous": previous},
        ))

    # ==================================================================
    # Role assignment grants
    # ==================================================================

    async def upsert_grant(
        self,
        role_assignment_id: str,
        permission_key: str,
        granted: bool,
        granted_by: Optional[str],
        expected_version: Optional[int] = None,
    ) -> Grant:
        """
        Create or update the live grant for (assignment, key).

        Args:
            role_assignment_id: Owning assignment
            permission_key: Catalog key, e.g. "EDIT_COURSES"
            granted: False records an explicit deny
            granted_by: Acting person id
            expected_version: Version the caller read; 0 when it saw no grant

        Raises:
            InvalidPermissionKeyError: key is not in the catalog (nothing is written)
            AssignmentNotFoundError: assignment missing or revoked
            ConcurrentModificationError: expected_version is stale or a concurrent writer won
        """
        self._validate_key(permission_key)
        async with self.session_factory() as session:
            owner = await self._assignment_owner(session, role_assignment_id)
            return await self._upsert(session, owner, permission_key, granted, granted_by, expected_version)

    async def revoke_grant(self, role_assignment_id: str, permission_key: str, revoked_by: Optional[str] = None) -> None:
        """Soft-delete the live grant for (assignment, key). Revoking nothing is not an error."""
        async with self.session_factory() as session:
            assignment = await session.get(RoleAssignment, role_assignment_id)
            if assignment is None:
                return
            owner = _Owner("role_assignment_id", assignment.id, assignment.tenant_id, assignment.person_id)
            await self._revoke(session, owner, permission_key, revoked_by)

    async def list_grants(self, role_assignment_id: str) -> Dict[str, bool]:
        async with self.session_factory() as session:
            grants = await self._live_grants(session, "role_assignment_id", role_assignment_id)
        return {grant.permission_key: grant.granted for grant in grants}

    async def grant_records(self, role_assignment_id: str) -> List[Grant]:
        """Live grant rows of an assignment, with their version tokens."""
        async with self.session_factory() as session:
            return await self._live_grants(session, "role_assignment_id", role_assignment_id)

    async def get_grant(self, role_assignment_id: str, permission_key: str) -> Optional[Grant]:
        async with self.session_factory() as session:
            return await self._live_grant(session, "role_assignment_id", role_assignment_id, permission_key)

    # ==================================================================
    # Custom role grants
    # ==================================================================

    async def upsert_role_grant(
        self,
        custom_role_id: str,
        permission_key: str,
        granted: bool,
        granted_by: Optional[str],
        expected_version: Optional[int] = None,
    ) -> Grant:
        """Same contract as ``upsert_grant`` for a grant owned by a custom role."""
        self._validate_key(permission_key)
        async with self.session_factory() as session:
            owner = await self._custom_role_owner(session, custom_role_id)
            return await self._upsert(session, owner, permission_key, granted, granted_by, expected_version)

    async def revoke_role_grant(self, custom_role_id: str, permission_key: str, revoked_by: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            custom = await session.get(CustomRole, custom_role_id)
            if custom is None:
                return
            owner = _Owner("custom_role_id", custom.id, custom.tenant_id)
            await self._revoke(session, owner, permission_key, revoked_by)

    async def list_role_grants(self, custom_role_id: str) -> Dict[str, bool]:
        async with self.session_factory() as session:
            grants = await self._live_grants(session, "custom_role_id", custom_role_id)
        return {grant.permission_key: grant.granted for grant in grants}

    async def role_grant_records(self, custom_role_id: str) -> List[Grant]:
        async with self.session_factory() as session:
            return await self._live_grants(session, "custom_role_id", custom_role_id)

