"""
Role assignment store.

Binds persons to role types inside a tenant (or globally when ``tenant_id`` is
None). Revocation is a soft delete that takes the assignment's grants with it;
assigning the same role again revives the old row and its version counter.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.database.base import utcnow, as_utc
from app.features.permissions.audit import AuditEvent, AuditSink
from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.errors import (
    AssignmentNotFoundError,
    ConcurrentModificationError,
    SubjectNotFoundError,
)
from app.features.permissions.hierarchy import RoleHierarchyRegistry
from app.features.permissions.models import Grant, RoleAssignment
from app.features.persons.models import Person
from app.utils import get_logger


log = get_logger(__name__)


def _check_version(assignment: RoleAssignment, expected_version: Optional[int]) -> None:
    if expected_version is not None and assignment.version != expected_version:
        raise ConcurrentModificationError(
            f"Role assignment {assignment.id} is at version {assignment.version}, not {expected_version}"
        )


class RoleAssignmentStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RoleHierarchyRegistry,
        audit: AuditSink,
        cache: ResolvedPermissionCache,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.audit = audit
        self.cache = cache

    async def _load(self, session: AsyncSession, assignment_id: str) -> RoleAssignment:
        assignment = await session.get(RoleAssignment, assignment_id)
        if assignment is None or assignment.deleted_at is not None:
            raise AssignmentNotFoundError(f"Role assignment {assignment_id} not found")
        return assignment

    async def _commit(self, session: AsyncSession, what: str) -> None:
        try:
            await session.commit()
        except (StaleDataError, IntegrityError):
            await session.rollback()
            raise ConcurrentModificationError(f"{what} was modified concurrently")

    async def _demote_primary(
        self,
        session: AsyncSession,
        person_id: str,
        tenant_id: Optional[str],
        keep_id: Optional[str] = None,
    ) -> None:
        query = select(RoleAssignment).where(
            RoleAssignment.person_id == person_id,
            RoleAssignment.tenant_id.is_(None) if tenant_id is None else RoleAssignment.tenant_id == tenant_id,
            RoleAssignment.is_primary.is_(True),
            RoleAssignment.deleted_at.is_(None),
        )
        if keep_id is not None:
            query = query.where(RoleAssignment.id != keep_id)
        result = await session.execute(query)
        demoted = False
        for previous in result.scalars().all():
            previous.is_primary = False
            demoted = True
        if demoted:
            # Flush the demotion first so the partial unique index never sees two primaries
            await session.flush()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        role_type: str,
        assigned_by: Optional[str],
        is_primary: bool = False,
        valid_until: Optional[datetime] = None,
    ) -> RoleAssignment:
        """
        Assign ``role_type`` to a person.

        An existing row for the same (person, tenant, role) is reused: a
        revoked one is reactivated, a live one is refreshed.

        Raises:
            SubjectNotFoundError: person missing or deleted
            UnknownRoleError: role is not built-in nor a live custom role of the tenant
            ConcurrentModificationError: a concurrent writer changed the same row
        """
        async with self.session_factory() as session:
            person = await session.get(Person, subject_id)
            if person is None or person.deleted_at is not None:
                raise SubjectNotFoundError(f"Person {subject_id} not found")

            # Raises UnknownRoleError
            await self.registry.resolve_nodes(role_type, tenant_id, session=session)

            result = await session.execute(
                select(RoleAssignment)
                .where(
                    RoleAssignment.person_id == subject_id,
                    RoleAssignment.tenant_id.is_(None) if tenant_id is None
                    else RoleAssignment.tenant_id == tenant_id,
                    RoleAssignment.role_type == role_type,
                )
                .order_by(RoleAssignment.deleted_at.is_(None).desc(), RoleAssignment.assigned_at.desc())
            )
            assignment = result.scalars().first()
            reactivated = assignment is not None and assignment.deleted_at is not None

            if is_primary:
                await self._demote_primary(
                    session, subject_id, tenant_id, keep_id=assignment.id if assignment is not None else None
                )

            if assignment is None:
                assignment = RoleAssignment(person_id=subject_id, tenant_id=tenant_id, role_type=role_type)
                session.add(assignment)
            else:
                assignment.restore()

            assignment.is_active = True
            assignment.assigned_by_id = assigned_by
            assignment.assigned_at = utcnow()
            assignment.valid_until = valid_until
            if is_primary:
                assignment.is_primary = True

            await self._commit(session, f"Role {role_type} of person {subject_id}")

        self.cache.invalidate(subject_id, tenant_id)
        log.info("Assigned %s to person %s in tenant %s", role_type, subject_id, tenant_id)
        await self.audit.emit(AuditEvent(
            action="role_assignment.reactivated" if reactivated else "role_assignment.assigned",
            resource_type="role_assignment",
            resource_id=assignment.id,
            actor_id=assigned_by,
            tenant_id=tenant_id,
            details={
                "person_id": subject_id,
                "role_type": role_type,
                "is_primary": assignment.is_primary,
                "valid_until": valid_until,
            },
        ))
        return assignment

    async def revoke_role(
        self,
        assignment_id: str,
        revoked_by: Optional[str],
        expected_version: Optional[int] = None,
    ) -> None:
        """Soft-delete an assignment and every live grant it owns."""
        async with self.session_factory() as session:
            assignment = await self._load(session, assignment_id)
            _check_version(assignment, expected_version)

            now = utcnow()
            assignment.soft_delete(now)
            assignment.is_primary = False
            await session.execute(
                update(Grant)
                .where(Grant.role_assignment_id == assignment.id, Grant.deleted_at.is_(None))
                .values(deleted_at=now, version=Grant.version + 1)
                .execution_options(synchronize_session=False)
            )
            await self._commit(session, f"Role assignment {assignment_id}")

        self.cache.invalidate(assignment.person_id, assignment.tenant_id)
        log.info("Revoked %s from person %s in tenant %s", assignment.role_type, assignment.person_id, assignment.tenant_id)
        await self.audit.emit(AuditEvent(
            action="role_assignment.revoked",
            resource_type="role_assignment",
            resource_id=assignment.id,
            actor_id=revoked_by,
            tenant_id=assignment.tenant_id,
            details={"person_id": assignment.person_id, "role_type": assignment.role_type},
        ))

    async def set_primary(
        self,
        assignment_id: str,
        actor_id: Optional[str],
        expected_version: Optional[int] = None,
    ) -> RoleAssignment:
        """Mark an assignment primary, demoting the previous primary of the same (person, tenant)."""
        async with self.session_factory() as session:
            assignment = await self._load(session, assignment_id)
            _check_version(assignment, expected_version)
            if not assignment.is_primary:
                await self._demote_primary(session, assignment.person_id, assignment.tenant_id, keep_id=assignment.id)
                assignment.is_primary = True
                await self._commit(session, f"Role assignment {assignment_id}")

        self.cache.invalidate(assignment.person_id, assignment.tenant_id)
        await self.audit.emit(AuditEvent(
            action="role_assignment.primary_set",
            resource_type="role_assignment",
            resource_id=assignment.id,
            actor_id=actor_id,
            tenant_id=assignment.tenant_id,
            details={"person_id": assignment.person_id, "role_type": assignment.role_type},
        ))
        return assignment

    async def expire_assignments(self, now: Optional[datetime] = None) -> int:
        """Deactivate live assignments whose ``valid_until`` has passed. Returns how many."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(RoleAssignment).where(
                    RoleAssignment.is_active.is_(True),
                    RoleAssignment.deleted_at.is_(None),
                    RoleAssignment.valid_until.is_not(None),
                )
            )
            expired = [a for a in result.scalars().all() if as_utc(a.valid_until) <= now]
            for assignment in expired:
                assignment.is_active = False
                assignment.is_primary = False
            await self._commit(session, "Expiring role assignments")

        for assignment in expired:
            self.cache.invalidate(assignment.person_id, assignment.tenant_id)
            await self.audit.emit(AuditEvent(
                action="role_assignment.expired",
                resource_type="role_assignment",
                resource_id=assignment.id,
                tenant_id=assignment.tenant_id,
                details={"person_id": assignment.person_id, "role_type": assignment.role_type},
            ))
        if expired:
            log.info("Expired %d role assignment(s)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_assignment(self, assignment_id: str) -> RoleAssignment:
        async with self.session_factory() as session:
            return await self._load(session, assignment_id)

    async def list_assignments(
        self,
        subject_id: str,
        tenant_id: Optional[str],
        include_global: bool = True,
    ) -> List[RoleAssignment]:
        """Effective assignments of a person in a tenant, primary first."""
        scope = RoleAssignment.tenant_id == tenant_id if tenant_id is not None else RoleAssignment.tenant_id.is_(None)
        if include_global and tenant_id is not None:
            scope = or_(scope, RoleAssignment.tenant_id.is_(None))

        async with self.session_factory() as session:
            result = await session.execute(
                select(RoleAssignment)
                .where(
                    RoleAssignment.person_id == subject_id,
                    scope,
                    RoleAssignment.is_active.is_(True),
                    RoleAssignment.deleted_at.is_(None),
                )
                .order_by(RoleAssignment.is_primary.desc(), RoleAssignment.assigned_at)
            )
            now = utcnow()
            return [a for a in result.scalars().all() if a.is_effective(now)]

    async def role_statistics(self, tenant_id: str) -> Dict[str, int]:
        """Count of live, active assignments per role type in the tenant."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RoleAssignment.role_type, func.count(RoleAssignment.id))
                .where(
                    RoleAssignment.tenant_id == tenant_id,
                    RoleAssignment.is_active.is_(True),
                    RoleAssignment.deleted_at.is_(None),
                )
                .group_by(RoleAssignment.role_type)
                .order_by(RoleAssignment.role_type)
            )
            return {role_type: count for role_type, count in result.all()}

    async def list_holders(self, role_type: str, tenant_id: str) -> List[Tuple[RoleAssignment, Person]]:
        """
        Effective assignments of ``role_type`` in a tenant, each with the person holding it.

        Raises:
            UnknownRoleError: the role type does not exist in the tenant
        """
        role_type = role_type.upper()
        await self.registry.resolve_parent_chain(role_type, tenant_id)

        async with self.session_factory() as session:
            result = await session.execute(
                select(RoleAssignment, Person)
                .join(Person, Person.id == RoleAssignment.person_id)
                .where(
                    RoleAssignment.role_type == role_type,
                    RoleAssignment.tenant_id == tenant_id,
                    RoleAssignment.is_active.is_(True),
                    RoleAssignment.deleted_at.is_(None),
                    Person.deleted_at.is_(None),
                )
                .order_by(Person.last_name, Person.first_name, RoleAssignment.assigned_at)
            )
            now = utcnow()
            return [(assignment, person) for assignment, person in result.all() if assignment.is_effective(now)]
