"""
Role hierarchy registry.

Built-in role types form a static tree loaded at process start
(``HIERARCHY_VERSION``). Tenants extend it with custom roles stored in
``custom_roles``; each custom role names a parent role type and carries its
own grants instead of a default permission set.

A role inherits from its ancestors: the resolver folds defaults from the root
down to the assigned role. Cycles are rejected when a custom role is
registered, so walking a parent chain always terminates.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.base import utcnow
from app.features.permissions.audit import AuditEvent, AuditSink
from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.catalog import PermissionCatalog, get_catalog
from app.features.permissions.errors import (
    DuplicateRoleError,
    InvalidParentError,
    RoleInUseError,
    UnknownRoleError,
)
from app.features.permissions.models import CustomRole, Grant, RoleAssignment
from app.utils import get_logger


log = get_logger(__name__)

HIERARCHY_VERSION = "2025.07.1"

SUPER_ADMIN = "SUPER_ADMIN"

_TOKEN_PATTERN = re.compile(r"[^A-Z0-9]+")


@dataclass(frozen=True)
class RoleDefinition:
    """Static definition of a built-in role type."""

    role_type: str
    label: str
    parent: Optional[str]
    default_permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RoleHierarchyNode:
    role_type: str
    label: str
    parent: Optional[str]
    default_permissions: frozenset[str] = frozenset()
    is_custom: bool = False
    custom_role_id: Optional[str] = None
    tenant_id: Optional[str] = None
    description: Optional[str] = field(default=None, compare=False)


def role_type_token(name: str) -> str:
    """Derive the role-type token of a custom role: "Junior Admin" -> "JUNIOR_ADMIN"."""
    return _TOKEN_PATTERN.sub("_", name.strip().upper()).strip("_")


def _built_in_roles(catalog: PermissionCatalog) -> tuple[RoleDefinition, ...]:
    everything = catalog.keys()
    admin = frozenset(
        key for key in everything
        if catalog.get(key).resource != "TENANTS"
        and key not in {"EDIT_SYSTEM_SETTINGS", "DELETE_GDPR_DATA", "EXPORT_GDPR_DATA"}
    )
    return (
        RoleDefinition("GUEST", "Guest", None),
        RoleDefinition("EMPLOYEE", "Employee", "GUEST", frozenset({
            "VIEW_COURSES", "VIEW_SCHEDULES", "VIEW_DOCUMENTS", "DOWNLOAD_DOCUMENTS",
        })),
        RoleDefinition("VIEWER", "Viewer", "GUEST", frozenset({
            "VIEW_COURSES", "VIEW_SCHEDULES", "VIEW_REPORTS",
        })),
        RoleDefinition("AUDITOR", "Auditor", "VIEWER", frozenset({
            "VIEW_AUDIT_LOGS", "EXPORT_AUDIT_LOGS", "VIEW_GDPR", "VIEW_CONSENTS",
            "VIEW_ANALYTICS", "VIEW_COMPANIES", "VIEW_PERSONS",
        })),
        RoleDefinition("CONSULTANT", "Consultant", "VIEWER", frozenset({
            "VIEW_COMPANIES", "VIEW_ANALYTICS",
        })),
        RoleDefinition("TRAINER", "Trainer", "EMPLOYEE", frozenset({
            "VIEW_USERS", "VIEW_EMPLOYEES", "VIEW_REPORTS", "VIEW_ENROLLMENTS",
        })),
        RoleDefinition("EXTERNAL_TRAINER", "External trainer", "TRAINER"),
        RoleDefinition("SENIOR_TRAINER", "Senior trainer", "TRAINER", frozenset({
            "EDIT_COURSES", "VIEW_TRAINERS", "CREATE_SCHEDULES", "EDIT_SCHEDULES",
        })),
        RoleDefinition("TRAINER_COORDINATOR", "Trainer coordinator", "SENIOR_TRAINER", frozenset({
            "CREATE_COURSES", "CREATE_TRAINERS", "EDIT_TRAINERS", "MANAGE_ENROLLMENTS",
        })),
        RoleDefinition("MANAGER", "Manager", "EMPLOYEE", frozenset({
            "VIEW_USERS", "EDIT_USERS", "VIEW_COMPANIES", "VIEW_EMPLOYEES", "EDIT_EMPLOYEES",
            "VIEW_TRAINERS", "CREATE_SCHEDULES", "EDIT_SCHEDULES", "VIEW_REPORTS",
            "VIEW_ANALYTICS", "VIEW_ENROLLMENTS",
        })),
        RoleDefinition("HR_MANAGER", "HR manager", "MANAGER", frozenset({
            "CREATE_USERS", "CREATE_EMPLOYEES", "VIEW_PERSONS", "CREATE_PERSONS",
            "EDIT_PERSONS", "VIEW_ROLES", "ASSIGN_ROLES",
        })),
        RoleDefinition("COMPANY_ADMIN", "Company administrator", "MANAGER", frozenset({
            "CREATE_USERS", "DELETE_USERS", "EDIT_COMPANIES", "CREATE_COURSES", "EDIT_COURSES",
            "DELETE_COURSES", "CREATE_EMPLOYEES", "CREATE_TRAINERS", "EDIT_TRAINERS",
            "EXPORT_REPORTS", "VIEW_ROLES", "ASSIGN_ROLES", "REVOKE_ROLES", "MANAGE_ENROLLMENTS",
        })),
        RoleDefinition("ADMIN", "Administrator", "COMPANY_ADMIN", admin),
        RoleDefinition("TENANT_ADMIN", "Tenant administrator", "ADMIN", frozenset({
            "VIEW_TENANTS", "EDIT_TENANTS", "EXPORT_GDPR_DATA", "DELETE_GDPR_DATA",
        })),
        RoleDefinition(SUPER_ADMIN, "Super administrator", "TENANT_ADMIN", everything),
    )


def _validate_built_ins(definitions: Iterable[RoleDefinition], catalog: PermissionCatalog) -> Mapping[str, RoleDefinition]:
    by_type: Dict[str, RoleDefinition] = {}
    for definition in definitions:
        if definition.role_type in by_type:
            raise ValueError(f"Duplicate built-in role '{definition.role_type}'")
        unknown = definition.default_permissions - catalog.keys()
        if unknown:
            raise ValueError(f"Role '{definition.role_type}' references unknown permissions {sorted(unknown)}")
        by_type[definition.role_type] = definition

    for definition in by_type.values():
        seen = {definition.role_type}
        parent = definition.parent
        while parent is not None:
            if parent not in by_type:
                raise ValueError(f"Role '{definition.role_type}' has unknown ancestor '{parent}'")
            if parent in seen:
                raise ValueError(f"Cycle in built-in hierarchy at '{parent}'")
            seen.add(parent)
            parent = by_type[parent].parent
    return by_type


class RoleHierarchyRegistry:
    """Parent chains for built-in and tenant-defined role types."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditSink,
        cache: ResolvedPermissionCache,
        catalog: Optional[PermissionCatalog] = None,
        built_ins: Optional[Iterable[RoleDefinition]] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.cache = cache
        self.catalog = catalog or get_catalog()
        self.version = HIERARCHY_VERSION
        self._built_ins = _validate_built_ins(
            built_ins if built_ins is not None else _built_in_roles(self.catalog),
            self.catalog,
        )

    @property
    def built_in_types(self) -> frozenset[str]:
        return frozenset(self._built_ins)

    def is_built_in(self, role_type: str) -> bool:
        return role_type in self._built_ins

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_custom_roles(self, session: AsyncSession, tenant_id: Optional[str]) -> Dict[str, CustomRole]:
        if tenant_id is None:
            return {}
        result = await session.execute(
            select(CustomRole).where(CustomRole.tenant_id == tenant_id, CustomRole.deleted_at.is_(None))
        )
        return {role.role_type: role for role in result.scalars().all()}

    def _node(self, role_type: str, custom_roles: Mapping[str, CustomRole]) -> Optional[RoleHierarchyNode]:
        custom = custom_roles.get(role_type)
        if custom is not None:
            return RoleHierarchyNode(
                role_type=custom.role_type,
                label=custom.name,
                parent=custom.parent_role_type,
                is_custom=True,
                custom_role_id=custom.id,
                tenant_id=custom.tenant_id,
                description=custom.description,
            )
        definition = self._built_ins.get(role_type)
        if definition is None:
            return None
        return RoleHierarchyNode(
            role_type=definition.role_type,
            label=definition.label,
            parent=definition.parent,
            default_permissions=definition.default_permissions,
        )

    def chain_nodes(
        self,
        role_type: str,
        tenant_id: Optional[str],
        custom_roles: Mapping[str, CustomRole],
    ) -> List[RoleHierarchyNode]:
        """Walk from ``role_type`` to the root using already-loaded custom roles."""
        chain: List[RoleHierarchyNode] = []
        seen: set[str] = set()
        current: Optional[str] = role_type
        while current is not None:
            if current in seen:
                # Registration rejects cycles; reaching this means the table was edited by hand
                raise InvalidParentError(f"Cycle detected in role hierarchy at '{current}'")
            node = self._node(current, custom_roles)
            if node is None:
                raise UnknownRoleError(current, tenant_id)
            seen.add(current)
            chain.append(node)
            current = node.parent
        return chain

    async def resolve_nodes(
        self,
        role_type: str,
        tenant_id: Optional[str],
        session: Optional[AsyncSession] = None,
    ) -> List[RoleHierarchyNode]:
        if session is not None:
            custom_roles = await self.load_custom_roles(session, tenant_id)
        else:
            async with self.session_factory() as own_session:
                custom_roles = await self.load_custom_roles(own_session, tenant_id)
        return self.chain_nodes(role_type, tenant_id, custom_roles)

    async def resolve_parent_chain(self, role_type: str, tenant_id: Optional[str]) -> List[str]:
        """
        Ordered role types from ``role_type`` up to the root.

        Raises:
            UnknownRoleError: role is neither built-in nor a live custom role of the tenant
        """
        nodes = await self.resolve_nodes(role_type, tenant_id)
        return [node.role_type for node in nodes]

    async def get_node(self, role_type: str, tenant_id: Optional[str]) -> RoleHierarchyNode:
        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)
        node = self._node(role_type, custom_roles)
        if node is None:
            raise UnknownRoleError(role_type, tenant_id)
        return node

    async def list_roles(self, tenant_id: Optional[str]) -> List[RoleHierarchyNode]:
        """Built-in roles followed by the tenant's live custom roles."""
        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)
        nodes = [self._node(role_type, {}) for role_type in self._built_ins]
        nodes.extend(self._node(role_type, custom_roles) for role_type in sorted(custom_roles))
        return nodes

    async def can_assign(self, assigner_role_type: str, target_role_type: str, tenant_id: Optional[str]) -> bool:
        """
        Whether a holder of ``assigner_role_type`` may hand out ``target_role_type``.

        Allowed when the assigner inherits from the target (the target is a strict
        ancestor of the assigner), when the target is a custom role derived from
        the assigner through custom links only, or when the assigner is SUPER_ADMIN.
        """
        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)
        target_chain = self.chain_nodes(target_role_type, tenant_id, custom_roles)
        if assigner_role_type == SUPER_ADMIN:
            return True
        assigner_chain = [node.role_type for node in self.chain_nodes(assigner_role_type, tenant_id, custom_roles)]
        if target_role_type in assigner_chain[1:]:
            return True
        if not target_chain[0].is_custom:
            return False
        # Only custom links count; stop at the built-in base.
        for node in target_chain[1:]:
            if node.role_type == assigner_role_type:
                return True
            if not node.is_custom:
                break
        return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def register_custom_role(
        self,
        name: str,
        parent_role_type: str,
        tenant_id: str,
        created_by: Optional[str],
        description: Optional[str] = None,
    ) -> str:
        """
        Register a tenant custom role and return its role-type token.

        Raises:
            DuplicateRoleError: a built-in or live custom role already uses the token
            InvalidParentError: the parent is missing or the new role would be its own ancestor
        """
        role_type = role_type_token(name)
        if not role_type:
            raise ValueError("Role name must contain at least one letter or digit")

        if parent_role_type == role_type:
            raise InvalidParentError(f"Role '{role_type}' cannot be its own parent")

        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)

            if role_type in self._built_ins or role_type in custom_roles:
                raise DuplicateRoleError(f"Role '{role_type}' already exists for tenant {tenant_id}")

            try:
                parent_chain = self.chain_nodes(parent_role_type, tenant_id, custom_roles)
            except UnknownRoleError:
                raise InvalidParentError(f"Parent role '{parent_role_type}' does not exist")

            if any(node.role_type == role_type for node in parent_chain):
                raise InvalidParentError(f"Role '{role_type}' would be its own ancestor")

            custom_role = CustomRole(
                tenant_id=tenant_id,
                role_type=role_type,
                name=name.strip(),
                description=description,
                parent_role_type=parent_role_type,
                created_by_id=created_by,
            )
            session.add(custom_role)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateRoleError(f"Role '{role_type}' already exists for tenant {tenant_id}")

        log.info("Registered custom role %s (parent %s) in tenant %s", role_type, parent_role_type, tenant_id)
        await self.audit.emit(AuditEvent(
            action="custom_role.registered",
            resource_type="custom_role",
            resource_id=custom_role.id,
            actor_id=created_by,
            tenant_id=tenant_id,
            details={"role_type": role_type, "parent_role_type": parent_role_type},
        ))
        return role_type

    async def get_custom_role(self, tenant_id: str, role_type: str) -> CustomRole:
        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)
        custom = custom_roles.get(role_type)
        if custom is None:
            raise UnknownRoleError(role_type, tenant_id)
        return custom

    async def deactivate_custom_role(self, tenant_id: str, role_type: str, actor_id: Optional[str]) -> None:
        """
        Soft-delete a custom role together with its grants.

        Raises:
            UnknownRoleError: no live custom role with this token
            RoleInUseError: another custom role extends it or a live assignment uses it
        """
        async with self.session_factory() as session:
            custom_roles = await self.load_custom_roles(session, tenant_id)
            custom = custom_roles.get(role_type)
            if custom is None:
                raise UnknownRoleError(role_type, tenant_id)

            children = sorted(r.role_type for r in custom_roles.values() if r.parent_role_type == role_type)
            if children:
                raise RoleInUseError(f"Role '{role_type}' is the parent of {', '.join(children)}")

            in_use = await session.scalar(
                select(func.count()).select_from(RoleAssignment).where(
                    RoleAssignment.tenant_id == tenant_id,
                    RoleAssignment.role_type == role_type,
                    RoleAssignment.deleted_at.is_(None),
                )
            )
            if in_use:
                raise RoleInUseError(f"Role '{role_type}' still has {in_use} assignment(s)")

            now = utcnow()
            custom.soft_delete(now)
            await session.execute(
                update(Grant)
                .where(Grant.custom_role_id == custom.id, Grant.deleted_at.is_(None))
                .values(deleted_at=now, version=Grant.version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        self.cache.invalidate_tenant(tenant_id)
        log.info("Deactivated custom role %s in tenant %s", role_type, tenant_id)
        await self.audit.emit(AuditEvent(
            action="custom_role.deactivated",
            resource_type="custom_role",
            resource_id=custom.id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            details={"role_type": role_type},
        ))
