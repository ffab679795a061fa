"""Role hierarchy registry tests."""

import pytest

from app.features.permissions.cache import ResolvedPermissionCache
from app.features.permissions.errors import (
    DuplicateRoleError,
    InvalidParentError,
    RoleInUseError,
    UnknownRoleError,
)
from app.features.permissions.hierarchy import (
    RoleDefinition,
    RoleHierarchyRegistry,
    role_type_token,
)


pytestmark = pytest.mark.asyncio


def test_role_type_token() -> None:
    assert role_type_token("Junior Admin") == "JUNIOR_ADMIN"
    assert role_type_token("  test-project  manager ") == "TEST_PROJECT_MANAGER"
    assert role_type_token("HR / Payroll") == "HR_PAYROLL"


async def test_built_in_chain_runs_leaf_to_root(authz, tenant) -> None:
    chain = await authz.registry.resolve_parent_chain("ADMIN", tenant.id)

    assert chain == ["ADMIN", "COMPANY_ADMIN", "MANAGER", "EMPLOYEE", "GUEST"]
    assert await authz.registry.resolve_parent_chain("GUEST", tenant.id) == ["GUEST"]


async def test_unknown_role_is_an_error(authz, tenant) -> None:
    with pytest.raises(UnknownRoleError) as excinfo:
        await authz.registry.resolve_parent_chain("WIZARD", tenant.id)

    assert excinfo.value.role_type == "WIZARD"


async def test_register_custom_role(authz, tenant, admin, audit) -> None:
    role_type = await authz.registry.register_custom_role(
        "Junior Admin", "ADMIN", tenant.id, created_by=admin.id, description="Admin without deletes"
    )

    assert role_type == "JUNIOR_ADMIN"
    chain = await authz.registry.resolve_parent_chain("JUNIOR_ADMIN", tenant.id)
    assert chain[:2] == ["JUNIOR_ADMIN", "ADMIN"]
    assert chain[-1] == "GUEST"

    node = await authz.registry.get_node("JUNIOR_ADMIN", tenant.id)
    assert node.is_custom
    assert node.custom_role_id is not None
    assert node.default_permissions == frozenset()

    registered = audit.of("custom_role.registered")
    assert len(registered) == 1
    assert registered[0].details["role_type"] == "JUNIOR_ADMIN"
    assert registered[0].actor_id == admin.id


async def test_custom_roles_are_tenant_scoped(authz, tenant, make_tenant) -> None:
    other = await make_tenant()
    await authz.registry.register_custom_role("Junior Admin", "ADMIN", tenant.id, created_by=None)

    with pytest.raises(UnknownRoleError):
        await authz.registry.resolve_parent_chain("JUNIOR_ADMIN", other.id)
    # Another tenant may use the same name
    assert await authz.registry.register_custom_role("Junior Admin", "ADMIN", other.id, created_by=None) == "JUNIOR_ADMIN"


async def test_self_parent_is_rejected_and_never_registered(authz, tenant) -> None:
    with pytest.raises(InvalidParentError):
        await authz.registry.register_custom_role("A", "A", tenant.id, created_by=None)

    with pytest.raises(UnknownRoleError):
        await authz.registry.resolve_parent_chain("A", tenant.id)
    roles = await authz.registry.list_roles(tenant.id)
    assert "A" not in {node.role_type for node in roles}


async def test_missing_parent_is_rejected(authz, tenant) -> None:
    with pytest.raises(InvalidParentError):
        await authz.registry.register_custom_role("Night Shift", "SUPERVISOR", tenant.id, created_by=None)


async def test_duplicates_are_rejected(authz, tenant) -> None:
    await authz.registry.register_custom_role("Junior Admin", "ADMIN", tenant.id, created_by=None)

    with pytest.raises(DuplicateRoleError):
        await authz.registry.register_custom_role("junior admin", "MANAGER", tenant.id, created_by=None)
    with pytest.raises(DuplicateRoleError):
        await authz.registry.register_custom_role("Admin", "MANAGER", tenant.id, created_by=None)


async def test_custom_role_can_extend_custom_role(authz, tenant) -> None:
    await authz.registry.register_custom_role("Project Manager", "MANAGER", tenant.id, created_by=None)
    await authz.registry.register_custom_role("Lead Project Manager", "PROJECT_MANAGER", tenant.id, created_by=None)

    chain = await authz.registry.resolve_parent_chain("LEAD_PROJECT_MANAGER", tenant.id)
    assert chain == ["LEAD_PROJECT_MANAGER", "PROJECT_MANAGER", "MANAGER", "EMPLOYEE", "GUEST"]


async def test_list_roles_contains_built_ins_and_tenant_roles(authz, tenant) -> None:
    await authz.registry.register_custom_role("Junior Admin", "ADMIN", tenant.id, created_by=None)

    role_types = [node.role_type for node in await authz.registry.list_roles(tenant.id)]

    assert set(authz.registry.built_in_types) <= set(role_types)
    assert "JUNIOR_ADMIN" in role_types
    assert "JUNIOR_ADMIN" not in [node.role_type for node in await authz.registry.list_roles(None)]


async def test_can_assign(authz, tenant) -> None:
    registry = authz.registry
    await registry.register_custom_role("Test Project Manager", "MANAGER", tenant.id, created_by=None)

    assert await registry.can_assign("ADMIN", "MANAGER", tenant.id)
    assert not await registry.can_assign("MANAGER", "ADMIN", tenant.id)
    assert not await registry.can_assign("MANAGER", "MANAGER", tenant.id)
    assert await registry.can_assign("MANAGER", "TEST_PROJECT_MANAGER", tenant.id)
    assert not await registry.can_assign("EMPLOYEE", "TEST_PROJECT_MANAGER", tenant.id)
    assert not await registry.can_assign("GUEST", "TEST_PROJECT_MANAGER", tenant.id)
    assert await registry.can_assign("SUPER_ADMIN", "SUPER_ADMIN", tenant.id)
    with pytest.raises(UnknownRoleError):
        await registry.can_assign("ADMIN", "WIZARD", tenant.id)


async def test_can_assign_custom_chain_stops_at_built_in_base(authz, tenant) -> None:
    registry = authz.registry
    await registry.register_custom_role("Project Manager", "MANAGER", tenant.id, created_by=None)
    await registry.register_custom_role("Lead Project Manager", "PROJECT_MANAGER", tenant.id, created_by=None)

    assert await registry.can_assign("PROJECT_MANAGER", "LEAD_PROJECT_MANAGER", tenant.id)
    assert await registry.can_assign("MANAGER", "LEAD_PROJECT_MANAGER", tenant.id)
    assert await registry.can_assign("LEAD_PROJECT_MANAGER", "PROJECT_MANAGER", tenant.id)
    assert not await registry.can_assign("EMPLOYEE", "LEAD_PROJECT_MANAGER", tenant.id)
    assert not await registry.can_assign("ADMIN", "LEAD_PROJECT_MANAGER", tenant.id)


async def test_deactivate_custom_role(authz, tenant, subject, audit) -> None:
    registry = authz.registry
    await registry.register_custom_role("Project Manager", "MANAGER", tenant.id, created_by=None)
    await registry.register_custom_role("Lead Project Manager", "PROJECT_MANAGER", tenant.id, created_by=None)

    with pytest.raises(RoleInUseError):
        await registry.deactivate_custom_role(tenant.id, "PROJECT_MANAGER", actor_id=None)

    assignment = await authz.assignments.assign_role(subject.id, tenant.id, "LEAD_PROJECT_MANAGER", assigned_by=None)
    with pytest.raises(RoleInUseError):
        await registry.deactivate_custom_role(tenant.id, "LEAD_PROJECT_MANAGER", actor_id=None)

    await authz.assignments.revoke_role(assignment.id, revoked_by=None)
    await registry.deactivate_custom_role(tenant.id, "LEAD_PROJECT_MANAGER", actor_id=None)

    with pytest.raises(UnknownRoleError):
        await registry.resolve_parent_chain("LEAD_PROJECT_MANAGER", tenant.id)
    assert "custom_role.deactivated" in audit.actions()
    # The token is free again
    await registry.register_custom_role("Lead Project Manager", "PROJECT_MANAGER", tenant.id, created_by=None)


async def test_deactivating_unknown_custom_role(authz, tenant) -> None:
    with pytest.raises(UnknownRoleError):
        await authz.registry.deactivate_custom_role(tenant.id, "ADMIN", actor_id=None)


def test_built_in_configuration_is_validated(session_factory, audit) -> None:
    cache = ResolvedPermissionCache(60)

    with pytest.raises(ValueError):
        RoleHierarchyRegistry(session_factory, audit, cache, built_ins=[
            RoleDefinition("ROOT", "Root", None, frozenset({"FLY_SPACESHIPS"})),
        ])
    with pytest.raises(ValueError):
        RoleHierarchyRegistry(session_factory, audit, cache, built_ins=[
            RoleDefinition("A", "A", "B"),
            RoleDefinition("B", "B", "A"),
        ])
    with pytest.raises(ValueError):
        RoleHierarchyRegistry(session_factory, audit, cache, built_ins=[
            RoleDefinition("A", "A", "MISSING"),
        ])
