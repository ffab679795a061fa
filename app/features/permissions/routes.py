"""
Permission management API routes.

Provides endpoints for the permission catalog, permission checks, custom roles,
role assignments, grants, and audit logs.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.persons.dependencies import Identity, get_current_identity
from app.features.persons.schemas import PersonResponse
from app.features.permissions.engine import AuthorizationEngine
from app.features.permissions.errors import (
    PermissionDeniedError,
    UnknownRoleError,
)
from app.features.permissions.hierarchy import RoleHierarchyNode
from app.features.permissions.models import AuditLog, RoleAssignment
from app.features.permissions.schemas import (
    PermissionDefinitionResponse,
    CatalogResponse,
    RoleNodeResponse,
    RoleListResponse,
    CustomRoleCreate,
    CustomRoleResponse,
    RoleStatisticsResponse,
    RoleHolderResponse,
    AssignmentCreate,
    AssignmentResponse,
    VersionedRequest,
    GrantUpsert,
    GrantResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    DecisionResponse,
    EffectivePermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    get_authz,
    require_permission,
    ensure_permission,
    request_context,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _tenant_required(identity: Identity) -> str:
    if identity.tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant context required"
        )
    return identity.tenant_id


def _node_response(node: RoleHierarchyNode) -> RoleNodeResponse:
    return RoleNodeResponse(
        role_type=node.role_type,
        label=node.label,
        parent=node.parent,
        default_permissions=sorted(node.default_permissions),
        is_custom=node.is_custom,
        custom_role_id=node.custom_role_id,
        description=node.description,
    )


async def _caller_may_assign(
    authz: AuthorizationEngine,
    identity: Identity,
    role_type: str,
    tenant_id: Optional[str],
) -> bool:
    """The caller must hold a role strictly above ``role_type`` (or SUPER_ADMIN)."""
    held = await authz.assignments.list_assignments(identity.person.id, tenant_id)
    for assignment in held:
        try:
            if await authz.registry.can_assign(assignment.role_type, role_type, tenant_id):
                return True
        except UnknownRoleError:
            # The caller's own role may be a deactivated custom role; the target is validated below
            continue
    # Surfaces UnknownRoleError for an unknown target even when the caller holds nothing
    await authz.registry.resolve_parent_chain(role_type, tenant_id)
    return False


async def _ensure_may_grant(
    authz: AuthorizationEngine,
    identity: Identity,
    permission_key: str,
    granted: bool,
    tenant_id: Optional[str],
    request: Request,
) -> None:
    """Allowing a key requires the caller to hold it in the same tenant. Denying needs nothing more."""
    # Unknown keys are rejected by the grant store with a 422
    if not granted or not authz.catalog.is_valid_key(permission_key):
        return
    await ensure_permission(authz, identity, permission_key, tenant_id, request)


async def _load_assignment(
    authz: AuthorizationEngine,
    identity: Identity,
    assignment_id: str,
    key: str,
    request: Request,
) -> RoleAssignment:
    assignment = await authz.assignments.get_assignment(assignment_id)
    await ensure_permission(authz, identity, key, assignment.tenant_id, request)
    return assignment


# ============================================================================
# Catalog Routes
# ============================================================================

@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog_route(
    resource: Optional[str] = None,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """List every known permission key, optionally for one resource."""
    definitions = authz.catalog.definitions()
    if resource:
        keys = authz.catalog.permissions_for_resource(resource)
        definitions = [definition for definition in definitions if definition.key in keys]

    return CatalogResponse(
        version=authz.catalog.version,
        permissions=[PermissionDefinitionResponse.model_validate(d) for d in definitions],
    )


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Check permission keys for the current person."""
    tenant_id = check_request.tenant_id or identity.tenant_id
    context = request_context(request)

    allowed, results = await authz.gate.check(
        identity.person.id, tenant_id, check_request.permission_keys, check_request.mode, context
    )

    return PermissionCheckResponse(allowed=allowed, results=results)


@router.get("/effective", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    request: Request,
    person_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    explain: bool = False,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """
    Resolved permissions of a person in a tenant.

    Anyone may read their own; reading another person's requires VIEW_ROLES.
    """
    subject_id = person_id or identity.person.id
    tenant_id = tenant_id or identity.tenant_id
    if subject_id != identity.person.id or tenant_id != identity.tenant_id:
        await ensure_permission(authz, identity, "VIEW_ROLES", tenant_id, request)

    decisions = None
    if explain:
        explained = await authz.resolver.explain(subject_id, tenant_id)
        permissions = {key: decision.granted for key, decision in explained.items()}
        decisions = {
            key: DecisionResponse(
                granted=decision.granted,
                source=decision.source,
                role_type=decision.role_type,
                assignment_id=decision.assignment_id,
                grant_id=decision.grant_id,
                granted_at=decision.granted_at,
            )
            for key, decision in explained.items()
        }
    else:
        permissions = await authz.resolver.resolve(subject_id, tenant_id)

    return EffectivePermissionsResponse(
        person_id=subject_id,
        tenant_id=tenant_id,
        permissions=permissions,
        granted=sorted(key for key, granted in permissions.items() if granted),
        decisions=decisions,
    )


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=RoleListResponse)
async def list_roles(
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("VIEW_ROLES"))
):
    """List built-in roles and the tenant's custom roles."""
    nodes = await authz.registry.list_roles(identity.tenant_id)
    return RoleListResponse(
        hierarchy_version=authz.registry.version,
        roles=[_node_response(node) for node in nodes],
    )


@router.get("/roles/statistics", response_model=RoleStatisticsResponse)
async def role_statistics(
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("VIEW_ROLES"))
):
    """Number of active assignments per role type in the current tenant."""
    tenant_id = _tenant_required(identity)
    counts = await authz.assignments.role_statistics(tenant_id)
    return RoleStatisticsResponse(tenant_id=tenant_id, counts=counts, total=sum(counts.values()))


@router.post("/roles", response_model=CustomRoleResponse, status_code=status.HTTP_201_CREATED)
async def register_custom_role(
    role_data: CustomRoleCreate,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("CREATE_ROLES"))
):
    """Register a custom role in the current tenant."""
    tenant_id = _tenant_required(identity)
    role_type = await authz.registry.register_custom_role(
        name=role_data.name,
        parent_role_type=role_data.parent_role_type,
        tenant_id=tenant_id,
        created_by=identity.person.id,
        description=role_data.description,
    )
    return await authz.registry.get_custom_role(tenant_id, role_type)


@router.get("/roles/{role_type}", response_model=RoleNodeResponse)
async def get_role(
    role_type: str,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("VIEW_ROLES"))
):
    """Get a role type by token."""
    node = await authz.registry.get_node(role_type.upper(), identity.tenant_id)
    return _node_response(node)


@router.get("/roles/{role_type}/assignments", response_model=List[RoleHolderResponse])
async def list_role_holders(
    role_type: str,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("VIEW_ROLES"))
):
    """List who holds a role in the current tenant."""
    holders = await authz.assignments.list_holders(role_type, _tenant_required(identity))
    return [
        RoleHolderResponse(
            assignment=AssignmentResponse.model_validate(assignment),
            person=PersonResponse.model_validate(person),
        )
        for assignment, person in holders
    ]


@router.delete("/roles/{role_type}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_custom_role(
    role_type: str,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("DELETE_ROLES"))
):
    """Deactivate a custom role of the current tenant."""
    tenant_id = _tenant_required(identity)
    await authz.registry.deactivate_custom_role(tenant_id, role_type.upper(), identity.person.id)
    return None


@router.get("/roles/{role_type}/grants", response_model=List[GrantResponse])
async def list_custom_role_grants(
    role_type: str,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("VIEW_ROLES"))
):
    """List the grants of a custom role."""
    custom = await authz.registry.get_custom_role(_tenant_required(identity), role_type.upper())
    return await authz.grants.role_grant_records(custom.id)


@router.put("/roles/{role_type}/grants/{permission_key}", response_model=GrantResponse)
async def upsert_custom_role_grant(
    role_type: str,
    permission_key: str,
    grant_data: GrantUpsert,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("EDIT_ROLES"))
):
    """Allow or deny a permission on a custom role."""
    custom = await authz.registry.get_custom_role(_tenant_required(identity), role_type.upper())
    await _ensure_may_grant(authz, identity, permission_key, grant_data.granted, custom.tenant_id, request)
    return await authz.grants.upsert_role_grant(
        custom.id, permission_key, grant_data.granted, identity.person.id, grant_data.expected_version
    )


@router.delete("/roles/{role_type}/grants/{permission_key}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_custom_role_grant(
    role_type: str,
    permission_key: str,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(require_permission("EDIT_ROLES"))
):
    """Remove a grant from a custom role."""
    custom = await authz.registry.get_custom_role(_tenant_required(identity), role_type.upper())
    await authz.grants.revoke_role_grant(custom.id, permission_key, identity.person.id)
    return None


# ============================================================================
# Assignment Routes
# ============================================================================

@router.get("/assignments", response_model=List[AssignmentResponse])
async def list_assignments(
    request: Request,
    person_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """List active assignments of a person (the caller by default)."""
    subject_id = person_id or identity.person.id
    tenant_id = tenant_id or identity.tenant_id
    if subject_id != identity.person.id or tenant_id != identity.tenant_id:
        await ensure_permission(authz, identity, "VIEW_ROLES", tenant_id, request)
    return await authz.assignments.list_assignments(subject_id, tenant_id)


@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    assignment_data: AssignmentCreate,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Assign a role to a person."""
    role_type = assignment_data.role_type.upper()
    tenant_id = None if assignment_data.is_global else (assignment_data.tenant_id or identity.tenant_id)

    await ensure_permission(authz, identity, "ASSIGN_ROLES", tenant_id, request)
    if not await _caller_may_assign(authz, identity, role_type, tenant_id):
        raise PermissionDeniedError(f"Permission denied: cannot assign {role_type}")

    return await authz.assignments.assign_role(
        subject_id=assignment_data.person_id,
        tenant_id=tenant_id,
        role_type=role_type,
        assigned_by=identity.person.id,
        is_primary=assignment_data.is_primary,
        valid_until=assignment_data.valid_until,
    )


@router.post("/assignments/expire")
async def expire_assignments(
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Deactivate every assignment past its expiry. Global operation."""
    await ensure_permission(authz, identity, "REVOKE_ROLES", None, request)
    expired = await authz.assignments.expire_assignments()
    return {"expired": expired}


@router.get("/assignments/{assignment_id}", response_model=AssignmentResponse)
async def get_assignment(
    assignment_id: str,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Get an assignment by ID."""
    return await _load_assignment(authz, identity, assignment_id, "VIEW_ROLES", request)


@router.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_assignment(
    assignment_id: str,
    request: Request,
    expected_version: Optional[int] = None,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Revoke an assignment together with its grants."""
    await _load_assignment(authz, identity, assignment_id, "REVOKE_ROLES", request)
    await authz.assignments.revoke_role(assignment_id, identity.person.id, expected_version)
    return None


@router.post("/assignments/{assignment_id}/primary", response_model=AssignmentResponse)
async def set_primary_assignment(
    assignment_id: str,
    body: VersionedRequest,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Make an assignment the person's primary one in its tenant."""
    await _load_assignment(authz, identity, assignment_id, "ASSIGN_ROLES", request)
    return await authz.assignments.set_primary(assignment_id, identity.person.id, body.expected_version)


@router.get("/assignments/{assignment_id}/grants", response_model=List[GrantResponse])
async def list_assignment_grants(
    assignment_id: str,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """List the live grants of an assignment."""
    await _load_assignment(authz, identity, assignment_id, "VIEW_ROLES", request)
    return await authz.grants.grant_records(assignment_id)


@router.put("/assignments/{assignment_id}/grants/{permission_key}", response_model=GrantResponse)
async def upsert_assignment_grant(
    assignment_id: str,
    permission_key: str,
    grant_data: GrantUpsert,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Allow or deny a permission on an assignment."""
    assignment = await _load_assignment(authz, identity, assignment_id, "EDIT_ROLES", request)
    await _ensure_may_grant(authz, identity, permission_key, grant_data.granted, assignment.tenant_id, request)
    return await authz.grants.upsert_grant(
        assignment_id, permission_key, grant_data.granted, identity.person.id, grant_data.expected_version
    )


@router.delete("/assignments/{assignment_id}/grants/{permission_key}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_assignment_grant(
    assignment_id: str,
    permission_key: str,
    request: Request,
    authz: AuthorizationEngine = Depends(get_authz),
    identity: Identity = Depends(get_current_identity)
):
    """Remove a grant from an assignment. Removing a missing grant succeeds."""
    await _load_assignment(authz, identity, assignment_id, "EDIT_ROLES", request)
    await authz.grants.revoke_grant(assignment_id, permission_key, identity.person.id)
    return None


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_permission("VIEW_AUDIT_LOGS"))
):
    """List audit logs of the current tenant with optional filtering."""
    stmt = select(AuditLog).where(AuditLog.tenant_id == identity.tenant_id)

    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
