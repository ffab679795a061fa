"""
Tenant feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.persons.dependencies import Identity, get_current_identity
from app.features.permissions.dependencies import get_authz, ensure_permission
from app.features.permissions.engine import AuthorizationEngine
from app.features.tenants.models import Tenant
from app.features.tenants.schemas import TenantCreate, TenantUpdate, TenantResponse
from app.features.tenants.dependencies import get_tenant_by_id
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["tenants"])


@router.post("/", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    tenant_data: TenantCreate,
    request: Request,
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a tenant (global CREATE_TENANTS only)."""
    await ensure_permission(authz, identity, "CREATE_TENANTS", None, request)

    new_tenant = Tenant(**tenant_data.model_dump())
    db.add(new_tenant)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Tenant with this slug already exists"
        )
    await db.refresh(new_tenant)

    log.info("Created tenant %s (%s)", new_tenant.id, new_tenant.slug)
    return new_tenant


@router.get("/", response_model=list[TenantResponse])
async def list_tenants(
    request: Request,
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50
):
    """List live tenants (global VIEW_TENANTS only)."""
    await ensure_permission(authz, identity, "VIEW_TENANTS", None, request)

    query = (
        select(Tenant)
        .where(Tenant.deleted_at.is_(None))
        .order_by(Tenant.name)
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{tenant_id}", response_model=TenantResponse)
async def get_tenant(
    request: Request,
    tenant: Annotated[Tenant, Depends(get_tenant_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)]
):
    """Get tenant by ID."""
    await ensure_permission(authz, identity, "VIEW_TENANTS", tenant.id, request)
    return tenant


@router.patch("/{tenant_id}", response_model=TenantResponse)
async def update_tenant(
    update_data: TenantUpdate,
    request: Request,
    tenant: Annotated[Tenant, Depends(get_tenant_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update tenant information."""
    await ensure_permission(authz, identity, "EDIT_TENANTS", tenant.id, request)

    # Update only provided fields
    update_dict = update_data.model_dump(exclude_unset=True)
    for field, value in update_dict.items():
        setattr(tenant, field, value)

    await db.commit()
    await db.refresh(tenant)

    if "is_active" in update_dict:
        authz.cache.invalidate_tenant(tenant.id)
    return tenant


@router.delete("/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(
    request: Request,
    tenant: Annotated[Tenant, Depends(get_tenant_by_id)],
    identity: Annotated[Identity, Depends(get_current_identity)],
    authz: Annotated[AuthorizationEngine, Depends(get_authz)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Soft-delete a tenant (global DELETE_TENANTS only). Its assignments stop applying."""
    await ensure_permission(authz, identity, "DELETE_TENANTS", None, request)

    tenant.soft_delete()
    await db.commit()

    authz.cache.invalidate_tenant(tenant.id)
    log.info("Deleted tenant %s", tenant.id)
