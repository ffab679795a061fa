"""
Tenant-related dependency injection functions.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.tenants.models import Tenant


async def get_tenant_by_id(
    tenant_id: str,
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Tenant:
    """
    Get a live tenant by ID or raise 404.

    Args:
        tenant_id: Tenant ULID
        db: Database session

    Returns:
        Tenant model

    Raises:
        HTTPException: 404 if the tenant does not exist or was soft-deleted
    """
    result = await db.execute(
        select(Tenant).where(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
    )
    tenant = result.scalar_one_or_none()

    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found"
        )

    return tenant
