"""
Pydantic schemas for tenant requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class TenantBase(BaseModel):
    """Base tenant schema."""
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, pattern="^[a-z0-9][a-z0-9-]*$")


class TenantCreate(TenantBase):
    """Schema for creating a new tenant."""
    pass


class TenantUpdate(BaseModel):
    """Schema for updating tenant information."""
    name: str | None = Field(None, min_length=1, max_length=255)
    is_active: bool | None = None


class TenantResponse(TenantBase):
    """Schema for tenant responses."""
    id: str
    is_active: bool
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
