"""
Pydantic schemas for person-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from app.features.persons.models import PersonStatus


class PersonBase(BaseModel):
    """Base person schema with common fields."""
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class PersonCreate(PersonBase):
    """Schema for creating a new person."""
    tenant_id: str | None = Field(None, description="Home tenant")


class PersonUpdate(BaseModel):
    """Schema for updating person information."""
    first_name: str | None = Field(None, min_length=1, max_length=100)
    last_name: str | None = Field(None, min_length=1, max_length=100)
    status: PersonStatus | None = None


class PersonResponse(PersonBase):
    """Schema for person responses."""
    id: str
    status: PersonStatus
    tenant_id: str | None = None
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
