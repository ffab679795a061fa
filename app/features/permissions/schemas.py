"""
Pydantic schemas for permission management.

Request and response models for the catalog, roles, assignments, grants,
permission checks, and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.persons.schemas import PersonResponse


# ============================================================================
# Catalog Schemas
# ============================================================================

class PermissionDefinitionResponse(BaseModel):
    """One catalog entry."""
    key: str
    resource: str
    action: str
    label: str

    model_config = ConfigDict(from_attributes=True)


class CatalogResponse(BaseModel):
    version: str
    permissions: List[PermissionDefinitionResponse]


# ============================================================================
# Role Schemas
# ============================================================================

class RoleNodeResponse(BaseModel):
    """A built-in or custom role type and its place in the hierarchy."""
    role_type: str
    label: str
    parent: Optional[str]
    default_permissions: List[str] = []
    is_custom: bool
    custom_role_id: Optional[str] = None
    description: Optional[str] = None


class RoleListResponse(BaseModel):
    hierarchy_version: str
    roles: List[RoleNodeResponse]


class CustomRoleCreate(BaseModel):
    """Schema for registering a tenant custom role."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name, e.g. 'Junior Admin'")
    parent_role_type: str = Field(..., min_length=1, max_length=100, description="Role type to inherit from")
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator('name')
    @classmethod
    def name_has_token(cls, v: str) -> str:
        """Names must yield a non-empty role-type token."""
        if not any(ch.isalnum() for ch in v):
            raise ValueError('Role name must contain at least one letter or digit')
        return v.strip()

    @field_validator('parent_role_type')
    @classmethod
    def parent_uppercase(cls, v: str) -> str:
        return v.strip().upper()


class CustomRoleResponse(BaseModel):
    id: str
    tenant_id: str
    role_type: str
    name: str
    description: Optional[str]
    parent_role_type: str
    created_by_id: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleStatisticsResponse(BaseModel):
    tenant_id: str
    counts: Dict[str, int]
    total: int


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignmentCreate(BaseModel):
    """Schema for assigning a role to a person."""
    person_id: str = Field(..., description="Person ID")
    role_type: str = Field(..., min_length=1, max_length=100, description="Built-in or custom role type")
    tenant_id: Optional[str] = Field(None, description="Tenant ID (defaults to the caller's tenant)")
    is_global: bool = Field(False, description="Assign across all tenants; requires SUPER_ADMIN")
    is_primary: bool = False
    valid_until: Optional[datetime] = Field(None, description="Assignment stops applying after this instant")


class AssignmentResponse(BaseModel):
    id: str
    person_id: str
    tenant_id: Optional[str]
    role_type: str
    is_active: bool
    is_primary: bool
    assigned_by_id: Optional[str]
    assigned_at: datetime
    valid_until: Optional[datetime]
    version: int

    model_config = ConfigDict(from_attributes=True)


class RoleHolderResponse(BaseModel):
    """An assignment of a role together with the person holding it."""
    assignment: AssignmentResponse
    person: PersonResponse


class VersionedRequest(BaseModel):
    """Optimistic concurrency token read from a previous response."""
    expected_version: Optional[int] = Field(None, ge=0)


# ============================================================================
# Grant Schemas
# ============================================================================

class GrantUpsert(BaseModel):
    """Schema for setting an explicit allow or deny."""
    granted: bool
    expected_version: Optional[int] = Field(
        None, ge=0, description="Version last read; 0 when no grant existed"
    )


class GrantResponse(BaseModel):
    id: str
    role_assignment_id: Optional[str]
    custom_role_id: Optional[str]
    permission_key: str
    granted: bool
    granted_at: datetime
    granted_by_id: Optional[str]
    version: int

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking permissions of the current person."""
    permission_keys: List[str] = Field(..., min_length=1, description="Permission keys, e.g. VIEW_EMPLOYEES")
    mode: str = Field("all", pattern="^(all|any)$")
    tenant_id: Optional[str] = Field(None, description="Tenant ID (uses current if not provided)")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    results: Dict[str, bool]


class DecisionResponse(BaseModel):
    granted: bool
    source: str
    role_type: Optional[str] = None
    assignment_id: Optional[str] = None
    grant_id: Optional[str] = None
    granted_at: Optional[datetime] = None


class EffectivePermissionsResponse(BaseModel):
    """Resolved permission map of a person in a tenant."""
    person_id: str
    tenant_id: Optional[str]
    permissions: Dict[str, bool]
    granted: List[str]
    decisions: Optional[Dict[str, DecisionResponse]] = None


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    tenant_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
