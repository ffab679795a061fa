"""
Custom role, role assignment, grant and audit models.

This module implements the persisted half of the permission engine:
- Tenant-defined custom roles that extend a parent role type
- Role assignments binding a person to a role type inside a tenant
- Grants allowing or denying a permission key on an assignment or a custom role
- Audit log rows for the database audit sink
"""
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, JSON, Text, DateTime, Boolean, Integer, Index, CheckConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, SoftDeleteMixin, generate_ulid, utcnow, as_utc


LIVE_ROW = text("deleted_at IS NULL")


class CustomRole(Base, TimestampMixin, SoftDeleteMixin):
    """
    Tenant-defined role extending a parent role type.

    Examples: JUNIOR_ADMIN (parent ADMIN), TEST_PROJECT_MANAGER (parent MANAGER)
    """
    __tablename__ = "custom_roles"
    __table_args__ = (
        Index(
            "uq_custom_roles_live_token",
            "tenant_id",
            "role_type",
            unique=True,
            sqlite_where=LIVE_ROW,
            postgresql_where=LIVE_ROW,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    tenant_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Token used in role assignments, derived from the name
    role_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_role_type: Mapped[str] = mapped_column(String(100), nullable=False)

    created_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="SET NULL"),
        nullable=True
    )

    def __repr__(self) -> str:
        return f"<CustomRole(id={self.id}, role_type={self.role_type!r}, parent={self.parent_role_type!r})>"


class RoleAssignment(Base, TimestampMixin, SoftDeleteMixin):
    """
    Binding of a person to a role type within a tenant (PersonRole).

    ``tenant_id`` NULL marks a global assignment. Revocation soft-deletes the
    row; assigning the same role again clears ``deleted_at``.
    """
    __tablename__ = "person_roles"
    __table_args__ = (
        Index(
            "uq_person_roles_primary",
            "person_id",
            "tenant_id",
            unique=True,
            sqlite_where=text("is_primary AND deleted_at IS NULL"),
            postgresql_where=text("is_primary AND deleted_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    person_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    role_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    assigned_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="SET NULL"),
        nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def is_effective(self, now: datetime | None = None) -> bool:
        """Active, not revoked and not expired."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.valid_until is None:
            return True
        return as_utc(self.valid_until) > (now or utcnow())

    def __repr__(self) -> str:
        return f"<RoleAssignment(id={self.id}, person_id={self.person_id}, tenant_id={self.tenant_id}, role={self.role_type})>"


class Grant(Base, TimestampMixin, SoftDeleteMixin):
    """
    Explicit allow/deny of a permission key (RolePermission).

    Owned by exactly one of a role assignment or a custom role. At most one
    live grant exists per (owner, key).
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        CheckConstraint(
            "(role_assignment_id IS NULL) <> (custom_role_id IS NULL)",
            name="ck_role_permissions_single_owner",
        ),
        Index(
            "uq_role_permissions_live_assignment_key",
            "role_assignment_id",
            "permission_key",
            unique=True,
            sqlite_where=LIVE_ROW,
            postgresql_where=LIVE_ROW,
        ),
        Index(
            "uq_role_permissions_live_custom_role_key",
            "custom_role_id",
            "permission_key",
            unique=True,
            sqlite_where=LIVE_ROW,
            postgresql_where=LIVE_ROW,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    role_assignment_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("person_roles.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    custom_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("custom_roles.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    permission_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    granted_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="SET NULL"),
        nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        owner = self.role_assignment_id or f"custom:{self.custom_role_id}"
        return f"<Grant(id={self.id}, owner={owner}, key={self.permission_key}, granted={self.granted})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for grant mutations and authorization denials.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor (the subject for denials)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Context
    tenant_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, action={self.action}, resource={self.resource_type})>"
