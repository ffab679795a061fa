"""
Tenant model.

A tenant is the isolation boundary of the platform: role assignments,
custom roles and grants are always scoped to one tenant (or explicitly global).
"""
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, SoftDeleteMixin, generate_ulid


class Tenant(Base, TimestampMixin, SoftDeleteMixin):
    """
    Tenant model representing a customer of the training platform.

    A tenant that is inactive or soft-deleted grants nothing to anyone.
    """
    __tablename__ = "tenants"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def is_live(self) -> bool:
        return self.is_active and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug={self.slug!r}, active={self.is_active})>"
