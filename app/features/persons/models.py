"""
Person model with ULID primary keys.
"""
import enum
from sqlalchemy import String, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, SoftDeleteMixin, generate_ulid


class PersonStatus(str, enum.Enum):
    """Account status of a person."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class Person(Base, TimestampMixin, SoftDeleteMixin):
    """
    Person model representing the subject of every authorization check.

    A person belongs to a home tenant but may hold role assignments in others.
    """
    __tablename__ = "persons"

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[PersonStatus] = mapped_column(
        SQLEnum(PersonStatus),
        default=PersonStatus.ACTIVE,
        nullable=False,
        index=True
    )

    # Home tenant
    tenant_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    @property
    def is_active(self) -> bool:
        return self.status == PersonStatus.ACTIVE and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<Person(id={self.id}, email={self.email!r})>"
