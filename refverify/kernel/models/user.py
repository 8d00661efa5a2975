"""
User model for identity management.
"""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from refverify.kernel.models.base import Base, TimestampMixin, generate_uuid


class UserRole(str, Enum):
    """User roles in the system."""
    CONTRIBUTOR = "contributor"
    VERIFIER = "verifier"
    ADMIN = "admin"


# Roles that review submissions and are scoped to a country channel
REVIEWER_ROLES = frozenset({UserRole.VERIFIER, UserRole.ADMIN})


class User(Base, TimestampMixin):
    """User account model."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    username: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
    )
    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        String(20),
        default=UserRole.CONTRIBUTOR,
        nullable=False,
    )
    country: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        index=True,
    )
    points: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.role})>"
