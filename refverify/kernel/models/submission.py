"""
Submission model: one proposed citation source and its verification state.

Descriptive fields are fixed at creation. Lifecycle fields (status, verifier,
notes, credibility) change only through the lifecycle service, and every
committed change bumps ``version`` so writers can detect a lost race.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from refverify.kernel.models.base import Base, SoftDeleteMixin, TimestampMixin, generate_uuid


class SubmissionStatus(str, Enum):
    """Verification status of a submission."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


FINAL_STATUSES = frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED})


class SourceCategory(str, Enum):
    """Reliability category proposed by the submitter."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    UNRELIABLE = "unreliable"


class MediaType(str, Enum):
    """How the source is referenced."""
    URL = "url"
    PDF = "pdf"


class Credibility(str, Enum):
    """Verifier's credibility rating, recorded when a submission is finalized."""
    CREDIBLE = "credible"
    QUESTIONABLE = "questionable"
    NOT_CREDIBLE = "not_credible"


class Submission(Base, TimestampMixin, SoftDeleteMixin):
    """A reference submission awaiting or having undergone verification."""

    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )

    # Set once on creation
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    publisher: Mapped[str] = mapped_column(String(100), nullable=False)
    country: Mapped[str] = mapped_column(String(8), nullable=False)
    category: Mapped[SourceCategory] = mapped_column(String(20), nullable=False)
    media_type: Mapped[MediaType] = mapped_column(
        String(10),
        default=MediaType.URL,
        nullable=False,
    )
    wikipedia_article: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    submitter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Lifecycle
    status: Mapped[SubmissionStatus] = mapped_column(
        String(20),
        default=SubmissionStatus.PENDING,
        nullable=False,
    )
    verifier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    verifier_notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    credibility: Mapped[Optional[Credibility]] = mapped_column(String(20), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_submissions_country_status", "country", "status"),
        Index("ix_submissions_category", "category"),
        Index("ix_submissions_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Submission {self.id} {self.status}>"
