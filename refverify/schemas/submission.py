"""Submission schemas."""

import uuid
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from refverify.kernel.models.submission import Credibility, MediaType, SourceCategory


class SubmissionCreate(BaseModel):
    """Propose a new reference source."""

    url: str = Field(..., min_length=1, max_length=2048)
    title: str = Field(..., min_length=1, max_length=200)
    publisher: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=2, max_length=8, pattern=r"^[A-Za-z]+$")
    category: SourceCategory
    media_type: MediaType = MediaType.URL
    wikipedia_article: Optional[str] = Field(None, max_length=500)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class ApproveRequest(BaseModel):
    """Approve a pending submission."""

    notes: Optional[str] = Field(None, max_length=500)
    credibility: Optional[Literal["credible", "questionable"]] = None


class RejectRequest(BaseModel):
    """Reject a pending submission."""

    notes: Optional[str] = Field(None, max_length=500)


class NotesUpdate(BaseModel):
    """Replace the verifier notes."""

    notes: str = Field(..., max_length=500)


class BatchRequest(BaseModel):
    """Approve or reject many submissions. Ids are validated by the service."""

    ids: List[str]
    action: Literal["approve", "reject"]
    notes: Optional[str] = Field(None, max_length=500)


class SubmissionResponse(BaseModel):
    """Submission response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    url: str
    title: str
    publisher: str
    country: str
    category: str
    media_type: str
    wikipedia_article: Optional[str] = None
    submitter_id: uuid.UUID
    status: str
    verifier_id: Optional[uuid.UUID] = None
    verifier_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    credibility: Optional[Credibility] = None
    version: int
    created_at: datetime
    updated_at: datetime


class BatchItemResult(BaseModel):
    """Outcome for one id of a batch."""

    id: uuid.UUID
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class BatchResponse(BaseModel):
    """Per-id outcomes of a batch."""

    action: str
    requested: int
    succeeded: int
    failed: int
    results: List[BatchItemResult]


class AuditEntryResponse(BaseModel):
    """One audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: uuid.UUID
    action: str
    resource_type: str
    resource_id: uuid.UUID
    method: Optional[str] = None
    details: Dict = Field(default_factory=dict)
    created_at: datetime


class CountryCount(BaseModel):
    country: str
    count: int


class SubmissionStats(BaseModel):
    """Totals for the public directory."""

    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_category: Dict[str, int] = Field(default_factory=dict)
    top_countries: List[CountryCount] = Field(default_factory=list)
