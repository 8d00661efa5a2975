"""
Domain events emitted after a lifecycle change commits.

These are the payloads handed to the notification fan-out. Each event knows
its wire name (the ``event`` field of the WebSocket frame) and how to render
its ``data`` payload; which channels receive it is decided by the fan-out.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from refverify.kernel.models.base import enum_value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionSnapshot(BaseModel):
    """Submission fields carried by lifecycle events."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    url: str
    title: str
    publisher: str
    country: str
    category: str
    media_type: str
    status: str
    submitter_id: uuid.UUID
    verifier_id: Optional[uuid.UUID] = None
    verifier_notes: Optional[str] = None
    credibility: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, submission) -> "SubmissionSnapshot":
        return cls(
            id=submission.id,
            url=submission.url,
            title=submission.title,
            publisher=submission.publisher,
            country=submission.country,
            category=enum_value(submission.category),
            media_type=enum_value(submission.media_type),
            status=enum_value(submission.status),
            submitter_id=submission.submitter_id,
            verifier_id=submission.verifier_id,
            verifier_notes=submission.verifier_notes,
            credibility=enum_value(submission.credibility) if submission.credibility else None,
            verified_at=submission.verified_at,
            created_at=submission.created_at,
        )


class ActorSnapshot(BaseModel):
    """Who caused the event."""

    id: uuid.UUID
    role: str
    country: str


class BaseEvent(BaseModel):
    """Base event structure."""

    wire_name: ClassVar[str] = ""

    timestamp: datetime = Field(default_factory=_utcnow)

    def message(self) -> str:
        return ""

    def wire_payload(self) -> Dict[str, Any]:
        """JSON-ready ``data`` section of the outgoing frame."""
        data = self.model_dump(mode="json", exclude={"type"})
        data["message"] = self.message()
        return data


class SubmissionEvent(BaseEvent):
    """Event about one submission."""

    submission: SubmissionSnapshot
    actor: ActorSnapshot


class SubmissionCreated(SubmissionEvent):
    wire_name: ClassVar[str] = "submission:created"
    type: Literal["SubmissionCreated"] = "SubmissionCreated"

    def message(self) -> str:
        return f'New submission: "{self.submission.title}" from {self.submission.publisher}'


class SubmissionTransitioned(SubmissionEvent):
    wire_name: ClassVar[str] = "submission:verified"
    type: Literal["SubmissionTransitioned"] = "SubmissionTransitioned"

    def message(self) -> str:
        if self.submission.status == "approved":
            return (
                f'Submission verified: "{self.submission.title}" '
                f"marked as {self.submission.credibility}"
            )
        return f'Submission rejected: "{self.submission.title}"'


class SubmissionUpdated(SubmissionEvent):
    wire_name: ClassVar[str] = "submission:updated"
    type: Literal["SubmissionUpdated"] = "SubmissionUpdated"

    def message(self) -> str:
        return f'Submission updated: "{self.submission.title}"'


class SubmissionDeleted(SubmissionEvent):
    wire_name: ClassVar[str] = "submission:deleted"
    type: Literal["SubmissionDeleted"] = "SubmissionDeleted"

    def message(self) -> str:
        return f'Submission deleted: "{self.submission.title}"'


class SystemNotice(BaseEvent):
    """Operator broadcast to every live connection."""

    wire_name: ClassVar[str] = "system:notification"
    type: Literal["SystemNotice"] = "SystemNotice"

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    text: str
    level: Literal["info", "warning", "critical"] = "info"

    def message(self) -> str:
        return self.text
