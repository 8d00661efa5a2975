"""Real-time operations schemas."""

import uuid
from typing import Dict, Literal

from pydantic import BaseModel, Field


class ConnectionStatsResponse(BaseModel):
    """Live connection counts for operational dashboards."""

    total_connections: int
    online_users: int
    users_by_role: Dict[str, int] = Field(default_factory=dict)
    users_by_country: Dict[str, int] = Field(default_factory=dict)


class PresenceResponse(BaseModel):
    user_id: uuid.UUID
    online: bool


class SystemNoticeRequest(BaseModel):
    """Broadcast to every connected client."""

    message: str = Field(..., min_length=1, max_length=500)
    level: Literal["info", "warning", "critical"] = "info"


class ForceDisconnectResponse(BaseModel):
    user_id: uuid.UUID
    closed_connections: int
