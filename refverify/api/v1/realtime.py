"""
Real-time operations endpoints (admin only).

The WebSocket itself is served at ``/ws`` by the application; these routes
inspect and manage the live connections behind it.
"""

import uuid

from fastapi import APIRouter, status

from refverify.api.deps import AdminUser, Fanout, Registry
from refverify.logging_config import get_logger
from refverify.schemas.common import SuccessResponse
from refverify.schemas.realtime import (
    ConnectionStatsResponse,
    ForceDisconnectResponse,
    PresenceResponse,
    SystemNoticeRequest,
)

router = APIRouter()
logger = get_logger(__name__)


@router.get("/stats", response_model=ConnectionStatsResponse)
async def connection_stats(
    admin: AdminUser,
    registry: Registry,
):
    """Live connection totals, online users per role and per country."""
    return ConnectionStatsResponse(**registry.stats())


@router.get("/online/{user_id}", response_model=PresenceResponse)
async def user_presence(
    user_id: uuid.UUID,
    admin: AdminUser,
    registry: Registry,
):
    """Whether a user currently has at least one live connection."""
    return PresenceResponse(user_id=user_id, online=registry.is_online(user_id))


@router.post(
    "/notifications",
    response_model=SuccessResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def broadcast_notice(
    data: SystemNoticeRequest,
    admin: AdminUser,
    fanout: Fanout,
    registry: Registry,
):
    """Broadcast a system notice to every connected client."""
    fanout.notify_system(data.message, data.level)
    logger.info(
        "System notice broadcast",
        extra={"actor_id": str(admin.id), "level": data.level},
    )
    return SuccessResponse(
        message="Notice scheduled",
        data={"recipients": len(registry)},
    )


@router.delete("/connections/{user_id}", response_model=ForceDisconnectResponse)
async def force_disconnect(
    user_id: uuid.UUID,
    admin: AdminUser,
    registry: Registry,
):
    """Close every live connection of a user."""
    closed = await registry.force_disconnect(user_id)
    logger.info(
        "Connections force-closed",
        extra={"actor_id": str(admin.id), "user_id": str(user_id), "closed": closed},
    )
    return ForceDisconnectResponse(user_id=user_id, closed_connections=closed)
