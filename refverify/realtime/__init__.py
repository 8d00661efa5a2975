"""
Real-time delivery: connection registry, event fan-out and the WebSocket
session loop.
"""

from refverify.realtime.registry import (
    ConnectionRegistry,
    RegisteredConnection,
    Transport,
    channels_for,
    country_channel,
    role_channel,
    user_channel,
)
from refverify.realtime.fanout import (
    DeliveryReport,
    NotificationFanout,
    channels_for_event,
    frame_for,
)

__all__ = [
    "ConnectionRegistry",
    "RegisteredConnection",
    "Transport",
    "channels_for",
    "country_channel",
    "role_channel",
    "user_channel",
    "DeliveryReport",
    "NotificationFanout",
    "channels_for_event",
    "frame_for",
]
