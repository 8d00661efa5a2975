"""
Notification fan-out: route committed domain events to live connections.

Routing is fixed by event type. Delivery is best effort and at most once per
connected recipient per event: a connection that sits in several matching
channels still receives one frame, and nothing is replayed to connections
that join later. A failed send is logged as a delivery failure, and the dead
connection is pruned and closed with 1008. The failure never propagates to
whoever published the event.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Set

from refverify.kernel.errors import ErrorKind
from refverify.kernel.events.event_types import (
    BaseEvent,
    SubmissionCreated,
    SubmissionDeleted,
    SubmissionTransitioned,
    SubmissionUpdated,
    SystemNotice,
)
from refverify.kernel.models.user import UserRole
from refverify.logging_config import get_logger
from refverify.realtime.registry import (
    CLOSE_DELIVERY_FAILED,
    ConnectionRegistry,
    RegisteredConnection,
    country_channel,
    role_channel,
    user_channel,
)

logger = get_logger(__name__)

DEFAULT_SEND_TIMEOUT = 5.0


def channels_for_event(event: BaseEvent) -> Optional[frozenset]:
    """
    Channels that must receive ``event``.

    Returns None for broadcasts that go to every live connection.
    """
    if isinstance(event, SystemNotice):
        return None

    submission = event.submission
    country = country_channel(submission.country)
    admins = role_channel(UserRole.ADMIN)

    if isinstance(event, SubmissionCreated):
        return frozenset({role_channel(UserRole.VERIFIER), admins, country})
    if isinstance(event, SubmissionTransitioned):
        return frozenset({user_channel(submission.submitter_id), admins, country})
    if isinstance(event, (SubmissionUpdated, SubmissionDeleted)):
        return frozenset({admins, country})
    raise TypeError(f"no routing for event type {type(event).__name__}")


def frame_for(event: BaseEvent) -> dict:
    """The JSON frame written to each recipient."""
    return {"event": event.wire_name, "data": event.wire_payload()}


@dataclass
class DeliveryReport:
    """Outcome of publishing one event."""

    event: str
    delivered: int = 0
    failed: List[str] = field(default_factory=list)


class NotificationFanout:
    """
    Publishes domain events to the registry's live connections.

    ``dispatch`` schedules delivery and returns immediately; callers on the
    request path use it so delivery never delays or fails their response.
    ``publish`` awaits delivery and reports what happened.
    """

    def __init__(self, registry: ConnectionRegistry, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self.registry = registry
        self.send_timeout = send_timeout
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, event: BaseEvent) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def publish(self, event: BaseEvent) -> DeliveryReport:
        report = DeliveryReport(event=event.wire_name)
        try:
            channels = channels_for_event(event)
            if channels is None:
                recipients = self.registry.all_connections()
            else:
                recipients = self.registry.connections_in(channels)
            frame = frame_for(event)
        except Exception:
            logger.exception(
                "Event could not be routed",
                extra={"event": event.wire_name, "error_kind": ErrorKind.DELIVERY_FAILURE.value},
            )
            return report

        results = await asyncio.gather(*(self._send(conn, frame) for conn in recipients))
        for conn, ok in zip(recipients, results):
            if ok:
                report.delivered += 1
            else:
                report.failed.append(conn.connection_id)

        # Pruned connections are closed too, never left open outside the registry
        if report.failed:
            await self.registry.drop(report.failed, CLOSE_DELIVERY_FAILED, "Delivery failed")

        logger.debug(
            "Event published",
            extra={
                "event": event.wire_name,
                "delivered": report.delivered,
                "failed": len(report.failed),
            },
        )
        return report

    async def _send(self, conn: RegisteredConnection, frame: dict) -> bool:
        try:
            await asyncio.wait_for(conn.transport.send_json(frame), timeout=self.send_timeout)
            return True
        except Exception as exc:
            logger.warning(
                "Delivery failed",
                extra={
                    "event": frame["event"],
                    "connection_id": conn.connection_id,
                    "user_id": str(conn.user_id),
                    "error_kind": ErrorKind.DELIVERY_FAILURE.value,
                    "error": repr(exc),
                },
            )
            return False

    def notify_system(self, text: str, level: str = "info") -> asyncio.Task:
        """Broadcast an operator notice to everyone connected."""
        return self.dispatch(SystemNotice(text=text, level=level))

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
