"""
Connection registry for real-time delivery.

Tracks every admitted connection with its principal and channel memberships,
and the reverse user -> connections index used for presence queries.

All mutating methods are synchronous: under asyncio no other task can run
between their reads and writes, so concurrent connect/disconnect handling
cannot lose updates. The only awaits happen before admission (identity
resolution) and after removal (closing transports).
"""

import asyncio
import inspect
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Dict, Iterable, List, Optional, Protocol, Set, Union

from refverify.kernel.errors import Unauthorized
from refverify.kernel.identity.identity_service import PrincipalResolver
from refverify.kernel.models.base import enum_value
from refverify.kernel.models.user import REVIEWER_ROLES, UserRole
from refverify.logging_config import get_logger
from refverify.orchestration.transition_engine import Actor

logger = get_logger(__name__)

CLOSE_FORCED = 4003
CLOSE_DELIVERY_FAILED = 1008
CLOSE_TIMEOUT = 5.0


class Transport(Protocol):
    """What the registry needs from a live connection (Starlette's WebSocket fits)."""

    async def send_json(self, data: dict) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


def user_channel(user_id: uuid.UUID) -> str:
    return f"user:{user_id}"


def role_channel(role: Union[UserRole, str]) -> str:
    return f"role:{enum_value(role)}"


def country_channel(country: str) -> str:
    return f"country:{country}"


def channels_for(principal: Actor) -> frozenset:
    """Channels a principal belongs to; country only for verifiers and admins."""
    channels = {user_channel(principal.user_id), role_channel(principal.role)}
    if UserRole(principal.role) in REVIEWER_ROLES:
        channels.add(country_channel(principal.country))
    return frozenset(channels)


@dataclass(frozen=True)
class RegisteredConnection:
    """One admitted connection. Channels are fixed for its lifetime."""

    connection_id: str
    principal: Actor
    channels: frozenset
    transport: Transport = field(compare=False, repr=False)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> uuid.UUID:
        return self.principal.user_id


Credential = Union[Optional[str], Awaitable[Optional[str]]]


class ConnectionRegistry:
    """
    Live connection bookkeeping, owned by the running application.

    Usage:
        registry = ConnectionRegistry(resolve=session_resolver(async_session_maker))
        conn = await registry.connect(websocket, token)
        ...
        registry.remove(conn.connection_id)
    """

    def __init__(self, resolve: PrincipalResolver, handshake_timeout: float = 10.0):
        self._resolve = resolve
        self.handshake_timeout = handshake_timeout
        self._connections: Dict[str, RegisteredConnection] = {}
        self._by_user: Dict[uuid.UUID, Set[str]] = {}
        self._by_channel: Dict[str, Set[str]] = {}

    # Admission

    async def connect(self, transport: Transport, credential: Credential) -> RegisteredConnection:
        """
        Authenticate and admit a connection.

        ``credential`` is the bearer token, or an awaitable that produces it
        (for example reading the client's first frame). Both the wait for the
        credential and its resolution count against the handshake window.

        Raises:
            Unauthorized: no credential, invalid identity, or handshake timeout
        """
        try:
            principal = await asyncio.wait_for(
                self._authenticate(credential),
                timeout=self.handshake_timeout,
            )
        except asyncio.TimeoutError:
            raise Unauthorized("Authentication handshake timed out") from None
        return self.admit(transport, principal)

    async def _authenticate(self, credential: Credential) -> Actor:
        if inspect.isawaitable(credential):
            credential = await credential
        if not credential:
            raise Unauthorized("Authentication token required")
        return await self._resolve(credential)

    def admit(
        self,
        transport: Transport,
        principal: Actor,
        connection_id: Optional[str] = None,
    ) -> RegisteredConnection:
        """Record an already-authenticated connection."""
        conn = RegisteredConnection(
            connection_id=connection_id or uuid.uuid4().hex,
            principal=principal,
            channels=channels_for(principal),
            transport=transport,
        )
        self._connections[conn.connection_id] = conn
        self._by_user.setdefault(principal.user_id, set()).add(conn.connection_id)
        for channel in conn.channels:
            self._by_channel.setdefault(channel, set()).add(conn.connection_id)

        logger.info(
            "Connection admitted",
            extra={
                "connection_id": conn.connection_id,
                "user_id": str(principal.user_id),
                "role": enum_value(principal.role),
                "channels": sorted(conn.channels),
            },
        )
        return conn

    # Removal

    def remove(self, connection_id: str) -> Optional[RegisteredConnection]:
        """Forget a connection. Unknown or already-removed ids are a no-op."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None

        user_conns = self._by_user.get(conn.user_id)
        if user_conns is not None:
            user_conns.discard(connection_id)
            if not user_conns:
                del self._by_user[conn.user_id]

        for channel in conn.channels:
            members = self._by_channel.get(channel)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._by_channel[channel]

        logger.info(
            "Connection removed",
            extra={"connection_id": connection_id, "user_id": str(conn.user_id)},
        )
        return conn

    async def force_disconnect(self, user_id: uuid.UUID, code: int = CLOSE_FORCED) -> int:
        """Drop every connection of a user and close their transports."""
        return await self.drop(
            list(self._by_user.get(user_id, ())), code, "Disconnected by administrator"
        )

    async def drop(
        self,
        connection_ids: Iterable[str],
        code: int = CLOSE_DELIVERY_FAILED,
        reason: str = "Delivery failed",
    ) -> int:
        """Remove connections and close their transports. Returns how many were live."""
        removed = [self.remove(cid) for cid in connection_ids]
        removed = [conn for conn in removed if conn is not None]
        await self._close_transports(removed, code, reason)
        return len(removed)

    async def close_all(self, code: int = 1001) -> None:
        """Shutdown: remove and close everything."""
        removed = [self.remove(cid) for cid in list(self._connections)]
        await self._close_transports(
            [conn for conn in removed if conn is not None], code, "Server shutting down"
        )

    async def _close_transports(
        self, conns: List[RegisteredConnection], code: int, reason: str
    ) -> None:
        results = await asyncio.gather(
            *(
                asyncio.wait_for(conn.transport.close(code=code, reason=reason), timeout=CLOSE_TIMEOUT)
                for conn in conns
            ),
            return_exceptions=True,
        )
        for conn, result in zip(conns, results):
            if isinstance(result, Exception):
                logger.debug(
                    "Transport already closed",
                    extra={"connection_id": conn.connection_id, "error": str(result)},
                )

    # Lookup

    def get(self, connection_id: str) -> Optional[RegisteredConnection]:
        return self._connections.get(connection_id)

    def connections_for_user(self, user_id: uuid.UUID) -> List[RegisteredConnection]:
        return [self._connections[cid] for cid in self._by_user.get(user_id, ())]

    def connections_in(self, channels: Iterable[str]) -> List[RegisteredConnection]:
        """Connections in any of the channels, each listed once."""
        ids: Set[str] = set()
        for channel in channels:
            ids.update(self._by_channel.get(channel, ()))
        return [self._connections[cid] for cid in ids]

    def all_connections(self) -> List[RegisteredConnection]:
        return list(self._connections.values())

    def channels_of(self, connection_id: str) -> frozenset:
        conn = self._connections.get(connection_id)
        return conn.channels if conn else frozenset()

    def __len__(self) -> int:
        return len(self._connections)

    # Presence and dashboard counts

    def is_online(self, user_id: uuid.UUID) -> bool:
        return bool(self._by_user.get(user_id))

    def _online_principals(self) -> List[Actor]:
        # One principal per online user, whatever number of tabs they have open
        return [
            self._connections[next(iter(cids))].principal
            for cids in self._by_user.values()
        ]

    def count_by_role(self) -> Dict[str, int]:
        return dict(Counter(enum_value(p.role) for p in self._online_principals()))

    def count_by_country(self) -> Dict[str, int]:
        return dict(Counter(
            p.country for p in self._online_principals()
            if UserRole(p.role) in REVIEWER_ROLES
        ))

    def stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "online_users": len(self._by_user),
            "users_by_role": self.count_by_role(),
            "users_by_country": self.count_by_country(),
        }
