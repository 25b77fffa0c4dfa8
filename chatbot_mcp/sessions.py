"""Live SSE sessions and their mirror in the key-value store.

Each established SSE connection is a :class:`Session` owned by exactly one
:class:`SessionRegistry`. The registry keeps the in-process map and the
``mcp:connections:<id>`` hash in lockstep: entries are created together and
removed together, including when connection setup fails half-way.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import anyio
from aiohttp import web
from mcp.server.fastmcp import Context
from redis.exceptions import RedisError

from .exceptions import InvalidStateTransition
from .store import KeyValueStore

if TYPE_CHECKING:
    from .core import ChatbotMCP
    from .transport import Heartbeat, SSEServerTransport

__all__ = [
    "EVENTS_CHANNEL",
    "REGISTRY_KEY",
    "SESSION_KEY",
    "Session",
    "SessionRegistry",
    "SessionState",
    "connection_key",
    "context_key",
    "current_registry",
    "current_session",
    "state_key",
]

logger = logging.getLogger(__name__)

# Request item under which the dispatcher exposes the target session to handlers
SESSION_KEY = "chatbot_mcp.session"
EVENTS_CHANNEL = "mcp:events"


def connection_key(connection_id: str) -> str:
    return f"mcp:connections:{connection_id}"


def context_key(connection_id: str) -> str:
    return f"mcp:context:{connection_id}"


def state_key(connection_id: str) -> str:
    return f"mcp:state:{connection_id}"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    AUTHENTICATING = "authenticating"
    ESTABLISHED = "established"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.AUTHENTICATING}),
    SessionState.AUTHENTICATING: frozenset({SessionState.ESTABLISHED, SessionState.CLOSED}),
    SessionState.ESTABLISHED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass(slots=True, kw_only=True)
class Session:
    """One SSE connection with its own protocol server and transport."""

    connection_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.UNINITIALIZED
    transport: "SSEServerTransport | None" = None
    protocol_server: "ChatbotMCP | None" = None
    heartbeat: "Heartbeat | None" = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state is SessionState.ESTABLISHED

    @property
    def log_prefix(self) -> str:
        return f"[{self.connection_id}]"

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"Cannot move session from {self.state} to {new_state}")
        logger.debug("%s %s -> %s", self.log_prefix, self.state, new_state)
        self.state = new_state

    def to_record(self) -> dict[str, Any]:
        """Fields mirrored into the ``mcp:connections:<id>`` hash."""
        return {
            "createdAt": int(self.created_at.timestamp() * 1000),
            "active": self.active,
        }


class SessionRegistry:
    """In-process map of live sessions, mirrored into the key-value store."""

    __slots__ = ("_publisher", "_sessions", "_store")

    def __init__(self, store: KeyValueStore, publisher: KeyValueStore | None = None) -> None:
        self._store = store
        self._publisher = publisher
        self._sessions: dict[str, Session] = {}

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @property
    def publisher(self) -> KeyValueStore | None:
        return self._publisher

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def new_session(self) -> Session:
        """Create an unregistered session with a connection id not in use."""
        connection_id = str(uuid.uuid4())
        while connection_id in self._sessions:
            connection_id = str(uuid.uuid4())
        return Session(connection_id=connection_id)

    async def add(self, session: Session) -> None:
        """Register ``session`` and mirror it to the store.

        If the store write fails the registry entry is released before the error
        propagates, so the two never disagree.
        """
        if session.connection_id in self._sessions:
            raise ValueError(f"Connection already registered: {session.connection_id}")

        self._sessions[session.connection_id] = session
        try:
            await self._store.hset(connection_key(session.connection_id), session.to_record())
        except BaseException:
            del self._sessions[session.connection_id]
            raise
        logger.debug("%s Registered session (%d live)", session.log_prefix, len(self._sessions))

    async def mark_active(self, session: Session) -> None:
        """Reflect an established session in the store mirror."""
        await self._store.hset(connection_key(session.connection_id), {"active": session.active})
        await self._publish("connected", session)

    async def remove(self, session: Session) -> bool:
        """Tear ``session`` down. Safe to call more than once.

        Returns False when the session was not registered (anymore).
        """
        if session.heartbeat is not None:
            session.heartbeat.stop()
        if session.state is not SessionState.CLOSED:
            session.transition(SessionState.CLOSED)

        if self._sessions.get(session.connection_id) is not session:
            return False
        del self._sessions[session.connection_id]

        logger.info("%s Cleaning up connection", session.log_prefix)
        try:
            await self._store.delete(connection_key(session.connection_id), context_key(session.connection_id))
        except (RedisError, OSError) as err:
            logger.error("%s Error during cleanup: %s", session.log_prefix, err)
        await self._publish("closed", session)
        logger.info("%s Connection cleaned up", session.log_prefix)
        return True

    @asynccontextmanager
    async def open(self, session: Session) -> AsyncIterator[Session]:
        """Hold a registry slot for ``session`` and always release it on exit."""
        await self.add(session)
        try:
            yield session
        finally:
            with anyio.CancelScope(shield=True):
                await self.remove(session)

    async def load_context(self, connection_id: str) -> Any:
        return await self._store.get_json(context_key(connection_id))

    async def save_context(self, connection_id: str, data: Any) -> None:
        await self._store.set_json(context_key(connection_id), data)

    async def store_state(self, connection_id: str, data: Any) -> None:
        """Persist arbitrary application state for a connection."""
        await self._store.set_json(state_key(connection_id), data)

    async def load_state(self, connection_id: str) -> Any:
        return await self._store.get_json(state_key(connection_id))

    async def _publish(self, event: str, session: Session) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(EVENTS_CHANNEL, {"event": event, "connectionId": session.connection_id})
        except (RedisError, OSError) as err:
            logger.warning("%s Could not publish %s event: %s", session.log_prefix, event, err)


def _request(ctx: Context) -> web.Request | None:  # type: ignore[type-arg]
    try:
        return ctx.request_context.request
    except ValueError:
        # Context not available outside of a request
        return None


def current_session(ctx: Context) -> Session | None:  # type: ignore[type-arg]
    """Return the session an MCP request arrived on, if it came through the dispatcher."""
    request = _request(ctx)
    if request is None:
        return None
    return request.get(SESSION_KEY)


REGISTRY_KEY = web.AppKey("chatbot_mcp.sessions", SessionRegistry)


def current_registry(ctx: Context) -> SessionRegistry | None:  # type: ignore[type-arg]
    """Return the registry owning the session an MCP request arrived on."""
    request = _request(ctx)
    if request is None:
        return None
    return request.config_dict.get(REGISTRY_KEY)
