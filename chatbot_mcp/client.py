import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import AsyncExitStack
from dataclasses import dataclass
from types import TracebackType

import anyio
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.types import Implementation

from .config import Settings
from .exceptions import ClientConnectionError

__all__ = ["ClientFactory", "ConversationClient", "MCPContextProvider", "create_mcp_client"]

logger = logging.getLogger(__name__)

CLIENT_INFO = Implementation(name="MCP-Client", version="1.0.0")


@dataclass(slots=True)
class ConversationClient:
    """An initialized client session bound to one conversation."""

    conversation_id: str
    session: ClientSession
    stack: AsyncExitStack

    async def aclose(self) -> None:
        await self.stack.aclose()


ClientFactory = Callable[[str], Awaitable[ConversationClient]]


def create_mcp_client(
    server_url: str | None = None,
    token: str | None = None,
    *,
    settings: Settings | None = None,
    timeout: float = 5,
    sse_read_timeout: float = 60 * 5,
) -> ClientFactory:
    """Return a factory that connects a new MCP client for each conversation.

    ``server_url`` is the base path of the server (``GET <server_url>/sse`` opens the
    stream). It defaults to ``Settings.server_url`` and the token to ``Settings.auth_token``.
    """
    if settings is None:
        settings = Settings()
    url = f"{(server_url or settings.server_url).rstrip('/')}/sse"
    if token is None:
        token = settings.auth_token
    headers = {"Authorization": f"Bearer {token}"} if token else None

    async def create_client_for_conversation(conversation_id: str) -> ConversationClient:
        stack = AsyncExitStack()
        try:
            read_stream, write_stream = await stack.enter_async_context(
                sse_client(url, headers=headers, timeout=timeout, sse_read_timeout=sse_read_timeout)
            )
            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream, client_info=CLIENT_INFO)
            )
            await session.initialize()
        except Exception as err:
            logger.error("Error creating MCP client for conversation %s: %s", conversation_id, err)
            await stack.aclose()
            raise ClientConnectionError(f"Failed to create MCP client: {err}") from err

        logger.info("Connected MCP client for conversation %s to %s", conversation_id, url)
        return ConversationClient(conversation_id=conversation_id, session=session, stack=stack)

    return create_client_for_conversation


class MCPContextProvider:
    """Keep one MCP client session per conversation.

    Contexts hold anyio task groups, so :meth:`delete_context` and :meth:`close` must run
    in the task that opened them.
    """

    __slots__ = ("_clients", "_factory", "_lock")

    def __init__(self, factory: ClientFactory | None = None) -> None:
        self._factory = factory if factory is not None else create_mcp_client()
        self._clients: dict[str, ConversationClient] = {}
        self._lock = anyio.Lock()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._clients

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._clients))

    def __len__(self) -> int:
        return len(self._clients)

    async def get_context(self, conversation_id: str) -> ClientSession:
        """Return the client session of a conversation, connecting it on first use."""
        async with self._lock:
            client = self._clients.get(conversation_id)
            if client is None:
                client = await self._factory(conversation_id)
                self._clients[conversation_id] = client
        return client.session

    async def delete_context(self, conversation_id: str) -> bool:
        """Close and forget the client of a conversation. Close errors are logged."""
        client = self._clients.pop(conversation_id, None)
        if client is None:
            return False
        try:
            await client.aclose()
        except Exception:
            logger.exception("Error closing MCP client for conversation %s", conversation_id)
        return True

    async def close(self) -> None:
        for conversation_id in reversed(list(self._clients)):
            await self.delete_context(conversation_id)

    async def __aenter__(self) -> "MCPContextProvider":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
