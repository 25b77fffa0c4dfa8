import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from http import HTTPStatus
from typing import Any

import anyio
from aiohttp import hdrs, web
from aiohttp_sse import EventSourceResponse, sse_response

from .auth import BearerAuthenticator
from .config import Settings
from .core import ChatbotMCP
from .discover import discover_modules
from .exceptions import AuthenticationError, ConfigurationError, SessionNotFound
from .registry import Registry
from .sessions import REGISTRY_KEY, SESSION_KEY, Session, SessionRegistry, SessionState
from .store import KeyValueStore, create_publisher, create_store, validate_connection
from .transport import (
    CONNECTION_ID_HEADER,
    CONNECTION_ID_PARAM,
    Heartbeat,
    SSEServerTransport,
    json_error,
)

__all__ = ["AppBuilder", "build_mcp_app", "setup_mcp_subapp"]

logger = logging.getLogger(__name__)


class AppBuilder:
    """Aiohttp application builder for the MCP server.

    Serves ``GET <path>/sse`` to open a session and ``POST <path>`` to deliver
    client messages to it. Construction fails with :class:`ConfigurationError`
    when the key-value store is not configured in production.
    """

    __slots__ = ("_authenticator", "_path", "_registry", "_sessions", "_settings")

    def __init__(
        self,
        registry: Registry,
        settings: Settings | None = None,
        store: KeyValueStore | None = None,
        publisher: KeyValueStore | None = None,
        path: str | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings if settings is not None else Settings()
        self._path = path if path is not None else self._settings.path
        self._authenticator = BearerAuthenticator.from_settings(self._settings)

        if store is None:
            store = create_store(self._settings)
            if publisher is None:
                publisher = create_publisher(self._settings)
        self._sessions = SessionRegistry(store, publisher)

    @property
    def path(self) -> str:
        """Return the path for the MCP server."""
        return self._path

    @property
    def sse_path(self) -> str:
        return f"{self._path}/sse"

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    def build(self, is_subapp: bool = False) -> web.Application:
        """Build the MCP server application."""
        app = web.Application()
        app[REGISTRY_KEY] = self._sessions
        app.cleanup_ctx.append(self._store_ctx)

        if is_subapp:
            # Use empty path due to building the app to use as a subapp with a prefix
            self.setup_routes(app, path="")
        else:
            # Use the provided path for the main app
            self.setup_routes(app, path=self._path)
        return app

    def setup_routes(self, app: web.Application, path: str) -> None:
        """GET on the SSE path, POST on the message path, 405 for everything else."""
        sse_path = f"{path}/sse"
        app.router.add_get(sse_path, self.sse_handler, allow_head=False)
        app.router.add_route(hdrs.METH_ANY, sse_path, self.method_not_allowed)
        app.router.add_post(path, self.message_handler)
        app.router.add_route(hdrs.METH_ANY, path, self.method_not_allowed)

    async def _store_ctx(self, app: web.Application) -> AsyncIterator[None]:
        """Check the store on startup and close it on shutdown."""
        store = self._sessions.store
        if not await validate_connection(store):
            if self._settings.is_production:
                raise ConfigurationError("Key-value store did not answer PING")
            logger.warning("Key-value store did not answer PING, session mirroring may fail")
        yield
        await store.close()
        if self._sessions.publisher is not None:
            await self._sessions.publisher.close()

    def create_server(self) -> ChatbotMCP:
        """Create a protocol server with the registry attached."""
        server = ChatbotMCP(
            name=self._settings.server_name,
            version=self._settings.server_version,
            instructions=self._settings.instructions,
            debug=self._settings.debug,
            log_level=self._settings.log_level,
        )
        return self._registry.attach(server)

    async def sse_handler(self, request: web.Request) -> web.StreamResponse:
        """Authenticate, open a session and serve it until the client goes away."""
        session = self._sessions.new_session()
        session.transition(SessionState.AUTHENTICATING)
        try:
            self._authenticator.authenticate(request)
        except AuthenticationError as err:
            session.transition(SessionState.CLOSED)
            logger.warning("Rejected SSE connection from %s: %s", request.remote, err)
            return json_error(HTTPStatus.UNAUTHORIZED, "Unauthorized", detail=str(err))

        logger.info("%s Setting up SSE connection", session.log_prefix)
        response: EventSourceResponse | None = None
        try:
            session.protocol_server = self.create_server()
            session.transport = SSEServerTransport(session.connection_id, self._path)
            async with self._sessions.open(session):
                await self._load_context(session)
                async with sse_response(request, headers={"X-Accel-Buffering": "no"}) as response:
                    await self._establish(session, response)
                    await self._serve(session, response)
                    return response
        except Exception as err:
            if response is not None and response.prepared:
                logger.exception("%s SSE connection failed", session.log_prefix)
                return response
            logger.exception("%s Error setting up SSE connection", session.log_prefix)
            return json_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Error setting up SSE connection", detail=str(err))

    async def _load_context(self, session: Session) -> None:
        previous = await self._sessions.load_context(session.connection_id)
        if isinstance(previous, dict):
            logger.info("%s Previous context found", session.log_prefix)
            session.context.update(previous)

    async def _establish(self, session: Session, response: EventSourceResponse) -> None:
        session.heartbeat = Heartbeat(response, self._settings.heartbeat_interval)
        session.transition(SessionState.ESTABLISHED)
        await self._sessions.mark_active(session)
        logger.info("%s SSE connection established", session.log_prefix)

    async def _serve(self, session: Session, response: EventSourceResponse) -> None:
        if session.protocol_server is None or session.transport is None or session.heartbeat is None:
            raise RuntimeError("Session not set up")
        server = session.protocol_server.server

        with anyio.move_on_after(self._settings.max_duration) as deadline:
            async with anyio.create_task_group() as tg:
                # https://trio.readthedocs.io/en/latest/reference-core.html#custom-supervisors
                async def cancel_on_finish(coro: Callable[[], Awaitable[None]]) -> None:
                    await coro()
                    tg.cancel_scope.cancel()

                tg.start_soon(cancel_on_finish, session.heartbeat.run)
                async with session.transport.connect(response) as (read_stream, write_stream):
                    await server.run(
                        read_stream=read_stream,
                        write_stream=write_stream,
                        initialization_options=server.create_initialization_options(),
                        raise_exceptions=False,
                    )
                tg.cancel_scope.cancel()

        if deadline.cancel_called:
            logger.info("%s Max duration reached, closing connection", session.log_prefix)

    async def message_handler(self, request: web.Request) -> web.Response:
        """Route a client message to the transport of its session."""
        try:
            try:
                payload = json.loads(await request.text())
            except (json.JSONDecodeError, UnicodeDecodeError) as err:
                logger.error("Error parsing message: %s", err)
                return json_error(HTTPStatus.BAD_REQUEST, "Invalid JSON in request body")

            connection_id = request.headers.get(CONNECTION_ID_HEADER) or request.query.get(CONNECTION_ID_PARAM)
            if not connection_id:
                logger.warning("Received message without connection id")
                return json_error(HTTPStatus.BAD_REQUEST, "Missing connection id")

            session = self._sessions.get(connection_id)
            if session is None or session.transport is None:
                raise SessionNotFound(connection_id)

            request[SESSION_KEY] = session
            return await session.transport.handle_post_message(request, payload)
        except SessionNotFound as err:
            logger.warning("Could not find session for connection id: %s", err.connection_id)
            return json_error(HTTPStatus.NOT_FOUND, "Connection not found")
        except web.HTTPException:
            raise
        except Exception:
            logger.exception("Error handling message request")
            return json_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal server error")

    async def method_not_allowed(self, request: web.Request) -> web.Response:
        response = json_error(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
        response.headers[hdrs.ALLOW] = hdrs.METH_GET if request.path.endswith("/sse") else hdrs.METH_POST
        return response

    async def store_server_state(self, connection_id: str, data: Any) -> None:
        """Persist application state for a connection under ``mcp:state:<id>``."""
        await self._sessions.store_state(connection_id, data)


def build_mcp_app(
    registry: Registry,
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    path: str | None = None,
    is_subapp: bool = False,
) -> web.Application:
    """Build the MCP server application."""
    return AppBuilder(registry, settings, store=store, path=path).build(is_subapp=is_subapp)


def setup_mcp_subapp(
    app: web.Application,
    registry: Registry,
    prefix: str = "/mcp",
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    package_names: list[str] | None = None,
) -> AppBuilder:
    """Set up the MCP server sub-application with the given prefix."""
    if package_names:
        # Import the modules whose decorators fill the registry
        discover_modules(package_names)

    builder = AppBuilder(registry, settings, store=store, path=prefix)
    app.add_subapp(prefix, builder.build(is_subapp=True))
    return builder
