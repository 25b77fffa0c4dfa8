import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest
import redis.asyncio as redis
from aiohttp import ClientResponse, web
from aiohttp.test_utils import TestClient, TestServer
from aiohttp_sse import EventSourceResponse
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.types import LATEST_PROTOCOL_VERSION, TextContent

from chatbot_mcp import (
    AppBuilder,
    ConfigurationError,
    InMemoryStore,
    KeyValueStore,
    Registry,
    Session,
    SessionState,
    Settings,
    build_mcp_app,
    setup_mcp_subapp,
)
from chatbot_mcp.sessions import connection_key

logger = logging.getLogger(__name__)

# Set the pytest marker for async tests/fixtures
pytestmark = pytest.mark.anyio


TEST_PATH = "/test-mcp"
AUTH = {"Authorization": "Bearer test-token"}


@asynccontextmanager
async def aiohttp_server(app: web.Application) -> AsyncIterator[TestServer]:
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@asynccontextmanager
async def aiohttp_client(app: web.Application) -> AsyncIterator[TestClient[web.Request, web.Application]]:
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


def get_sse_url(server: TestServer) -> str:
    return f"http://{server.host}:{server.port}{TEST_PATH}/sse"


@asynccontextmanager
async def mcp_client_session(url: str, headers: dict[str, str] | None = None) -> AsyncIterator[ClientSession]:
    async with sse_client(url, headers=AUTH if headers is None else headers) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            yield session


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


async def read_event(response: ClientResponse) -> list[str]:
    """Read the lines of one SSE event (or comment) up to the blank separator line."""
    lines: list[str] = []
    while True:
        line = (await response.content.readline()).decode("utf-8").rstrip("\r\n")
        if not line:
            return lines
        lines.append(line)


async def read_reply(response: ClientResponse, request_id: int) -> dict[str, Any]:
    """Skip heartbeats and other messages until the JSON-RPC reply to ``request_id`` arrives."""
    with anyio.fail_after(5):
        while True:
            lines = await read_event(response)
            if lines[:1] != ["event: message"]:
                continue
            message = json.loads(lines[1].removeprefix("data: "))
            if message.get("id") == request_id:
                return message  # type: ignore[no-any-return]


def has_route(app: web.Application, method: str, path: str) -> bool:
    """Check if the given path exists in the app."""
    return any(
        route.resource.canonical == path and route.method == method
        for route in app.router.routes()
        if isinstance(route.resource, web.Resource)
    )


class BrokenStore(InMemoryStore):
    async def ping(self) -> str:
        raise redis.ConnectionError("Connection refused")

    async def hset(self, key: str, fields: Any) -> int:
        raise redis.ConnectionError("Connection refused")


@pytest.fixture
def builder(registry: Registry, settings: Settings, memory_store: InMemoryStore) -> AppBuilder:
    return AppBuilder(registry, settings, store=memory_store)


@pytest.fixture
def standalone_app(builder: AppBuilder) -> web.Application:
    return builder.build()


@pytest.fixture
def subapp(registry: Registry, settings: Settings, memory_store: InMemoryStore) -> web.Application:
    app = web.Application()
    setup_mcp_subapp(app, registry, prefix=TEST_PATH, settings=settings, store=memory_store)
    return app


@pytest.mark.parametrize("app_fixture", ["standalone_app", "subapp"])
async def test_app_initialization(request: pytest.FixtureRequest, app_fixture: str) -> None:
    app = request.getfixturevalue(app_fixture)

    assert isinstance(app, web.Application), type(app)
    assert has_route(app, "GET", f"{TEST_PATH}/sse")
    assert has_route(app, "POST", TEST_PATH)
    assert has_route(app, "*", TEST_PATH)


def test_build_mcp_app_uses_settings_path(registry: Registry, settings: Settings) -> None:
    app = build_mcp_app(registry, settings, store=InMemoryStore())
    assert has_route(app, "GET", f"{settings.path}/sse")

    app = build_mcp_app(registry, settings, store=InMemoryStore(), path="/other")
    assert has_route(app, "POST", "/other")


def test_production_requires_store_credentials(registry: Registry) -> None:
    with pytest.raises(ConfigurationError):
        AppBuilder(registry, Settings(environment="production", redis_url=None))


async def test_startup_fails_in_production_when_store_is_unreachable(registry: Registry) -> None:
    settings = Settings(environment="production", auth_token="s3cret", path=TEST_PATH)
    server = TestServer(build_mcp_app(registry, settings, store=BrokenStore()))
    with pytest.raises(ConfigurationError, match="did not answer PING"):
        await server.start_server()
    await server.close()


async def test_sse_requires_bearer_token(standalone_app: web.Application) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.get(f"{TEST_PATH}/sse")
        assert response.status == 401
        assert await response.json() == {"error": "Unauthorized", "detail": "Authentication required"}


async def test_sse_rejects_wrong_token_in_production(registry: Registry, memory_store: InMemoryStore) -> None:
    settings = Settings(environment="production", auth_token="s3cret", path=TEST_PATH)
    builder = AppBuilder(registry, settings, store=memory_store)

    async with aiohttp_client(builder.build()) as client:
        response = await client.get(f"{TEST_PATH}/sse", headers={"Authorization": "Bearer wrong"})
        assert response.status == 401
        assert await response.json() == {"error": "Unauthorized", "detail": "Invalid authentication token"}
    assert len(builder.sessions) == 0


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("PUT", TEST_PATH),
        ("DELETE", TEST_PATH),
        ("GET", TEST_PATH),
        ("POST", f"{TEST_PATH}/sse"),
        ("PATCH", f"{TEST_PATH}/sse"),
    ],
)
async def test_method_not_allowed(standalone_app: web.Application, method: str, path: str) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.request(method, path)
        assert response.status == 405
        assert await response.json() == {"error": "Method not allowed"}


async def test_post_invalid_json(standalone_app: web.Application) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.post(TEST_PATH, data="{not json", params={"connectionId": "abc"})
        assert response.status == 400
        assert await response.json() == {"error": "Invalid JSON in request body"}


async def test_post_body_too_large(standalone_app: web.Application) -> None:
    body = json.dumps("x" * (2 * 1024**2))
    async with aiohttp_client(standalone_app) as client:
        response = await client.post(TEST_PATH, data=body, params={"connectionId": "abc"})
        assert response.status == 413


async def test_post_without_connection_id(standalone_app: web.Application) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.post(TEST_PATH, json={"jsonrpc": "2.0", "method": "ping", "id": 1})
        assert response.status == 400
        assert await response.json() == {"error": "Missing connection id"}


async def test_post_unknown_connection(standalone_app: web.Application) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.post(
            TEST_PATH, json={"jsonrpc": "2.0", "method": "ping", "id": 1}, params={"connectionId": "unknown"}
        )
        assert response.status == 404
        assert await response.json() == {"error": "Connection not found"}

        response = await client.post(
            TEST_PATH, json={"jsonrpc": "2.0", "method": "ping", "id": 1}, headers={"x-connection-id": "unknown"}
        )
        assert response.status == 404


async def test_setup_failure_returns_500_and_releases_the_session(registry: Registry, settings: Settings) -> None:
    builder = AppBuilder(registry, settings, store=BrokenStore())

    async with aiohttp_client(builder.build()) as client:
        response = await client.get(f"{TEST_PATH}/sse", headers=AUTH)
        assert response.status == 500
        assert await response.json() == {"error": "Error setting up SSE connection", "detail": "Connection refused"}
    assert len(builder.sessions) == 0


async def test_event_stream(builder: AppBuilder, standalone_app: web.Application, memory_store: InMemoryStore) -> None:
    async with aiohttp_client(standalone_app) as client:
        response = await client.get(f"{TEST_PATH}/sse", headers=AUTH)
        assert response.status == 200
        assert response.headers["Content-Type"].startswith("text/event-stream")
        assert response.headers["Cache-Control"] == "no-cache"

        event_type, data = await read_event(response)
        assert event_type == "event: endpoint"
        assert data.startswith(f"data: {TEST_PATH}?connectionId=")
        connection_id = data.split("connectionId=", 1)[1]

        session = builder.sessions.get(connection_id)
        assert session is not None
        assert session.state is SessionState.ESTABLISHED
        assert await memory_store.hget(connection_key(connection_id), "active") == "true"

        # Heartbeats keep coming while the client is idle
        assert await read_event(response) == [": heartbeat"]
        assert await read_event(response) == [": heartbeat"]

        # Messages are accepted via the header as well as the query parameter
        ping = {"jsonrpc": "2.0", "method": "ping", "id": 1}
        post = await client.post(TEST_PATH, json=ping, headers={"x-connection-id": connection_id})
        assert post.status == 202
        assert await post.text() == "Accepted"

        post = await client.post(TEST_PATH, json={"foo": "bar"}, params={"connectionId": connection_id})
        assert post.status == 400
        assert await post.json() == {"error": "Could not parse message"}

        # A tool call delivered through the header reaches the handler
        headers = {"x-connection-id": connection_id}
        for message in (
            {
                "jsonrpc": "2.0",
                "id": 2,
                "method": "initialize",
                "params": {
                    "protocolVersion": LATEST_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "test-client", "version": "1.0"},
                },
            },
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            {
                "jsonrpc": "2.0",
                "id": 3,
                "method": "tools/call",
                "params": {"name": "echo", "arguments": {"message": "hi"}},
            },
        ):
            post = await client.post(TEST_PATH, json=message, headers=headers)
            assert post.status == 202

        reply = await read_reply(response, request_id=3)
        assert reply["result"]["content"] == [{"type": "text", "text": "Tool echo: hi"}]
        assert reply["result"]["isError"] is False

        response.close()
        await wait_for(lambda: len(builder.sessions) == 0)

        post = await client.post(TEST_PATH, json=ping, headers=headers)
        assert post.status == 404

    assert session.state is SessionState.CLOSED
    assert await memory_store.exists(connection_key(connection_id)) is False


async def test_max_duration_closes_the_stream(registry: Registry, memory_store: InMemoryStore) -> None:
    settings = Settings(environment="test", path=TEST_PATH, heartbeat_interval=10, max_duration=0.2)
    builder = AppBuilder(registry, settings, store=memory_store)

    async with aiohttp_client(builder.build()) as client:
        response = await client.get(f"{TEST_PATH}/sse", headers=AUTH)
        assert response.status == 200
        assert (await read_event(response))[0] == "event: endpoint"

        with anyio.fail_after(5):
            await response.content.read()
        assert len(builder.sessions) == 0


@pytest.mark.parametrize("app_fixture", ["standalone_app", "subapp"])
async def test_mcp_session(request: pytest.FixtureRequest, app_fixture: str) -> None:
    app = request.getfixturevalue(app_fixture)

    async with aiohttp_server(app) as server:
        async with mcp_client_session(get_sse_url(server)) as session:
            tools_result = await session.list_tools()
            assert [tool.name for tool in tools_result.tools] == ["echo", "fail"]

            result = await session.call_tool("echo", {"message": "Hello, World!"})
            assert not result.isError
            assert isinstance(result.content[0], TextContent)
            assert result.content[0].text == "Tool echo: Hello, World!"

            # A failing tool is reported in the result and the session stays usable
            result = await session.call_tool("fail", {})
            assert result.isError
            assert isinstance(result.content[0], TextContent)
            assert "boom" in result.content[0].text

            result = await session.call_tool("echo", {"message": "still here"})
            assert not result.isError

            resources = await session.list_resources()
            assert [str(resource.uri) for resource in resources.resources] == ["config://my-config"]

            contents = await session.read_resource("echo://hello")  # type: ignore[arg-type]
            assert contents.contents[0].text == "Resource echo: hello"  # type: ignore[union-attr]

            prompt = await session.get_prompt("echo-prompt", {"message": "hi"})
            assert prompt.messages[0].content.text == "Please process this message: hi"  # type: ignore[union-attr]


async def test_sessions_are_isolated(builder: AppBuilder, standalone_app: web.Application) -> None:
    async with aiohttp_server(standalone_app) as server:
        url = get_sse_url(server)
        async with mcp_client_session(url) as first, mcp_client_session(url) as second:
            assert len(builder.sessions) == 2
            one, two = list(builder.sessions)
            assert one.connection_id != two.connection_id
            assert one.protocol_server is not two.protocol_server

            first_result = await first.call_tool("echo", {"message": "first"})
            second_result = await second.call_tool("echo", {"message": "second"})
            assert first_result.content[0].text == "Tool echo: first"  # type: ignore[union-attr]
            assert second_result.content[0].text == "Tool echo: second"  # type: ignore[union-attr]

        await wait_for(lambda: len(builder.sessions) == 0)


async def test_store_server_state(builder: AppBuilder, memory_store: KeyValueStore) -> None:
    await builder.store_server_state("abc", {"step": 2, "done": False})
    assert json.loads(await memory_store.get("mcp:state:abc") or "null") == {"step": 2, "done": False}


async def test_serve_requires_a_set_up_session(builder: AppBuilder) -> None:
    with pytest.raises(RuntimeError, match="Session not set up"):
        await builder._serve(Session(connection_id="abc"), EventSourceResponse())
