from collections.abc import AsyncIterator

import pytest
from fakeredis import FakeServer, aioredis

from chatbot_mcp import InMemoryStore, Registry, RedisStore, Settings


@pytest.fixture
def anyio_backend() -> str:
    """Return the backend name for anyio. Test only against asyncio. Trio is not supported."""
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test", heartbeat_interval=0.05, path="/test-mcp", redis_url=None)


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture(params=["memory", "redis"])
async def store(request: pytest.FixtureRequest) -> AsyncIterator[InMemoryStore | RedisStore]:
    """Run a test against both store backends."""
    if request.param == "memory":
        yield InMemoryStore()
        return
    store = RedisStore(aioredis.FakeRedis(server=FakeServer(), decode_responses=True))
    yield store
    await store.close()


@pytest.fixture
def registry() -> Registry:
    registry = Registry()

    @registry.tool(name="echo", description="Echo a message")
    def echo(message: str) -> str:
        return f"Tool echo: {message}"

    @registry.tool(name="fail", description="Always fails")
    def fail() -> str:
        raise ValueError("boom")

    @registry.resource("config://my-config", name="config", description="Static config")
    def config() -> str:
        return "This is a config resource"

    @registry.resource("echo://{message}", name="echo-resource")
    def echo_resource(message: str) -> str:
        return f"Resource echo: {message}"

    @registry.prompt(name="echo-prompt")
    def echo_prompt(message: str) -> str:
        return f"Please process this message: {message}"

    return registry
