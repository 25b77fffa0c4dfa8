"""Key-value storage used to mirror session metadata.

The server keeps live sessions in process memory. This module gives them a small
side store: a managed Redis instance when credentials are configured, or an
in-memory map when running locally without one.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from .config import Settings
from .exceptions import ConfigurationError

__all__ = [
    "InMemoryStore",
    "KeyValueStore",
    "RedisStore",
    "create_publisher",
    "create_store",
    "encode_value",
    "validate_connection",
]

logger = logging.getLogger(__name__)

PONG = "PONG"


def encode_value(value: Any) -> str:
    """Encode a value the way it is written to the store.

    Strings are stored as-is, everything else as JSON (``True`` becomes ``"true"``).
    """
    if isinstance(value, str):
        return value
    return json.dumps(value)


class KeyValueStore(ABC):
    """Uniform async interface over the backing store."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def hset(self, key: str, fields: Mapping[str, Any]) -> int:
        """Set hash fields, returning how many were newly added."""

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None: ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def ping(self) -> str: ...

    @abstractmethod
    async def publish(self, channel: str, message: Any) -> int:
        """Publish a message, returning the number of receivers."""

    @abstractmethod
    async def close(self) -> None: ...

    async def get_json(self, key: str) -> Any:
        """Return the JSON-decoded value stored under ``key`` or None."""
        raw = await self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any) -> bool:
        return await self.set(key, json.dumps(value))


class RedisStore(KeyValueStore):
    """Store backed by a Redis-compatible server."""

    __slots__ = ("_redis",)

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str, token: str | None = None, retries: int = 2) -> "RedisStore":
        """Connect to ``url``, using ``token`` as the password when given."""
        options: dict[str, Any] = {
            "decode_responses": True,
            "retry": Retry(ExponentialBackoff(cap=2.0, base=0.5), retries),
        }
        if token:
            options["password"] = token
        return cls(redis.from_url(url, **options))

    @property
    def client(self) -> redis.Redis:
        return self._redis

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: Any) -> bool:
        return bool(await self._redis.set(key, encode_value(value)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def hset(self, key: str, fields: Mapping[str, Any]) -> int:
        if not fields:
            return 0
        mapping = {field: encode_value(value) for field, value in fields.items()}
        return int(await self._redis.hset(key, mapping=mapping))

    async def hget(self, key: str, field: str) -> str | None:
        return await self._redis.hget(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._redis.hgetall(key))

    async def ping(self) -> str:
        await self._redis.ping()
        return PONG

    async def publish(self, channel: str, message: Any) -> int:
        return int(await self._redis.publish(channel, encode_value(message)))

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryStore(KeyValueStore):
    """Process-local store for development. Nothing survives a restart."""

    __slots__ = ("_hashes", "_values")

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        logger.warning("Using in-memory store for MCP. State will not persist across restarts.")

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: Any) -> bool:
        self._hashes.pop(key, None)
        self._values[key] = encode_value(value)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._values.pop(key, None) is not None or self._hashes.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        return key in self._values or key in self._hashes

    async def hset(self, key: str, fields: Mapping[str, Any]) -> int:
        if not fields:
            return 0
        self._values.pop(key, None)
        hash_ = self._hashes.setdefault(key, {})
        added = sum(1 for field in fields if field not in hash_)
        hash_.update((field, encode_value(value)) for field, value in fields.items())
        return added

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def ping(self) -> str:
        return PONG

    async def publish(self, channel: str, message: Any) -> int:
        logger.debug("No subscribers in memory for channel %s", channel)
        return 0

    async def close(self) -> None:
        pass


def create_store(settings: Settings, allow_fallback: bool | None = None) -> KeyValueStore:
    """Create the store described by ``settings``.

    Falls back to :class:`InMemoryStore` when credentials are missing or invalid and
    fallback is allowed. Otherwise a :class:`ConfigurationError` is raised.
    """
    if allow_fallback is None:
        allow_fallback = settings.fallback_allowed

    if not settings.redis_url:
        logger.error("Missing Redis credentials for MCP state management")
        if allow_fallback:
            logger.warning("Creating in-memory fallback for MCP state management")
            return InMemoryStore()
        raise ConfigurationError(
            "Redis credentials are not configured. Please set REDIS_URL and KV_REST_API_TOKEN environment variables."
        )

    try:
        logger.info("Creating Redis client for MCP state management")
        return RedisStore.from_url(settings.redis_url, settings.redis_token, retries=settings.redis_retries)
    except ValueError as err:
        logger.error("Failed to create Redis client: %s", err)
        if allow_fallback:
            logger.warning("Creating in-memory fallback for MCP state management")
            return InMemoryStore()
        raise ConfigurationError(f"Invalid Redis configuration: {err}") from err


def create_publisher(settings: Settings) -> KeyValueStore | None:
    """Create the client used to publish session lifecycle events, if configured."""
    url = settings.publisher_url or settings.redis_url
    if not url:
        return None
    token = settings.publisher_token if settings.publisher_url else settings.redis_token
    try:
        return RedisStore.from_url(url, token, retries=settings.redis_retries)
    except ValueError as err:
        logger.warning("Lifecycle events disabled, could not create publisher: %s", err)
        return None


async def validate_connection(store: KeyValueStore) -> bool:
    """Check the store answers ``PONG``. Never raises."""
    try:
        return await store.ping() == PONG
    except (redis.RedisError, OSError) as err:
        logger.error("Redis connection validation failed: %s", err)
        return False
