import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.lowlevel.server import LifespanResultT
from mcp.types import (
    AnyFunction,
    ContentBlock,
    GetPromptResult,
    Prompt,
    Resource,
    ResourceTemplate,
    Tool,
)

from .config import LogLevel

__all__ = ["ChatbotMCP"]

logger = logging.getLogger(__name__)


class ChatbotMCP:
    """Protocol server for one MCP connection.

    Thin wrapper over :class:`FastMCP`: the SDK validates tool input against the
    handler signature, dispatches JSON-RPC requests and turns handler exceptions
    into error results.
    """

    def __init__(
        self,
        name: str | None = None,
        version: str | None = None,
        instructions: str | None = None,
        debug: bool = False,
        log_level: LogLevel = "INFO",
        lifespan: Callable[[FastMCP], AbstractAsyncContextManager[LifespanResultT]] | None = None,
    ) -> None:
        self._fastmcp = FastMCP(
            name=name,
            instructions=instructions,
            debug=debug,
            log_level=log_level,
            warn_on_duplicate_resources=True,
            warn_on_duplicate_tools=True,
            warn_on_duplicate_prompts=True,
            lifespan=lifespan,
        )
        if version is not None:
            self.server.version = version

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def server(self) -> Server[Any]:
        return self._fastmcp._mcp_server

    def tool(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.tool(name=name, description=description)

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.resource(uri, name=name, description=description, mime_type=mime_type)

    def prompt(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.prompt(name=name, description=description)

    async def list_tools(self) -> list[Tool]:
        """List all available tools."""
        return await self._fastmcp.list_tools()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Sequence[ContentBlock]:
        """Call a tool by name with arguments and return its content blocks."""
        result = await self._fastmcp.call_tool(name, arguments)
        if isinstance(result, tuple):
            # (content, structured content) for tools with an output schema
            result = result[0]
        return list(result)

    async def list_resources(self) -> list[Resource]:
        """List static resources."""
        return await self._fastmcp.list_resources()

    async def list_resource_templates(self) -> list[ResourceTemplate]:
        """List templated resources."""
        return await self._fastmcp.list_resource_templates()

    async def read_resource(self, uri: str) -> Iterable[ReadResourceContents]:
        """Read a resource by exact or templated URI."""
        return await self._fastmcp.read_resource(uri)

    async def list_prompts(self) -> list[Prompt]:
        return await self._fastmcp.list_prompts()

    async def get_prompt(self, name: str, arguments: dict[str, Any] | None = None) -> GetPromptResult:
        return await self._fastmcp.get_prompt(name, arguments)
