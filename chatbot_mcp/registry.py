import logging
from collections.abc import Callable
from dataclasses import dataclass

from mcp.types import AnyFunction

from .core import ChatbotMCP

__all__ = ["PromptEntry", "Registry", "ResourceEntry", "ToolEntry"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolEntry:
    """A named remote-callable operation."""

    name: str
    fn: AnyFunction
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ResourceEntry:
    """A readable entity addressed by a static or templated URI."""

    uri: str
    name: str
    fn: AnyFunction
    description: str | None = None
    mime_type: str | None = None

    @property
    def is_template(self) -> bool:
        return "{" in self.uri and "}" in self.uri


@dataclass(frozen=True, slots=True)
class PromptEntry:
    name: str
    fn: AnyFunction
    description: str | None = None


class Registry:
    """Declarative table of tools, resources and prompts.

    Entries are collected with decorators at import time and attached to a fresh
    :class:`ChatbotMCP` for every connection. The table is frozen on first attach.
    """

    __slots__ = ("_frozen", "_prompts", "_resources", "_tools")

    def __init__(self) -> None:
        self._tools: dict[str, ToolEntry] = {}
        self._resources: dict[str, ResourceEntry] = {}
        self._prompts: dict[str, PromptEntry] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def tools(self) -> tuple[ToolEntry, ...]:
        return tuple(self._tools.values())

    @property
    def resources(self) -> tuple[ResourceEntry, ...]:
        return tuple(self._resources.values())

    @property
    def prompts(self) -> tuple[PromptEntry, ...]:
        return tuple(self._prompts.values())

    def freeze(self) -> None:
        self._frozen = True

    def _check_open(self) -> None:
        if self._frozen:
            raise RuntimeError("Registry is frozen. Register entries before the server starts accepting connections.")

    def tool(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        def decorator(fn: AnyFunction) -> AnyFunction:
            self._check_open()
            entry = ToolEntry(name=name or fn.__name__, fn=fn, description=description)
            if entry.name in self._tools:
                raise ValueError(f"Tool already registered: {entry.name}")
            self._tools[entry.name] = entry
            logger.debug("Registered tool %s", entry.name)
            return fn

        return decorator

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Callable[[AnyFunction], AnyFunction]:
        def decorator(fn: AnyFunction) -> AnyFunction:
            self._check_open()
            if uri in self._resources:
                raise ValueError(f"Resource already registered: {uri}")
            entry = ResourceEntry(
                uri=uri, name=name or fn.__name__, fn=fn, description=description, mime_type=mime_type
            )
            self._resources[uri] = entry
            logger.debug("Registered resource %s (%s)", entry.name, uri)
            return fn

        return decorator

    def prompt(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        def decorator(fn: AnyFunction) -> AnyFunction:
            self._check_open()
            entry = PromptEntry(name=name or fn.__name__, fn=fn, description=description)
            if entry.name in self._prompts:
                raise ValueError(f"Prompt already registered: {entry.name}")
            self._prompts[entry.name] = entry
            return fn

        return decorator

    def attach(self, server: ChatbotMCP) -> ChatbotMCP:
        """Register every entry on ``server`` and return it."""
        self.freeze()
        for tool in self._tools.values():
            server.tool(name=tool.name, description=tool.description)(tool.fn)
        for resource in self._resources.values():
            server.resource(
                resource.uri, name=resource.name, description=resource.description, mime_type=resource.mime_type
            )(resource.fn)
        for prompt in self._prompts.values():
            server.prompt(name=prompt.name, description=prompt.description)(prompt.fn)
        return server
