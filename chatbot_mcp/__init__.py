from mcp.server.fastmcp import Context

from .app import AppBuilder, build_mcp_app, setup_mcp_subapp
from .auth import BearerAuthenticator
from .client import ConversationClient, MCPContextProvider, create_mcp_client
from .config import Settings
from .core import ChatbotMCP
from .exceptions import (
    AuthenticationError,
    ChatbotMCPError,
    ClientConnectionError,
    ConfigurationError,
    InvalidStateTransition,
    SessionNotFound,
)
from .registry import Registry
from .sessions import Session, SessionRegistry, SessionState, current_registry, current_session
from .store import InMemoryStore, KeyValueStore, RedisStore, create_store

__all__ = [
    "AppBuilder",
    "AuthenticationError",
    "BearerAuthenticator",
    "ChatbotMCP",
    "ChatbotMCPError",
    "ClientConnectionError",
    "ConfigurationError",
    "Context",
    "ConversationClient",
    "InMemoryStore",
    "InvalidStateTransition",
    "KeyValueStore",
    "MCPContextProvider",
    "RedisStore",
    "Registry",
    "Session",
    "SessionNotFound",
    "SessionRegistry",
    "SessionState",
    "Settings",
    "build_mcp_app",
    "create_mcp_client",
    "create_store",
    "current_registry",
    "current_session",
    "setup_mcp_subapp",
]
