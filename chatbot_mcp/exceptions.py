"""Exceptions raised by the chatbot MCP server."""


class ChatbotMCPError(Exception):
    """Base error for the chatbot MCP server."""


class ConfigurationError(ChatbotMCPError):
    """The server is misconfigured and must not serve traffic."""


class AuthenticationError(ChatbotMCPError):
    """The request did not carry acceptable credentials."""


class InvalidStateTransition(ChatbotMCPError):
    """A session was moved between states the lifecycle does not allow."""


class SessionNotFound(ChatbotMCPError):
    """No live session is registered under the given connection id."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection not found: {connection_id}")
        self.connection_id = connection_id


class ClientConnectionError(ChatbotMCPError):
    """An MCP client could not connect to or initialize with the server."""
