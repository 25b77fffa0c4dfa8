import hmac
import logging

from aiohttp import hdrs, web

from .config import Settings
from .exceptions import AuthenticationError

__all__ = ["BEARER_PREFIX", "BearerAuthenticator"]

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class BearerAuthenticator:
    """Validate ``Authorization: Bearer <token>`` headers.

    Outside production any token is accepted, so local clients only need to send
    *some* bearer token. In production the token must match the configured secret.
    """

    __slots__ = ("_production", "_secret")

    def __init__(self, secret: str | None = None, production: bool = False) -> None:
        self._secret = secret
        self._production = production
        if production and not secret:
            logger.warning("No MCP auth token configured, all SSE connections will be rejected")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BearerAuthenticator":
        return cls(secret=settings.auth_token, production=settings.is_production)

    def validate_token(self, token: str) -> bool:
        if not self._production:
            return True
        if not self._secret:
            return False
        return hmac.compare_digest(token.encode(), self._secret.encode())

    def authenticate(self, request: web.Request) -> None:
        """Raise :class:`AuthenticationError` unless the request carries a valid token."""
        auth_header = request.headers.get(hdrs.AUTHORIZATION, "")
        if not auth_header.startswith(BEARER_PREFIX):
            raise AuthenticationError("Authentication required")

        token = auth_header[len(BEARER_PREFIX) :].strip()
        if not token:
            raise AuthenticationError("Authentication required")

        if not self.validate_token(token):
            raise AuthenticationError("Invalid authentication token")
