import logging

from aiohttp import web

from .app import build_mcp_app
from .config import Settings
from .tools import registry


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = build_mcp_app(registry, settings)
    web.run_app(app, host=settings.host, port=settings.port, handler_cancellation=True)


if __name__ == "__main__":
    main()
