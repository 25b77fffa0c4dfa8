import datetime
import logging
from zoneinfo import ZoneInfo

from aiohttp import web

from chatbot_mcp import Settings, build_mcp_app
from chatbot_mcp.tools import registry

logging.basicConfig(level=logging.INFO)


@registry.tool(name="getTime", description="Get the current time in the specified timezone")
def get_time(timezone: str) -> str:
    tz = ZoneInfo(timezone)
    return datetime.datetime.now(tz).isoformat()


settings = Settings()
app = build_mcp_app(registry, settings)
web.run_app(app, host=settings.host, port=settings.port, handler_cancellation=True)
