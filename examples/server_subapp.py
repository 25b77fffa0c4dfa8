import logging

from aiohttp import web

from chatbot_mcp import Settings, setup_mcp_subapp
from chatbot_mcp.tools import registry

logging.basicConfig(level=logging.INFO)


async def index(request: web.Request) -> web.Response:
    return web.Response(text="Chatbot backend with an MCP endpoint under /mcp")


app = web.Application()
app.router.add_get("/", index)
setup_mcp_subapp(app, registry, prefix="/mcp", settings=Settings())
web.run_app(app, handler_cancellation=True)
