import asyncio
import os

from mcp.types import TextContent

from chatbot_mcp import MCPContextProvider, create_mcp_client

MCP_SERVER_URL = os.environ.get("MCP_SERVER_URL", "http://localhost:8080/mcp")
MCP_AUTH_TOKEN = os.environ.get("MCP_AUTH_TOKEN", "local-dev-token")


def first_text(content: list[object]) -> str:
    for block in content:
        if isinstance(block, TextContent):
            return block.text
    return ""


async def main() -> None:
    async with MCPContextProvider(create_mcp_client(MCP_SERVER_URL, MCP_AUTH_TOKEN)) as provider:
        session = await provider.get_context("conversation-1")

        tools = await session.list_tools()
        print("Connected to server with tools:", [tool.name for tool in tools.tools])

        result = await session.call_tool("echo", {"message": "Hello, World!"})
        print(first_text(result.content))

        await session.call_tool("rememberSelection", {"key": "city", "value": "Berlin"})
        result = await session.call_tool("listSelections", {})
        print(first_text(result.content))

        result = await session.call_tool("getWeather", {"location": "Berlin"})
        print(first_text(result.content))

        resource = await session.read_resource("info://app")  # type: ignore[arg-type]
        print(resource.contents[0].text)  # type: ignore[union-attr]


if __name__ == "__main__":
    asyncio.run(main())
