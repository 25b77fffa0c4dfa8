"""Built-in tools, resources and prompts of the chatbot MCP server."""

import logging
import re
from typing import Annotated, Any, Literal

from mcp.server.fastmcp import Context
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, ConfigDict, Field

from .registry import Registry
from .sessions import current_registry, current_session

__all__ = ["DateRange", "SearchFilters", "registry"]

logger = logging.getLogger(__name__)

DOCUMENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")

registry = Registry()


class DateRange(BaseModel):
    start: str | None = None
    end: str | None = None


class SearchFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_range: DateRange | None = Field(default=None, alias="dateRange")
    categories: list[str] | None = None


@registry.tool(name="echo", description="Echo a message back to the user")
def echo(message: Annotated[str, Field(min_length=1, description="The message to echo back")]) -> str:
    return f"Tool echo: {message}"


@registry.tool(name="searchDocuments", description="Search documents with a query and optional filters")
def search_documents(
    query: Annotated[str, Field(min_length=2, description="Search query term")],
    max_results: Annotated[int, Field(ge=1, description="Maximum number of results to return")] = 10,
    filters: SearchFilters | None = None,
) -> str:
    logger.info('Searching for "%s" with max results: %d', query, max_results)
    if filters is not None:
        logger.info("Applied filters: %s", filters.model_dump_json(by_alias=True, exclude_none=True))
    return f"Found {max_results} results for: {query}"


@registry.tool(name="getWeather", description="Get weather information for a location")
def get_weather(
    location: Annotated[str, Field(min_length=2, description="Location to get weather for (city name)")],
    units: Literal["metric", "imperial"] = "metric",
) -> str:
    return f"Weather for {location} ({units}): 22°C, Partly Cloudy"


@registry.tool(name="rememberSelection", description="Remember a selection for the rest of the conversation")
async def remember_selection(
    key: Annotated[str, Field(min_length=1)],
    value: str,
    ctx: Context,  # type: ignore[type-arg]
) -> str:
    session = current_session(ctx)
    sessions = current_registry(ctx)
    if session is None or sessions is None:
        raise ToolError("No active session for this request")

    session.context.setdefault("selections", {})[key] = value
    await sessions.save_context(session.connection_id, session.context)
    return f"Remembered {key} = {value}"


@registry.tool(name="listSelections", description="List the selections remembered in this conversation")
def list_selections(ctx: Context) -> dict[str, Any]:  # type: ignore[type-arg]
    session = current_session(ctx)
    if session is None:
        raise ToolError("No active session for this request")
    return {"connectionId": session.connection_id, "selections": session.context.get("selections", {})}


@registry.resource("info://app", name="info", description="General application information", mime_type="text/plain")
def app_info() -> str:
    return (
        "This is information about the application. "
        "The app provides various AI-assisted tools and access to resources."
    )


@registry.resource("users://profiles", name="users-list", description="List of all available user profiles")
def users_list() -> str:
    return "Available user profiles: user123, user456, user789"


@registry.resource(
    "users://{user_id}/profile", name="user-profile", description="Access user profile information by user ID"
)
def user_profile(user_id: str) -> str:
    if len(user_id) < 3:
        raise ValueError("Invalid user ID: must be at least 3 characters")
    return f"Profile data for user {user_id}: Name: User {user_id}, Email: user{user_id}@example.com"


@registry.resource("documents://{doc_id}", name="document", description="Access document content by document ID")
def document(doc_id: str) -> str:
    if not DOCUMENT_ID_PATTERN.match(doc_id):
        raise ValueError("Invalid document ID: must contain only alphanumeric characters and hyphens")
    return f"Content of document {doc_id}: Lorem ipsum dolor sit amet, consectetur adipiscing elit."


@registry.prompt(name="summarize", description="Ask the assistant to summarize a text")
def summarize(text: str) -> str:
    return f"Please summarize the following text:\n\n{text}"
