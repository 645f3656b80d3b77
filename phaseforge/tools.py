"""Tools offered to the conversational model.

Each tool handler returns a ``ToolResult`` and never raises: a failing
handler is reported to the model as an ``error`` result so the
conversation can continue.  Lifecycle hooks (``on_start`` /
``on_complete`` / ``on_error``) let the caller narrate tool progress.

``queue_request`` hands a change request to the orchestrating agent, which
folds it into the next PhaseGeneration call.  ``web_search`` is offered
only when the agent exposes a ``web_search`` coroutine.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ToolResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success", "error"]
    message: str


Hook = Callable[[dict], Any]


class ToolDefinition(BaseModel):
    """A model-callable tool: JSON schema plus async handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    input_schema: dict = Field(default_factory=lambda: {"type": "object", "properties": {}})
    handler: Callable[[dict], Awaitable[ToolResult]]
    on_start: Hook | None = None
    on_complete: Hook | None = None
    on_error: Hook | None = None

    def to_api(self) -> dict:
        """Anthropic tool-definition dict."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    async def run(self, args: dict) -> ToolResult:
        await _call_hook(self.on_start, args)
        try:
            result = await self.handler(args)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", self.name, exc)
            result = ToolResult(status="error", message=f"Error executing {self.name}: {exc}")
        if result.status == "error":
            await _call_hook(self.on_error, args)
        else:
            await _call_hook(self.on_complete, args)
        return result


async def _call_hook(hook: Hook | None, args: dict) -> None:
    if hook is None:
        return
    out = hook(args)
    if inspect.isawaitable(out):
        await out


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


def build_queue_request_tool(agent: Any) -> ToolDefinition:
    """Tool that forwards a user's change request to the build agent."""

    async def _handler(args: dict) -> ToolResult:
        request = str(args.get("modification_request", "")).strip()
        if not request:
            return ToolResult(status="error", message="modification_request must not be empty")
        out = agent.queue_user_request(request)
        if inspect.isawaitable(out):
            await out
        logger.info("Queued user request: %s", request[:120])
        return ToolResult(
            status="success",
            message="Request queued; it will be implemented in the next phase.",
        )

    return ToolDefinition(
        name="queue_request",
        description=(
            "Queue a change request for the development team. Use this whenever the "
            "user asks for a new feature, a modification, or reports a bug. Describe "
            "the change precisely and include any user-provided details (URLs, copy, "
            "colours) verbatim."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "modification_request": {
                    "type": "string",
                    "description": "Self-contained description of the requested change.",
                },
            },
            "required": ["modification_request"],
        },
        handler=_handler,
    )


def build_web_search_tool(agent: Any) -> ToolDefinition:
    async def _handler(args: dict) -> ToolResult:
        query = str(args.get("query", "")).strip()
        if not query:
            return ToolResult(status="error", message="query must not be empty")
        text = await agent.web_search(query)
        return ToolResult(status="success", message=str(text))

    return ToolDefinition(
        name="web_search",
        description="Search the web for documentation or facts needed to answer the user.",
        input_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
        handler=_handler,
    )


def build_tools(agent: Any) -> list[ToolDefinition]:
    """Return the tools the conversational model may call for *agent*."""
    tools = [build_queue_request_tool(agent)]
    if callable(getattr(agent, "web_search", None)):
        tools.append(build_web_search_tool(agent))
    return tools
