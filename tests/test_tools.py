"""Tests for conversational tools and their lifecycle hooks."""

import pytest

from phaseforge.tools import ToolDefinition, ToolResult, build_queue_request_tool, build_tools


class Agent:
    def __init__(self):
        self.queued = []

    async def queue_user_request(self, request):
        self.queued.append(request)


class SearchingAgent(Agent):
    async def web_search(self, query):
        return f"results for {query}"


class TestToolDefinition:
    @pytest.mark.asyncio
    async def test_hooks_on_success(self):
        events = []

        async def handler(args):
            return ToolResult(status="success", message="ok")

        tool = ToolDefinition(
            name="t",
            description="d",
            handler=handler,
            on_start=lambda a: events.append(("start", a)),
            on_complete=lambda a: events.append(("complete", a)),
            on_error=lambda a: events.append(("error", a)),
        )
        result = await tool.run({"x": 1})
        assert result.status == "success"
        assert events == [("start", {"x": 1}), ("complete", {"x": 1})]

    @pytest.mark.asyncio
    async def test_raising_handler_becomes_error_result(self):
        events = []

        async def handler(args):
            raise RuntimeError("disk full")

        async def on_error(args):
            events.append("error")

        tool = ToolDefinition(name="t", description="d", handler=handler, on_error=on_error)
        result = await tool.run({})
        assert result.status == "error"
        assert result.message == "Error executing t: disk full"
        assert events == ["error"]

    def test_to_api(self):
        tool = build_queue_request_tool(Agent())
        api = tool.to_api()
        assert api["name"] == "queue_request"
        assert api["input_schema"]["required"] == ["modification_request"]
        assert set(api) == {"name", "description", "input_schema"}


class TestBuiltInTools:
    @pytest.mark.asyncio
    async def test_queue_request_awaits_agent(self):
        agent = Agent()
        result = await build_queue_request_tool(agent).run({"modification_request": "  Add dark mode  "})
        assert result.status == "success"
        assert agent.queued == ["Add dark mode"]

    @pytest.mark.asyncio
    async def test_queue_request_rejects_empty(self):
        agent = Agent()
        result = await build_queue_request_tool(agent).run({"modification_request": " "})
        assert result.status == "error"
        assert agent.queued == []

    def test_web_search_offered_only_when_supported(self):
        assert [t.name for t in build_tools(Agent())] == ["queue_request"]
        assert [t.name for t in build_tools(SearchingAgent())] == ["queue_request", "web_search"]

    @pytest.mark.asyncio
    async def test_web_search(self):
        tools = {t.name: t for t in build_tools(SearchingAgent())}
        result = await tools["web_search"].run({"query": "zustand persist"})
        assert result.message == "results for zustand persist"
