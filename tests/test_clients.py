"""Tests for the language-model and tool collaborators."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ErrorData, ListToolsResult, TextContent, Tool

import agentflow.clients.tools as tools_module
from agentflow.clients.llm import ModelRouter, OpenAICompatibleClient, build_model_router
from agentflow.clients.tools import CompositeToolBackend, McpBrokerClient, ToolRegistry
from agentflow.config import AppConfig
from agentflow.core.exceptions import StepExecutionError, ToolNotFoundError, WorkflowEngineError


def json_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = body
    response.text = str(body)
    return response


class TestOpenAICompatibleClient:

    def test_parses_completion_and_usage(self):
        session = MagicMock()
        session.post.return_value = json_response({
            "choices": [{"message": {"content": "Sales grew."}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        })
        client = OpenAICompatibleClient("https://api.test/v1/", api_key="k", session=session)

        completion = client.complete("Summarize", 100, "gpt-4o-mini")

        assert completion.text == "Sales grew."
        assert completion.tokens_used == 15
        assert completion.split_known
        url = session.post.call_args[0][0]
        assert url == "https://api.test/v1/chat/completions"
        assert session.post.call_args[1]["json"]["max_tokens"] == 100

    def test_missing_api_key(self):
        client = OpenAICompatibleClient("https://api.test/v1", api_key=None, session=MagicMock())
        with pytest.raises(StepExecutionError):
            client.complete("x", 10, "m")

    def test_http_error(self):
        session = MagicMock()
        session.post.return_value = json_response({"error": "rate limited"}, status_code=429)
        client = OpenAICompatibleClient("https://api.test/v1", api_key="k", session=session)
        with pytest.raises(StepExecutionError, match="429"):
            client.complete("x", 10, "m")

    def test_request_exception(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")
        client = OpenAICompatibleClient("https://api.test/v1", api_key="k", session=session)
        with pytest.raises(StepExecutionError):
            client.complete("x", 10, "m")


class TestModelRouter:

    def test_routes_by_prefix(self, fake_llm):
        other = MagicMock()
        router = ModelRouter(default=other, routes=[("gpt", fake_llm)])
        router.complete("hi", 5, "gpt-4o")
        router.complete("hi", 5, "llama-3")
        assert len(fake_llm.calls) == 1
        other.complete.assert_called_once_with("hi", 5, "llama-3")

    def test_build_from_config(self):
        router = build_model_router(AppConfig(openai_api_key="o", groq_api_key="g"))
        assert router.client_for("gpt-4o").provider == "openai"
        assert router.client_for("llama-3.3-70b-versatile").provider == "groq"


class TestToolRegistry:

    def test_register_and_invoke(self):
        registry = ToolRegistry()
        registry.register_tool("double", lambda value=0: value * 2, "Doubles")
        assert registry.tool_exists("double")
        assert registry.list_tools() == {"double": "Doubles"}
        assert registry.invoke("double", {"value": 4}) == 8

    def test_duplicate_registration(self):
        registry = ToolRegistry()
        registry.register_tool("t", lambda: 1)
        with pytest.raises(WorkflowEngineError):
            registry.register_tool("t", lambda: 2)

    def test_unknown_tool(self):
        with pytest.raises(ToolNotFoundError):
            ToolRegistry().get_tool("missing")

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register_tool("t", lambda: 1)
        assert registry.unregister_tool("t")
        assert not registry.unregister_tool("t")


@pytest.fixture
def mcp_sdk(monkeypatch):
    """SDK transport and session replaced by mocks; the broker offers one tool, ``search``."""
    session = AsyncMock()
    session.list_tools.return_value = ListToolsResult(tools=[Tool(name="search", inputSchema={"type": "object"})])
    session.call_tool.return_value = CallToolResult(content=[TextContent(type="text", text="done")])

    transport = MagicMock()
    transport.return_value.__aenter__.return_value = ("read", "write")
    transport.return_value.__aexit__.return_value = False
    session_class = MagicMock()
    session_class.return_value.__aenter__.return_value = session
    session_class.return_value.__aexit__.return_value = False

    monkeypatch.setattr(tools_module, "sse_client", transport)
    monkeypatch.setattr(tools_module, "ClientSession", session_class)
    return SimpleNamespace(session=session, transport=transport, session_class=session_class)


class TestMcpBrokerClient:

    def test_initializes_session_then_calls_tool(self, mcp_sdk):
        client = McpBrokerClient("https://mcp.test/sse", api_key="secret")

        assert client.invoke("search", {"q": "sales"}) == "done"
        mcp_sdk.session.initialize.assert_awaited_once()
        mcp_sdk.session.call_tool.assert_awaited_once_with("search", {"q": "sales"})
        mcp_sdk.session_class.assert_called_once_with("read", "write")
        assert mcp_sdk.transport.call_args[0][0] == "https://mcp.test/sse"
        assert mcp_sdk.transport.call_args[1]["headers"] == {"Authorization": "Bearer secret"}

    def test_structured_content_preferred(self, mcp_sdk):
        mcp_sdk.session.call_tool.return_value = CallToolResult(
            content=[TextContent(type="text", text="{}")], structuredContent={"rows": 3}
        )
        assert McpBrokerClient("https://mcp.test/sse").invoke("search", {}) == {"rows": 3}

    def test_unknown_tool(self, mcp_sdk):
        with pytest.raises(ToolNotFoundError):
            McpBrokerClient("https://mcp.test/sse").invoke("nope", {})
        mcp_sdk.session.call_tool.assert_not_awaited()

    def test_tool_error_result(self, mcp_sdk):
        mcp_sdk.session.call_tool.return_value = CallToolResult(
            content=[TextContent(type="text", text="bad input")], isError=True
        )
        with pytest.raises(StepExecutionError, match="bad input"):
            McpBrokerClient("https://mcp.test/sse").invoke("search", {})

    def test_protocol_error(self, mcp_sdk):
        mcp_sdk.session.call_tool.side_effect = McpError(ErrorData(code=-32603, message="broker overloaded"))
        with pytest.raises(StepExecutionError, match="broker overloaded"):
            McpBrokerClient("https://mcp.test/sse").invoke("search", {})

    def test_unreachable_broker(self, mcp_sdk):
        mcp_sdk.transport.return_value.__aenter__.side_effect = ConnectionError("connection refused")
        with pytest.raises(StepExecutionError, match="unreachable"):
            McpBrokerClient("https://mcp.test/sse").invoke("search", {})

    def test_streamable_http_transport(self, mcp_sdk, monkeypatch):
        streamable = MagicMock()
        streamable.return_value.__aenter__.return_value = ("read", "write", lambda: "session-1")
        streamable.return_value.__aexit__.return_value = False
        monkeypatch.setattr(tools_module, "streamablehttp_client", streamable)

        client = McpBrokerClient("https://mcp.test/mcp", timeout=5.0, transport="streamable-http")

        assert client.invoke("search", {}) == "done"
        mcp_sdk.transport.assert_not_called()
        assert streamable.call_args[1]["timeout"] == timedelta(seconds=5)

    def test_list_tools(self, mcp_sdk):
        assert McpBrokerClient("https://mcp.test/sse").list_tools() == ["search"]

    def test_rejects_unknown_transport(self):
        with pytest.raises(ValueError):
            McpBrokerClient("https://mcp.test", transport="stdio")


class TestCompositeToolBackend:

    def test_registry_first_then_broker(self, tool_registry):
        broker = MagicMock()
        broker.invoke.return_value = "remote"
        backend = CompositeToolBackend(tool_registry, broker)

        assert backend.invoke("echo", {"message": "hi"}) == {"message": "hi"}
        assert backend.invoke("remote_tool", {}) == "remote"
        broker.invoke.assert_called_once_with("remote_tool", {})
        assert backend.has_tool("echo") is True
        assert backend.has_tool("remote_tool") is None

    def test_without_broker(self, tool_registry):
        backend = CompositeToolBackend(tool_registry)
        assert backend.has_tool("remote_tool") is False
        with pytest.raises(ToolNotFoundError):
            backend.invoke("remote_tool", {})
