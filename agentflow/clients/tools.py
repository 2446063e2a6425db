"""Tool backends invoked by tool-call steps."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from ..core.exceptions import StepExecutionError, ToolNotFoundError, WorkflowEngineError
from ..core.logging import get_logger

logger = get_logger(__name__)

MCP_TRANSPORTS = ("sse", "streamable-http")


class ToolBackend(ABC):
    """Anything that can invoke a named tool with a parameter mapping."""

    @abstractmethod
    def invoke(self, tool_name: str, params: Dict[str, Any]) -> Any:
        """Invoke a tool and return its result.

        Raises:
            ToolNotFoundError: If the backend does not know the tool
            StepExecutionError: If the tool fails
        """

    def has_tool(self, tool_name: str) -> Optional[bool]:
        """Whether the tool is known, or None when the backend cannot tell up front."""
        return None


class ToolRegistry(ToolBackend):
    """Registry of in-process Python functions callable from tool-call steps."""

    def __init__(self):
        self._tools: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}

    def register_tool(self, name: str, function: Callable, description: str = "") -> None:
        """Register a Python function as a reusable tool.

        Args:
            name: Unique identifier for the tool
            function: Callable receiving the resolved step parameters as keyword arguments
            description: Optional description of the tool's purpose

        Raises:
            WorkflowEngineError: If the name is empty or taken, or the function is not callable
        """
        if not name or not name.strip():
            raise WorkflowEngineError("Tool name cannot be empty", error_code="TOOL_REGISTRY_ERROR")

        name = name.strip()

        if not callable(function):
            raise WorkflowEngineError(f"Tool '{name}' must be a callable function", error_code="TOOL_REGISTRY_ERROR")

        if name in self._tools:
            raise WorkflowEngineError(f"Tool '{name}' is already registered", error_code="TOOL_REGISTRY_ERROR")

        try:
            inspect.signature(function)
        except (ValueError, TypeError) as e:
            raise WorkflowEngineError(
                f"Cannot inspect function signature for tool '{name}': {e}",
                error_code="TOOL_REGISTRY_ERROR"
            )

        self._tools[name] = function
        self._descriptions[name] = description.strip() if description else ""
        logger.info(f"Registered tool '{name}' from {function.__module__}.{function.__name__}")

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool; returns False if it was not registered."""
        if name not in self._tools:
            return False
        del self._tools[name]
        self._descriptions.pop(name, None)
        logger.info(f"Unregistered tool '{name}'")
        return True

    def get_tool(self, name: str) -> Callable:
        """Retrieve a registered tool by name.

        Raises:
            ToolNotFoundError: If tool is not registered
        """
        name = (name or "").strip()
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> Dict[str, str]:
        """List all registered tools with their descriptions."""
        return dict(self._descriptions)

    def tool_exists(self, name: str) -> bool:
        if not name or not name.strip():
            return False
        return name.strip() in self._tools

    def has_tool(self, tool_name: str) -> Optional[bool]:
        return self.tool_exists(tool_name)

    def invoke(self, tool_name: str, params: Dict[str, Any]) -> Any:
        function = self.get_tool(tool_name)
        try:
            return function(**params)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise StepExecutionError(f"Tool '{tool_name}' failed: {e}")


class McpBrokerClient(ToolBackend):
    """Model Context Protocol tool broker, reached through the ``mcp`` SDK.

    Every call opens a client session over SSE or streamable HTTP, runs the
    ``initialize`` handshake, checks the broker's tool list and then calls
    the tool. Steps run synchronously, so each call drives its own event
    loop with ``asyncio.run``.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 transport: str = "sse"):
        if transport not in MCP_TRANSPORTS:
            raise ValueError(f"Unsupported MCP transport: {transport}")
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[ClientSession]:
        if self.transport == "streamable-http":
            streams = streamablehttp_client(self.base_url, headers=self._headers(),
                                            timeout=timedelta(seconds=self.timeout))
        else:
            streams = sse_client(self.base_url, headers=self._headers(), timeout=self.timeout)

        async with streams as (read_stream, write_stream, *_):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                yield session

    def _run(self, coroutine) -> Any:
        try:
            return asyncio.run(asyncio.wait_for(coroutine, timeout=self.timeout))
        except asyncio.TimeoutError:
            raise StepExecutionError(f"MCP broker did not answer within {self.timeout}s")
        except McpError as e:
            raise StepExecutionError(f"MCP broker error: {e.error.message}")
        except Exception as e:
            raise StepExecutionError(f"MCP broker unreachable at {self.base_url}: {e}")

    async def _list_tool_names(self) -> List[str]:
        async with self._session() as session:
            listing = await session.list_tools()
        return [tool.name for tool in listing.tools]

    async def _call_tool(self, tool_name: str, params: Dict[str, Any]):
        """Returns the ``CallToolResult``, or None when the broker does not offer the tool."""
        async with self._session() as session:
            listing = await session.list_tools()
            if tool_name not in {tool.name for tool in listing.tools}:
                return None
            return await session.call_tool(tool_name, params)

    def list_tools(self) -> List[str]:
        return self._run(self._list_tool_names())

    def invoke(self, tool_name: str, params: Dict[str, Any]) -> Any:
        result = self._run(self._call_tool(tool_name, params))
        if result is None:
            raise ToolNotFoundError(tool_name)

        text = "\n".join(item.text for item in result.content if getattr(item, "type", None) == "text")
        if result.isError:
            raise StepExecutionError(f"Tool '{tool_name}' failed: {text or 'unknown error'}")
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return structured
        return text


class CompositeToolBackend(ToolBackend):
    """Local registry first, then the broker for anything the registry does not know."""

    def __init__(self, registry: ToolRegistry, broker: Optional[McpBrokerClient] = None):
        self.registry = registry
        self.broker = broker

    def has_tool(self, tool_name: str) -> Optional[bool]:
        if self.registry.tool_exists(tool_name):
            return True
        return None if self.broker else False

    def invoke(self, tool_name: str, params: Dict[str, Any]) -> Any:
        if self.registry.tool_exists(tool_name):
            return self.registry.invoke(tool_name, params)
        if self.broker is None:
            raise ToolNotFoundError(tool_name)
        logger.debug(f"Routing tool '{tool_name}' to MCP broker")
        return self.broker.invoke(tool_name, params)
