"""
Bridge between MCP tool callbacks and LangChain.

The core client stops at ToolCallback. This module converts callbacks into
LangChain StructuredTools so they can be bound to a chat model or handed
to an agent.

Usage:
    from mcp_bridge.bridge import to_langchain_tools

    with SyncClient(params) as client:
        tools = to_langchain_tools(discover_adapters(client))
        llm_with_tools = chat_model.bind_tools(tools)
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from langchain_core.tools import StructuredTool

from mcp_bridge.adapters import ToolCallback
from mcp_bridge.errors import RequestTimeout, ToolExecutionError, ToolNotFound
from mcp_bridge.models import CallToolResult


def format_result(result: CallToolResult) -> str:
    """Render a tool result as text for a language model."""
    if result.text:
        return result.text
    if result.structured_content is not None:
        return json.dumps(result.structured_content, indent=2)
    return json.dumps(result.content, indent=2)


def to_langchain_tool(
    callback: ToolCallback,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps an MCP tool callback.

    The tool's JSON input schema is passed through as args_schema. Failures
    a model can react to (unknown tool, tool error, timeout) are returned as
    text; transport failures propagate.

    Args:
        callback: The discovered tool
        description_override: Optional override for the tool description

    Returns:
        A LangChain StructuredTool that proxies calls to the MCP server.
    """

    def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to MCP tool server."""
        try:
            return format_result(callback.invoke(kwargs))
        except (ToolNotFound, ToolExecutionError, RequestTimeout) as e:
            return f"Error calling {callback.name}: {e}"

    return StructuredTool.from_function(
        func=_call_mcp,
        name=callback.name,
        description=description_override or callback.description or callback.name,
        args_schema=callback.input_schema,
    )


def to_langchain_tools(callbacks: Iterable[ToolCallback]) -> list[StructuredTool]:
    """Convert every callback, preserving order."""
    return [to_langchain_tool(cb) for cb in callbacks]
