"""
Tool adapters — one callable per discovered tool.

An orchestrator (an LLM function-calling loop, a LangChain agent, a test)
receives a list of ToolCallbacks. Each callback knows its tool's name,
description and input schema, and invoking it performs a tools/call on the
client it was built from.

Usage:
    callbacks = discover_adapters(client)
    for cb in callbacks:
        print(cb.describe())

    result = callbacks[0].invoke({"query": "invoice"})
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from mcp_bridge.models import CallToolResult, ToolDescriptor

if TYPE_CHECKING:
    from mcp_bridge.client import SyncClient


class ToolCallback:
    """
    A discovered tool bound to the client that can invoke it.

    The callback holds no mutable state; the client is shared by all
    callbacks built from it and is not owned by any of them.
    """

    __slots__ = ("_client", "_descriptor")

    def __init__(self, client: "SyncClient", descriptor: ToolDescriptor):
        self._client = client
        self._descriptor = descriptor

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def description(self) -> str:
        return self._descriptor.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._descriptor.input_schema

    @property
    def descriptor(self) -> ToolDescriptor:
        return self._descriptor

    def invoke(self, arguments: dict[str, Any] | None = None) -> CallToolResult:
        """Call the tool. Errors from the client propagate unchanged."""
        return self._client.call_tool(self.name, arguments)

    def __call__(self, **kwargs: Any) -> CallToolResult:
        return self.invoke(kwargs)

    def describe(self) -> str:
        """Plain-text summary of the tool and its parameters."""
        schema = self.input_schema
        params = schema.get("properties", {}) or {}
        required = set(schema.get("required", []) or [])

        lines = [f"## Tool: {self.name}", self.description]
        if params:
            lines.append("")
            lines.append("Parameters:")
            for pname, pinfo in params.items():
                ptype = pinfo.get("type", "any") if isinstance(pinfo, dict) else "any"
                pdesc = pinfo.get("description", "") if isinstance(pinfo, dict) else ""
                flag = ", required" if pname in required else ""
                lines.append(f"  - {pname} ({ptype}{flag}): {pdesc}".rstrip())
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ToolCallback(name={self.name!r})"


def build_adapters(
    descriptors: Iterable[ToolDescriptor],
    client: "SyncClient",
) -> list[ToolCallback]:
    """
    Wrap each descriptor in a ToolCallback, preserving discovery order.

    Raises:
        ValueError: Two descriptors share a name.
    """
    callbacks = []
    seen: set[str] = set()
    for descriptor in descriptors:
        if descriptor.name in seen:
            raise ValueError(f"Duplicate tool name: '{descriptor.name}'")
        seen.add(descriptor.name)
        callbacks.append(ToolCallback(client, descriptor))
    return callbacks


def discover_adapters(client: "SyncClient") -> list[ToolCallback]:
    """List the client's tools and wrap each one."""
    return build_adapters(client.list_tools(), client)
