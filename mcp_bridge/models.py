"""Result types produced by the client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mcp_bridge.errors import ProtocolError


@dataclass(frozen=True)
class InitializeResult:
    """What the server reported during the handshake."""
    protocol_version: str | None
    capabilities: dict[str, Any]
    server_info: dict[str, Any]
    instructions: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_result(cls, result: Any) -> "InitializeResult":
        if not isinstance(result, dict):
            raise ProtocolError(
                f"initialize result must be an object, got {type(result).__name__}"
            )
        return cls(
            protocol_version=result.get("protocolVersion"),
            capabilities=result.get("capabilities") or {},
            server_info=result.get("serverInfo") or {},
            instructions=result.get("instructions"),
            raw=result,
        )


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool as advertised by tools/list."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Any) -> "ToolDescriptor":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ProtocolError(f"Invalid tool descriptor: {data!r}")
        schema = data.get("inputSchema")
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=schema,
            raw=data,
        )


@dataclass(frozen=True)
class CallToolResult:
    """Successful tools/call result."""
    content: list[dict[str, Any]]
    structured_content: Any = None
    is_error: bool = False

    @classmethod
    def from_result(cls, result: Any) -> "CallToolResult":
        if not isinstance(result, dict):
            raise ProtocolError(
                f"tools/call result must be an object, got {type(result).__name__}"
            )
        content = result.get("content") or []
        if not isinstance(content, list):
            raise ProtocolError("tools/call result 'content' must be a list")
        return cls(
            content=content,
            structured_content=result.get("structuredContent"),
            is_error=bool(result.get("isError", False)),
        )

    @property
    def text(self) -> str:
        """All text content blocks joined by newlines."""
        return "\n".join(
            block.get("text", "")
            for block in self.content
            if isinstance(block, dict) and block.get("type") == "text"
        )
