"""
Exception hierarchy for the MCP stdio client.

    MCPError
    ├── InitializeError          handshake failed, client unusable
    │   └── LaunchError          server process could not be started
    ├── NotReady                 operation not legal in the current state
    ├── RequestTimeout           no response before the deadline
    ├── RequestCancelled         pending request dropped by close()
    ├── TransportError           pipe or process failure
    │   └── TransportClosed      process exited / stream closed
    ├── ProtocolError            invalid message from the server
    │   ├── MalformedFrame       frame could not be parsed
    │   └── RPCError             server set the JSON-RPC error field
    ├── ToolNotFound             unknown tool name
    └── ToolExecutionError       tool ran and reported failure

Transport and framing errors are fatal to a client instance. Timeouts and
tool errors are per call; the client stays usable.
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base exception for all client errors."""
    pass


class InitializeError(MCPError):
    """The handshake failed or timed out."""
    pass


class LaunchError(InitializeError):
    """The server executable could not be found or started."""
    pass


class NotReady(MCPError):
    """The client is not in a state that allows the operation."""
    pass


class RequestTimeout(MCPError, TimeoutError):
    """No response arrived within the request deadline."""

    def __init__(self, method: str, request_id: int | str, timeout: float):
        self.method = method
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(
            f"No response to '{method}' (id={request_id}) within {timeout:g}s"
        )


class RequestCancelled(MCPError):
    """The client was closed while the request was outstanding."""
    pass


class TransportError(MCPError):
    """Pipe or process level failure."""
    pass


class TransportClosed(TransportError):
    """The server process exited or its stream was closed."""
    pass


class ProtocolError(MCPError):
    """The server sent a message that violates the protocol."""
    pass


class MalformedFrame(ProtocolError):
    """A frame on the wire could not be parsed into a message."""
    pass


class RPCError(ProtocolError):
    """JSON-RPC error object returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")

    @classmethod
    def from_error(cls, error: dict) -> "RPCError":
        return cls(
            code=error.get("code", 0),
            message=str(error.get("message", "")),
            data=error.get("data"),
        )


class ToolNotFound(MCPError):
    """The server does not offer a tool with this name."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        self.available = available
        message = f"Unknown tool: '{name}'"
        if available is not None:
            message += f". Available: {available}"
        super().__init__(message)


class ToolExecutionError(MCPError):
    """The tool ran but reported a failure."""

    def __init__(
        self,
        name: str,
        message: str,
        code: int | None = None,
        content: list[dict] | None = None,
    ):
        self.name = name
        self.message = message
        self.code = code
        self.content = content or []
        super().__init__(f"Tool '{name}' failed: {message}")
