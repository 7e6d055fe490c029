"""
MCP Bridge — synchronous client for stdio MCP tool servers.

Architecture:
    ┌──────────────┐     stdio      ┌──────────────┐
    │ Orchestrator │ ──────────── │  Tool Server  │
    │ (LLM / agent)│  JSON-RPC    │  (subprocess) │
    └──────────────┘     pipes     └──────────────┘

The tool server is a child process speaking newline-delimited JSON-RPC 2.0
(the MCP stdio transport). SyncClient launches it, performs the handshake,
discovers its tools and invokes them, blocking each caller until its
response arrives or the request times out.

Layers, leaf first:
    transport   StdioTransport: process + framed pipes
    correlator  Correlator: ids, deadlines, response routing
    client      SyncClient: initialize / list_tools / call_tool / close
    adapters    ToolCallback: one callable per discovered tool

The LangChain bridge (mcp_bridge.bridge) is optional and only consumes
ToolCallbacks.
"""

from mcp_bridge.adapters import ToolCallback, build_adapters, discover_adapters
from mcp_bridge.client import ClientState, SyncClient
from mcp_bridge.config import ServerParameters, load_server_config
from mcp_bridge.errors import (
    InitializeError,
    LaunchError,
    MalformedFrame,
    MCPError,
    NotReady,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    RPCError,
    ToolExecutionError,
    ToolNotFound,
    TransportClosed,
    TransportError,
)
from mcp_bridge.manager import ToolServerManager
from mcp_bridge.models import CallToolResult, InitializeResult, ToolDescriptor

__version__ = "0.1.0"


# Bridge requires langchain: lazy import keeps the core importable alone
def to_langchain_tool(*args, **kwargs):
    from mcp_bridge.bridge import to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def to_langchain_tools(*args, **kwargs):
    from mcp_bridge.bridge import to_langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "SyncClient",
    "ClientState",
    "ServerParameters",
    "load_server_config",
    "ToolDescriptor",
    "InitializeResult",
    "CallToolResult",
    "ToolCallback",
    "build_adapters",
    "discover_adapters",
    "ToolServerManager",
    "to_langchain_tool",
    "to_langchain_tools",
    "MCPError",
    "InitializeError",
    "LaunchError",
    "NotReady",
    "RequestTimeout",
    "RequestCancelled",
    "TransportError",
    "TransportClosed",
    "ProtocolError",
    "MalformedFrame",
    "RPCError",
    "ToolNotFound",
    "ToolExecutionError",
]
