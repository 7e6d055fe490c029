"""
Tool Server Manager — runs several MCP tool servers side by side.

Each server gets its own SyncClient; nothing is shared between them. The
manager only keeps them by id and makes sure they are all stopped.

Usage:
    with ToolServerManager() as manager:
        manager.register_server("echo", ServerParameters(sys.executable, ["-m", "mcp_bridge.servers.echo"]))
        manager.start("echo")

        result = manager.call("echo", "echo", {"message": "hi"})
        callbacks = manager.adapters()      # every tool on every server
    # all servers stopped here
"""

from __future__ import annotations

import logging
from typing import Any

from mcp_bridge.adapters import ToolCallback, build_adapters
from mcp_bridge.client import SyncClient
from mcp_bridge.config import ServerParameters
from mcp_bridge.errors import MCPError, NotReady
from mcp_bridge.models import CallToolResult, ToolDescriptor

logger = logging.getLogger(__name__)


class ToolServerManager:
    """
    Manages the lifecycle of several MCP tool server clients.

    Responsibilities:
    - Launch and initialize one SyncClient per registered server
    - Route tool calls to the correct server
    - Hand out tool callbacks for all running servers
    - Graceful shutdown
    """

    def __init__(self, request_timeout: float | None = None):
        self.request_timeout = request_timeout
        self._servers: dict[str, ServerParameters] = {}
        self._clients: dict[str, SyncClient] = {}
        self._tools: dict[str, list[ToolDescriptor]] = {}

    def register_server(self, server_id: str, params: ServerParameters) -> None:
        """Register a tool server (does not start it yet)."""
        if server_id in self._servers:
            raise ValueError(f"Server already registered: {server_id}")
        self._servers[server_id] = params
        logger.info(f"Registered server: {server_id} ({' '.join(params.argv)})")

    def start(self, server_id: str) -> list[ToolDescriptor]:
        """
        Start a tool server and discover its tools.

        Returns:
            The server's tool descriptors.
        """
        params = self._servers.get(server_id)
        if params is None:
            raise ValueError(f"Unknown server: {server_id}")
        if self.is_running(server_id):
            return self._tools[server_id]
        if server_id in self._clients:
            logger.warning(f"Server {server_id} is no longer running, restarting")
            self.stop(server_id)

        client = SyncClient(params, request_timeout=self.request_timeout)
        client.initialize()
        try:
            tools = client.list_tools()
        except MCPError:
            client.close()
            raise

        self._clients[server_id] = client
        self._tools[server_id] = tools
        logger.info(f"Started {server_id}: tools={[t.name for t in tools]}")
        return tools

    def start_all(self) -> dict[str, list[ToolDescriptor]]:
        """Start all registered servers. Returns {server_id: [tools]}; failures map to []."""
        results = {}
        for server_id in self._servers:
            try:
                results[server_id] = self.start(server_id)
            except MCPError as e:
                logger.error(f"Failed to start {server_id}: {e}")
                results[server_id] = []
        return results

    def client(self, server_id: str) -> SyncClient:
        client = self._clients.get(server_id)
        if client is None:
            raise NotReady(f"Server {server_id} is not running. Call start() first.")
        return client

    def call(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Call a tool on a specific server."""
        if server_id not in self._servers:
            raise ValueError(f"Unknown server: {server_id}")
        return self.client(server_id).call_tool(tool_name, arguments)

    def adapters(self, server_id: str | None = None) -> list[ToolCallback]:
        """Tool callbacks for one server, or for every running server in registration order."""
        if server_id is not None:
            return build_adapters(self._tools.get(server_id, []), self.client(server_id))

        callbacks: list[ToolCallback] = []
        for sid in self._servers:
            if self.is_running(sid):
                callbacks.extend(build_adapters(self._tools[sid], self._clients[sid]))
        return callbacks

    def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        """List discovered tools for a server."""
        return list(self._tools.get(server_id, []))

    def list_servers(self) -> dict[str, bool]:
        """List all servers and their running status."""
        return {sid: self.is_running(sid) for sid in self._servers}

    def is_running(self, server_id: str) -> bool:
        """Check if a specific server is running."""
        client = self._clients.get(server_id)
        return client is not None and client.is_alive

    def stop(self, server_id: str) -> None:
        """Stop a tool server."""
        client = self._clients.pop(server_id, None)
        self._tools.pop(server_id, None)
        if client is not None:
            client.close()
            logger.info(f"Stopped {server_id}")

    def stop_all(self) -> None:
        """Stop all running servers."""
        for server_id in list(self._clients.keys()):
            self.stop(server_id)

    def __enter__(self) -> "ToolServerManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop_all()
