"""
MCP Tool Server base class.

A tool server is a standalone process that:
1. Reads JSON-RPC requests from stdin
2. Dispatches to registered ToolHandlers
3. Writes JSON-RPC responses to stdout

To create a tool server:

    from mcp_bridge.server import StdioToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }
        required = ["input"]

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = StdioToolServer("my-server")
        server.register(MyTool())
        server.run()

stdout carries protocol frames only; anything diagnostic goes to stderr.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TextIO

from mcp_bridge.config import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RequestError(Exception):
    """A request the server rejects with a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Args:
            params: Dict of parameter name → value

        Returns:
            The tool result. Strings are sent as text, anything else is
            JSON-serialized. Raising marks the call as failed (isError).
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool schema for discovery."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Supports methods:
        - "initialize"  → protocol version, capabilities, server info
        - "tools/list"  → registered tool schemas (paged by page_size)
        - "tools/call"  → calls a tool by name with arguments
        - "ping"        → health check
    - Notifications (no id) are accepted and never answered.

    With max_workers > 1, tools/call requests run on a thread pool and
    responses may go out in a different order than requests came in.
    """

    def __init__(
        self,
        name: str = "stdio-tool-server",
        version: str = "0.1.0",
        max_workers: int = 1,
        page_size: int | None = None,
    ):
        self.name = name
        self.version = version
        self.max_workers = max_workers
        self.page_size = page_size
        self._handlers: dict[str, ToolHandler] = {}
        self._write_lock = threading.Lock()
        self._out: TextIO = sys.stdout

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        if handler.name in self._handlers:
            raise ValueError(f"Tool '{handler.name}' is already registered")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """
        Main loop: read requests from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        stdin = stdin or sys.stdin
        self._out = stdout or sys.stdout
        logger.info(f"Tool server starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        pool = ThreadPoolExecutor(max_workers=self.max_workers) if self.max_workers > 1 else None
        try:
            for line in stdin:
                line = line.strip()
                if not line:
                    continue

                try:
                    request = json.loads(line)
                except json.JSONDecodeError as e:
                    self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
                    continue
                if not isinstance(request, dict):
                    self._write_error(None, INVALID_REQUEST, "Request must be an object")
                    continue

                if pool is not None and request.get("method") == "tools/call":
                    pool.submit(self._handle_request, request)
                else:
                    self._handle_request(request)
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

    def _handle_request(self, request: dict) -> None:
        request_id = request.get("id")
        method = request.get("method", "")
        params = request.get("params") or {}

        if "id" not in request:
            logger.debug(f"Notification: {method}")
            return

        try:
            result = self._dispatch(method, params)
        except RequestError as e:
            self._write_error(request_id, e.code, e.message)
        except Exception as e:
            logger.exception(f"Request {method} failed")
            self._write_error(request_id, INTERNAL_ERROR, str(e))
        else:
            self._write_result(request_id, result)

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return self._list_tools(params.get("cursor"))

        if method == "tools/call":
            return self._call_tool(params.get("name", ""), params.get("arguments") or {})

        raise RequestError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    def _list_tools(self, cursor: str | None) -> dict:
        schemas = [h.get_schema() for h in self._handlers.values()]
        if not self.page_size:
            return {"tools": schemas}

        try:
            start = int(cursor) if cursor else 0
        except ValueError:
            raise RequestError(INVALID_PARAMS, f"Invalid cursor: {cursor!r}")
        end = start + self.page_size
        result: dict[str, Any] = {"tools": schemas[start:end]}
        if end < len(schemas):
            result["nextCursor"] = str(end)
        return result

    def _call_tool(self, tool_name: str, arguments: dict) -> dict:
        handler = self._handlers.get(tool_name)
        if not handler:
            raise RequestError(
                INVALID_PARAMS,
                f"Unknown tool: '{tool_name}'. Available: {list(self._handlers.keys())}",
            )

        try:
            output = handler.handle(arguments)
        except Exception as e:
            logger.warning(f"Tool {tool_name} failed: {e}")
            return {"content": [{"type": "text", "text": str(e)}], "isError": True}

        text = output if isinstance(output, str) else json.dumps(output)
        return {"content": [{"type": "text", "text": text}], "isError": False}

    def _write(self, message: dict) -> None:
        with self._write_lock:
            self._out.write(json.dumps(message) + "\n")
            self._out.flush()

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": result,
        })

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })
