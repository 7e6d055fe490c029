"""
Synchronous MCP client over a stdio tool server.

Usage:
    params = ServerParameters("node", ["rest-server.js"], env={"API_HOST": host})

    with SyncClient(params) as client:        # launches + initializes
        tools = client.list_tools()
        result = client.call_tool("search", {"query": "invoice"})
        print(result.text)

Lifecycle:

    UNINITIALIZED ──initialize()──▶ INITIALIZING ──▶ READY
          │                              │             │
          └──────────── close() ─────────┴─────────────┴──▶ CLOSING ──▶ CLOSED

One daemon thread reads the server's stdout and resolves pending requests
through the Correlator. Any number of threads may call list_tools() and
call_tool() concurrently; responses are matched by id, not by order.
"""

from __future__ import annotations

import logging
import threading
import weakref
from enum import Enum
from typing import Any

from mcp_bridge.config import PROTOCOL_VERSION, ServerParameters
from mcp_bridge.correlator import Correlator
from mcp_bridge.errors import (
    InitializeError,
    LaunchError,
    MCPError,
    NotReady,
    ProtocolError,
    RequestCancelled,
    RPCError,
    ToolExecutionError,
    ToolNotFound,
    TransportError,
)
from mcp_bridge.models import CallToolResult, InitializeResult, ToolDescriptor
from mcp_bridge.transport import (
    JsonRpcRequest,
    JsonRpcResponse,
    StdioTransport,
    Transport,
    decode_message,
)

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_INFO = {"name": "mcp-bridge", "version": "0.1.0"}

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

# Seconds to wait for the reader thread after the transport is gone
READER_JOIN_TIMEOUT = 2.0


class ClientState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


def _is_unknown_tool(error: RPCError, name: str) -> bool:
    """Invalid-params errors only mean a missing tool when they say so about this tool."""
    if error.code != INVALID_PARAMS:
        return False
    message = error.message.lower()
    if "unknown tool" in message:
        return True
    return "tool" in message and name.lower() in message and "not found" in message


def _normalize_id(value: Any) -> Any:
    """Servers occasionally echo integer ids back as strings or floats."""
    if isinstance(value, str) and value.isdigit():
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _read_loop(client_ref: "weakref.ref[SyncClient]", transport: Transport) -> None:
    """
    Sole reader of the transport. Runs until the stream fails or closes.

    Holds the client only weakly between frames, so a dropped client can be
    collected (and its server reaped) while this thread blocks on a read.
    """
    while True:
        try:
            message = decode_message(transport.receive())
        except (TransportError, ProtocolError) as e:
            client = client_ref()
            if client is not None:
                client._on_transport_failure(e)
            return

        client = client_ref()
        if client is None:
            return
        client._dispatch(message)
        del client


class SyncClient:
    """
    Blocking client for one tool server process.

    The client owns the process: close() (or leaving a `with` block)
    terminates it. Instances are independent; several may run side by side
    against different servers.
    """

    def __init__(
        self,
        server: ServerParameters | None = None,
        request_timeout: float | None = None,
        client_info: dict[str, str] | None = None,
        transport: Transport | None = None,
    ):
        """
        Args:
            server: How to launch the tool server.
            request_timeout: Default seconds to wait for each response.
                             Falls back to server.request_timeout.
            client_info: {name, version} reported during the handshake.
            transport: Pre-built transport; overrides `server`'s command.
        """
        if server is None and transport is None:
            raise ValueError("Either server parameters or a transport is required")

        self.server = server or ServerParameters(command="<custom transport>")
        self.request_timeout = (
            request_timeout if request_timeout is not None else self.server.request_timeout
        )
        self.client_info = dict(client_info or DEFAULT_CLIENT_INFO)

        self._transport = transport or StdioTransport(
            self.server.argv, env=self.server.env, cwd=self.server.cwd
        )
        self._correlator = Correlator()
        self._state = ClientState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._reader: threading.Thread | None = None
        self._failure: MCPError | None = None
        self._init_result: InitializeResult | None = None
        self._tool_names: list[str] | None = None
        # Reaps the server if the client is dropped without close()
        self._finalizer = weakref.finalize(self, self._transport.terminate)

    # ── State ────────────────────────────────────────────────

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def init_result(self) -> InitializeResult | None:
        return self._init_result

    @property
    def server_info(self) -> dict[str, Any]:
        return self._init_result.server_info if self._init_result else {}

    @property
    def server_capabilities(self) -> dict[str, Any]:
        return self._init_result.capabilities if self._init_result else {}

    @property
    def instructions(self) -> str | None:
        return self._init_result.instructions if self._init_result else None

    @property
    def pending_requests(self) -> int:
        return len(self._correlator)

    @property
    def is_alive(self) -> bool:
        """READY, with no connection failure and the server still running."""
        return (
            self._state is ClientState.READY
            and self._failure is None
            and self._transport.is_alive()
        )

    def _require_ready(self, operation: str) -> None:
        state = self._state
        if state is not ClientState.READY:
            raise NotReady(
                f"{operation}() requires an initialized client (state: {state.name})"
            )
        failure = self._failure
        if failure is not None:
            raise type(failure)(str(failure))

    # ── Lifecycle ────────────────────────────────────────────

    def initialize(self) -> InitializeResult:
        """
        Launch the server and perform the handshake.

        Raises:
            NotReady: initialize() was already called.
            LaunchError: The server process could not be started.
            InitializeError: The handshake failed or timed out. The client
                             is closed and cannot be reused.
        """
        with self._state_lock:
            if self._state is not ClientState.UNINITIALIZED:
                raise NotReady(
                    f"initialize() is only legal once (state: {self._state.name})"
                )
            self._state = ClientState.INITIALIZING

        try:
            self._transport.launch()
            self._start_reader()
            result = InitializeResult.from_result(
                self._call(
                    "initialize",
                    {
                        "protocolVersion": PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": self.client_info,
                    },
                    self.request_timeout,
                )
            )
            self._notify("notifications/initialized")
        except LaunchError:
            self.close()
            raise
        except MCPError as e:
            self.close()
            raise InitializeError(f"Handshake with tool server failed: {e}") from e

        with self._state_lock:
            if self._state is not ClientState.INITIALIZING:
                raise InitializeError("Client was closed during initialize()")
            self._init_result = result
            self._state = ClientState.READY

        logger.info(
            f"Initialized {result.server_info.get('name', 'tool server')} "
            f"(protocol {result.protocol_version})"
        )
        return result

    def close(self) -> None:
        """
        Cancel pending requests and stop the server process.

        Safe to call from any state and more than once. When it returns the
        server process is no longer running.
        """
        with self._state_lock:
            if self._state in (ClientState.CLOSING, ClientState.CLOSED):
                return
            self._state = ClientState.CLOSING

        cancelled = self._correlator.fail_all(RequestCancelled("Client was closed"))
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending request(s)")

        try:
            self._finalizer.detach()
            self._transport.terminate()
        finally:
            reader = self._reader
            if reader is not None and reader is not threading.current_thread():
                reader.join(timeout=READER_JOIN_TIMEOUT)
            with self._state_lock:
                self._state = ClientState.CLOSED
        logger.info("Client closed")

    def __enter__(self) -> "SyncClient":
        if self._state is ClientState.UNINITIALIZED:
            self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── Reader thread ────────────────────────────────────────

    def _start_reader(self) -> None:
        self._reader = threading.Thread(
            target=_read_loop,
            args=(weakref.ref(self), self._transport),
            name="mcp-reader",
            daemon=True,
        )
        self._reader.start()

    def _on_transport_failure(self, error: MCPError) -> None:
        if self._state in (ClientState.CLOSING, ClientState.CLOSED):
            logger.debug(f"Reader stopped: {error}")
            return
        logger.error(f"Tool server connection failed: {error}")
        # Set before fail_all() so late registrations see it
        self._failure = error
        self._correlator.fail_all(error)

    def _dispatch(self, message: dict) -> None:
        if "method" in message:
            if "id" in message:
                self._answer_server_request(message)
            else:
                logger.debug(f"Notification from server: {message['method']}")
            return

        if "id" not in message or ("result" not in message and "error" not in message):
            logger.warning(f"Ignoring message that is not a response: {str(message)[:200]}")
            return

        response = JsonRpcResponse.from_message(message)
        if response.id is None:
            logger.warning(f"Server reported an error without an id: {response.error}")
            return
        self._correlator.resolve(
            JsonRpcResponse(_normalize_id(response.id), response.result, response.error)
        )

    def _answer_server_request(self, message: dict) -> None:
        method = message.get("method")
        if method == "ping":
            response = JsonRpcResponse(id=message["id"], result={})
        else:
            logger.warning(f"Rejecting unsupported server request: {method}")
            response = JsonRpcResponse(
                id=message["id"],
                error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            )
        try:
            self._transport.send(response.encode())
        except TransportError as e:
            logger.debug(f"Could not answer server request {method}: {e}")

    # ── Requests ─────────────────────────────────────────────

    def _notify(self, method: str, params: dict | None = None) -> None:
        self._transport.send(JsonRpcRequest(method, params).encode())

    def _request(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float | None = None,
    ) -> JsonRpcResponse:
        """Send one request and block until its response, timeout or failure."""
        timeout = self.request_timeout if timeout is None else timeout
        request_id = self._correlator.next_id()
        pending = self._correlator.register(request_id, method, timeout)

        # close() or a reader failure may have swept the table already
        if self._state in (ClientState.CLOSING, ClientState.CLOSED):
            self._correlator.discard(request_id)
            raise RequestCancelled("Client was closed")
        failure = self._failure
        if failure is not None:
            self._correlator.discard(request_id)
            raise type(failure)(str(failure))

        try:
            self._transport.send(JsonRpcRequest(method, params, request_id).encode())
        except TransportError:
            self._correlator.discard(request_id)
            raise
        logger.debug(f"Sent {method} id={request_id}")

        return self._correlator.wait(pending)

    def _call(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """Send a request and return its result, raising RPCError on error."""
        response = self._request(method, params, timeout)
        if response.is_error:
            raise RPCError.from_error(response.error)
        return response.result

    # ── Operations ───────────────────────────────────────────

    def ping(self, timeout: float | None = None) -> bool:
        """Round-trip a ping to check the server is responsive."""
        self._require_ready("ping")
        self._call("ping", {}, timeout)
        return True

    def list_tools(
        self,
        cursor: str | None = None,
        timeout: float | None = None,
    ) -> list[ToolDescriptor]:
        """
        Discover the server's tools.

        Args:
            cursor: Fetch only the page starting at this cursor. By default
                    every page is fetched.
            timeout: Seconds to wait for each page.

        Returns:
            Tool descriptors in the order the server listed them.

        Raises:
            NotReady, RequestTimeout, RPCError, ProtocolError
        """
        self._require_ready("list_tools")

        tools: list[ToolDescriptor] = []
        page_cursor = cursor
        seen_cursors: set[str] = set()
        while True:
            params = {"cursor": page_cursor} if page_cursor else {}
            result = self._call("tools/list", params, timeout)
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise ProtocolError(f"tools/list returned an invalid result: {str(result)[:200]}")

            tools.extend(ToolDescriptor.from_dict(t) for t in result["tools"])
            page_cursor = result.get("nextCursor")
            if cursor is not None or not page_cursor:
                break
            if page_cursor in seen_cursors:
                raise ProtocolError(f"tools/list repeated cursor {page_cursor!r}")
            seen_cursors.add(page_cursor)

        if cursor is None:
            self._tool_names = [t.name for t in tools]
        logger.info(f"Discovered {len(tools)} tool(s): {[t.name for t in tools]}")
        return tools

    def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> CallToolResult:
        """
        Invoke a tool and return its result.

        Raises:
            NotReady: The client is not initialized or already closed.
            ToolNotFound: The tool is not offered by the server.
            ToolExecutionError: The tool ran and reported a failure.
            RequestTimeout: No response within the deadline.
            TransportClosed: The server process is gone.
        """
        self._require_ready("call_tool")

        known = self._tool_names
        if known is not None and name not in known:
            raise ToolNotFound(name, available=list(known))

        response = self._request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout,
        )
        if response.is_error:
            error = RPCError.from_error(response.error)
            if _is_unknown_tool(error, name):
                raise ToolNotFound(name) from error
            raise ToolExecutionError(name, error.message, code=error.code) from error

        result = CallToolResult.from_result(response.result)
        if result.is_error:
            raise ToolExecutionError(
                name,
                result.text or "Tool reported an error",
                content=result.content,
            )
        return result
