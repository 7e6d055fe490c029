"""Tests for SyncClient state handling and error mapping, using an in-memory transport."""

import gc
import json
import threading

import pytest

from conftest import FakeTransport, default_responder, wait_until
from mcp_bridge.client import ClientState, SyncClient
from mcp_bridge.config import ServerParameters
from mcp_bridge.errors import (
    InitializeError,
    LaunchError,
    MalformedFrame,
    NotReady,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    RPCError,
    ToolExecutionError,
    ToolNotFound,
    TransportClosed,
)


def reply(message, result=None, error=None):
    response = {"jsonrpc": "2.0", "id": message["id"]}
    if error is not None:
        response["error"] = error
    else:
        response["result"] = result
    return [response]


def responder_with(overrides):
    """Default responder, with tools/call answers replaced per tool name."""
    def respond(message):
        if message.get("method") == "tools/call":
            handler = overrides.get(message["params"]["name"])
            if handler is not None:
                return handler(message)
        return default_responder(message)
    return respond


class TestStateMachine:
    """Tests for the client lifecycle."""

    @pytest.mark.parametrize("operation", [
        lambda c: c.list_tools(),
        lambda c: c.call_tool("search", {"query": "x"}),
        lambda c: c.ping(),
    ])
    def test_operations_before_initialize_raise_not_ready(self, fake_transport, operation):
        """Test list_tools/call_tool/ping require a completed handshake."""
        client = SyncClient(transport=fake_transport)
        with pytest.raises(NotReady):
            operation(client)
        assert fake_transport.sent == []

    def test_initialize_handshake(self, fake_transport):
        """Test initialize sends the handshake then the initialized notification."""
        client = SyncClient(transport=fake_transport, client_info={"name": "tests", "version": "9"})
        result = client.initialize()
        try:
            assert client.state is ClientState.READY
            assert result.server_info == {"name": "fake", "version": "1.0"}
            assert client.server_capabilities == {"tools": {}}

            handshake, initialized = fake_transport.sent
            assert handshake["method"] == "initialize"
            assert handshake["params"]["protocolVersion"] == "2024-11-05"
            assert handshake["params"]["clientInfo"] == {"name": "tests", "version": "9"}
            assert initialized == {"jsonrpc": "2.0", "method": "notifications/initialized"}
        finally:
            client.close()

    def test_initialize_twice_raises(self, fake_client):
        """Test the handshake is only legal once."""
        with pytest.raises(NotReady):
            fake_client.initialize()

    def test_initialize_server_error(self):
        """Test a server error during the handshake raises InitializeError and closes."""
        def respond(message):
            if message.get("method") == "initialize":
                return reply(message, error={"code": -32600, "message": "unsupported version"})
            return default_responder(message)

        transport = FakeTransport(respond)
        client = SyncClient(transport=transport)
        with pytest.raises(InitializeError, match="unsupported version"):
            client.initialize()

        assert client.state is ClientState.CLOSED
        assert transport.closed
        with pytest.raises(NotReady):
            client.list_tools()

    def test_initialize_timeout(self):
        """Test a silent server makes initialize fail after the request timeout."""
        transport = FakeTransport(lambda message: [])
        client = SyncClient(transport=transport, request_timeout=0.1)

        with pytest.raises(InitializeError) as exc_info:
            client.initialize()

        assert isinstance(exc_info.value.__cause__, RequestTimeout)
        assert client.state is ClientState.CLOSED

    def test_launch_failure(self):
        """Test a missing executable raises LaunchError, which is an InitializeError."""
        client = SyncClient(ServerParameters("/nonexistent/tool-server-binary"))
        with pytest.raises(LaunchError):
            client.initialize()
        assert client.state is ClientState.CLOSED

        with pytest.raises(InitializeError):
            SyncClient(ServerParameters("/nonexistent/tool-server-binary")).initialize()

    def test_requires_server_or_transport(self):
        """Test the constructor needs something to talk to."""
        with pytest.raises(ValueError):
            SyncClient()

    def test_context_manager_initializes_and_closes(self, fake_transport):
        """Test the with-block handshakes on entry and closes on exit."""
        with SyncClient(transport=fake_transport) as client:
            assert client.state is ClientState.READY
        assert client.state is ClientState.CLOSED
        assert fake_transport.closed

    def test_context_manager_closes_on_error(self, fake_transport):
        """Test the process is stopped when the block raises."""
        with pytest.raises(RuntimeError):
            with SyncClient(transport=fake_transport):
                raise RuntimeError("orchestrator failed")
        assert fake_transport.closed


class TestClose:
    """Tests for close()."""

    def test_close_is_idempotent(self, fake_transport):
        """Test close twice behaves like close once."""
        client = SyncClient(transport=fake_transport)
        client.initialize()

        client.close()
        client.close()

        assert client.state is ClientState.CLOSED
        assert fake_transport.terminate_calls == 1

    def test_close_before_initialize(self, fake_transport):
        """Test close is legal from UNINITIALIZED."""
        client = SyncClient(transport=fake_transport)
        client.close()
        assert client.state is ClientState.CLOSED
        with pytest.raises(NotReady):
            client.initialize()

    def test_operations_after_close_raise_not_ready(self, fake_client):
        """Test calls after close fail immediately instead of hanging."""
        fake_client.close()
        with pytest.raises(NotReady):
            fake_client.call_tool("search", {"query": "x"})
        with pytest.raises(NotReady):
            fake_client.list_tools()

    def test_close_cancels_pending_requests(self):
        """Test close() wakes blocked callers with RequestCancelled."""
        transport = FakeTransport(responder_with({"hang": lambda m: []}))
        client = SyncClient(transport=transport, request_timeout=30)
        client.initialize()

        errors = []

        def call():
            try:
                client.call_tool("hang")
            except Exception as e:
                errors.append(e)

        caller = threading.Thread(target=call)
        caller.start()
        assert wait_until(lambda: client.pending_requests == 1)

        client.close()
        caller.join(timeout=2)

        assert not caller.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], RequestCancelled)
        assert client.pending_requests == 0


class TestListTools:
    """Tests for tool discovery."""

    def test_list_tools_preserves_order(self, fake_client):
        """Test descriptors come back in server order with schemas intact."""
        tools = fake_client.list_tools()
        assert [t.name for t in tools] == ["search", "summarize"]
        assert tools[0].input_schema["required"] == ["query"]
        assert tools[1].description == "Summarize a document."

    def test_list_tools_follows_pagination(self):
        """Test every page is fetched when no cursor is given."""
        pages = {
            None: {"tools": [{"name": "a"}], "nextCursor": "p2"},
            "p2": {"tools": [{"name": "b"}], "nextCursor": "p3"},
            "p3": {"tools": [{"name": "c"}]},
        }

        def respond(message):
            if message.get("method") == "tools/list":
                return reply(message, pages[message["params"].get("cursor")])
            return default_responder(message)

        transport = FakeTransport(respond)
        with SyncClient(transport=transport) as client:
            assert [t.name for t in client.list_tools()] == ["a", "b", "c"]
            assert [t.name for t in client.list_tools(cursor="p2")] == ["b"]

    def test_list_tools_repeated_cursor(self):
        """Test a server that loops its cursor is rejected."""
        def respond(message):
            if message.get("method") == "tools/list":
                return reply(message, {"tools": [], "nextCursor": "same"})
            return default_responder(message)

        with SyncClient(transport=FakeTransport(respond)) as client:
            with pytest.raises(ProtocolError, match="repeated cursor"):
                client.list_tools()

    def test_list_tools_server_error(self):
        """Test an error response raises RPCError, a ProtocolError."""
        def respond(message):
            if message.get("method") == "tools/list":
                return reply(message, error={"code": -32603, "message": "boom"})
            return default_responder(message)

        with SyncClient(transport=FakeTransport(respond)) as client:
            with pytest.raises(RPCError) as exc_info:
                client.list_tools()
            assert isinstance(exc_info.value, ProtocolError)
            assert exc_info.value.code == -32603
            assert client.state is ClientState.READY

    def test_list_tools_invalid_result(self):
        """Test a result without a tools list raises ProtocolError."""
        def respond(message):
            if message.get("method") == "tools/list":
                return reply(message, {"items": []})
            return default_responder(message)

        with SyncClient(transport=FakeTransport(respond)) as client:
            with pytest.raises(ProtocolError):
                client.list_tools()


class TestCallTool:
    """Tests for tool invocation and its errors."""

    def test_call_tool_sends_name_and_arguments(self, fake_client, fake_transport):
        """Test the tools/call request carries the tool name and arguments."""
        result = fake_client.call_tool("search", {"query": "invoice"})

        request = fake_transport.sent[-1]
        assert request["method"] == "tools/call"
        assert request["params"] == {"name": "search", "arguments": {"query": "invoice"}}
        assert json.loads(result.text) == {"name": "search", "arguments": {"query": "invoice"}}

    def test_tool_missing_from_last_listing(self, fake_client, fake_transport):
        """Test a tool absent from list_tools raises ToolNotFound without a request."""
        fake_client.list_tools()
        sent_before = len(fake_transport.sent)

        with pytest.raises(ToolNotFound) as exc_info:
            fake_client.call_tool("translate", {})

        assert exc_info.value.available == ["search", "summarize"]
        assert len(fake_transport.sent) == sent_before

    def test_server_reports_unknown_tool(self):
        """Test the server's unknown-tool error maps to ToolNotFound."""
        unknown = {"translate": lambda m: reply(
            m, error={"code": -32602, "message": "Unknown tool: 'translate'"})}
        with SyncClient(transport=FakeTransport(responder_with(unknown))) as client:
            with pytest.raises(ToolNotFound):
                client.call_tool("translate")

    def test_server_reports_tool_not_found_by_name(self):
        """Test a not-found message naming the tool maps to ToolNotFound."""
        missing = {"translate": lambda m: reply(
            m, error={"code": -32602, "message": "Tool translate not found"})}
        with SyncClient(transport=FakeTransport(responder_with(missing))) as client:
            with pytest.raises(ToolNotFound):
                client.call_tool("translate")

    def test_invalid_params_not_found_is_tool_error(self):
        """Test a known tool rejecting its arguments with 'not found' is a ToolExecutionError."""
        rejecting = {"summarize": lambda m: reply(
            m, error={"code": -32602, "message": "File not found: /tmp/report.pdf"})}
        with SyncClient(transport=FakeTransport(responder_with(rejecting))) as client:
            client.list_tools()
            with pytest.raises(ToolExecutionError) as exc_info:
                client.call_tool("summarize", {"uri": "/tmp/report.pdf"})

            assert exc_info.value.code == -32602
            assert "File not found" in exc_info.value.message
            assert client.state is ClientState.READY

    def test_tool_error_result(self):
        """Test isError results raise ToolExecutionError; the client stays usable."""
        failing = {"fail": lambda m: reply(
            m, {"content": [{"type": "text", "text": "disk full"}], "isError": True})}
        with SyncClient(transport=FakeTransport(responder_with(failing))) as client:
            with pytest.raises(ToolExecutionError) as exc_info:
                client.call_tool("fail")

            assert exc_info.value.message == "disk full"
            assert exc_info.value.content == [{"type": "text", "text": "disk full"}]
            assert client.state is ClientState.READY
            assert client.call_tool("search", {"query": "x"}).text

    def test_tool_rpc_error(self):
        """Test other server errors for a call raise ToolExecutionError with the code."""
        failing = {"fail": lambda m: reply(m, error={"code": -32603, "message": "crashed"})}
        with SyncClient(transport=FakeTransport(responder_with(failing))) as client:
            with pytest.raises(ToolExecutionError) as exc_info:
                client.call_tool("fail")
            assert exc_info.value.code == -32603
            assert exc_info.value.message == "crashed"

    def test_call_timeout_leaves_client_ready(self):
        """Test a timed-out call raises RequestTimeout and leaks no pending request."""
        transport = FakeTransport(responder_with({"hang": lambda m: []}))
        with SyncClient(transport=transport, request_timeout=5) as client:
            with pytest.raises(RequestTimeout):
                client.call_tool("hang", timeout=0.1)

            assert client.pending_requests == 0
            assert client.state is ClientState.READY
            assert client.ping()

    def test_late_response_is_discarded(self, fake_client, fake_transport):
        """Test a response with an unknown id does not disturb other calls."""
        fake_transport.push({"jsonrpc": "2.0", "id": 9999, "result": {"stray": True}})
        result = fake_client.call_tool("summarize", {"uri": "doc://1"})
        assert json.loads(result.text)["name"] == "summarize"

    def test_string_ids_are_normalized(self):
        """Test a server echoing ids as strings is still correlated."""
        def respond(message):
            replies = default_responder(message)
            for r in replies:
                r["id"] = str(r["id"])
            return replies

        with SyncClient(transport=FakeTransport(respond)) as client:
            assert [t.name for t in client.list_tools()] == ["search", "summarize"]

    def test_out_of_order_responses_reach_their_callers(self):
        """Test concurrent calls answered in reverse order each get their own result."""
        held = []
        lock = threading.Lock()
        transport = None

        def respond(message):
            if message.get("method") != "tools/call":
                return default_responder(message)
            with lock:
                held.append(message)
                if len(held) < 3:
                    return []
                batch = list(reversed(held))
            for m in batch:
                transport.push(default_responder(m)[0])
            return []

        transport = FakeTransport(respond)
        results = {}

        with SyncClient(transport=transport) as client:
            def call(name):
                results[name] = json.loads(client.call_tool(name, {"who": name}).text)

            threads = [threading.Thread(target=call, args=(n,)) for n in ("a", "b", "c")]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=3)

        assert set(results) == {"a", "b", "c"}
        for name, payload in results.items():
            assert payload == {"name": name, "arguments": {"who": name}}


class TestTransportFailures:
    """Tests for fatal transport and framing errors."""

    def test_server_exit_fails_pending_and_future_calls(self):
        """Test the process exiting raises TransportClosed now and later."""
        transport = None

        def respond(message):
            if message.get("method") == "tools/call":
                transport.end_stream()
                return []
            return default_responder(message)

        transport = FakeTransport(respond)
        with SyncClient(transport=transport, request_timeout=5) as client:
            with pytest.raises(TransportClosed):
                client.call_tool("search", {"query": "x"})
            with pytest.raises(TransportClosed):
                client.list_tools()
        assert client.state is ClientState.CLOSED

    def test_malformed_frame_is_fatal(self, fake_client, fake_transport):
        """Test a non-JSON frame breaks the client with MalformedFrame."""
        fake_transport.push(b"this is not json")
        assert wait_until(lambda: fake_client._failure is not None)

        with pytest.raises(MalformedFrame):
            fake_client.call_tool("search", {"query": "x"})

    def test_is_alive_tracks_connection(self, fake_transport):
        """Test is_alive is false before initialize, after a failure and after close."""
        client = SyncClient(transport=fake_transport)
        assert not client.is_alive

        client.initialize()
        assert client.is_alive

        fake_transport.end_stream()
        assert wait_until(lambda: not client.is_alive)
        assert client.state is ClientState.READY

        client.close()
        assert not client.is_alive

    def test_dropped_client_terminates_transport(self):
        """Test a client dropped without close() still terminates its transport."""
        transport = FakeTransport()
        client = SyncClient(transport=transport)
        client.initialize()
        reader = client._reader

        del client
        gc.collect()

        assert wait_until(lambda: transport.terminate_calls == 1)
        reader.join(timeout=2)
        assert not reader.is_alive()


class TestServerMessages:
    """Tests for messages the server sends on its own."""

    def test_ping_from_server_is_answered(self, fake_client, fake_transport):
        """Test a server ping request gets an empty result."""
        fake_transport.push({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
        assert wait_until(lambda: any(m.get("id") == "srv-1" for m in fake_transport.sent))

        answer = next(m for m in fake_transport.sent if m.get("id") == "srv-1")
        assert answer["result"] == {}

    def test_unsupported_server_request_rejected(self, fake_client, fake_transport):
        """Test other server requests are answered with method-not-found."""
        fake_transport.push({"jsonrpc": "2.0", "id": "srv-2", "method": "sampling/createMessage"})
        assert wait_until(lambda: any(m.get("id") == "srv-2" for m in fake_transport.sent))

        answer = next(m for m in fake_transport.sent if m.get("id") == "srv-2")
        assert answer["error"]["code"] == -32601

    def test_notifications_are_ignored(self, fake_client, fake_transport):
        """Test server notifications do not disturb the client."""
        fake_transport.push({"jsonrpc": "2.0", "method": "notifications/message",
                             "params": {"level": "info", "data": "hello"}})
        assert [t.name for t in fake_client.list_tools()] == ["search", "summarize"]
