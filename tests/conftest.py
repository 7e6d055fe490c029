"""Shared fixtures: a subprocess stub server and an in-memory transport."""

import json
import queue
import sys
import time
from pathlib import Path

import pytest

from mcp_bridge.client import SyncClient
from mcp_bridge.config import ServerParameters
from mcp_bridge.errors import TransportClosed
from mcp_bridge.transport import Transport

ROOT = Path(__file__).resolve().parent.parent
STUB_SERVER = Path(__file__).resolve().parent / "stub_server.py"

TWO_TOOLS = [
    {
        "name": "search",
        "description": "Search documents by keyword.",
        "inputSchema": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    },
    {
        "name": "summarize",
        "description": "Summarize a document.",
        "inputSchema": {"type": "object", "properties": {"uri": {"type": "string"}}},
    },
]


def default_responder(message: dict) -> list[dict]:
    """Answer like a well-behaved server with the two standard tools."""
    if "id" not in message or "method" not in message:
        return []
    method = message["method"]
    if method == "initialize":
        result = {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake", "version": "1.0"},
        }
    elif method == "tools/list":
        result = {"tools": TWO_TOOLS}
    elif method == "tools/call":
        params = message["params"]
        text = json.dumps({"name": params["name"], "arguments": params["arguments"]})
        result = {"content": [{"type": "text", "text": text}], "isError": False}
    elif method == "ping":
        result = {}
    else:
        return [{"jsonrpc": "2.0", "id": message["id"],
                 "error": {"code": -32601, "message": f"Unknown method: {method}"}}]
    return [{"jsonrpc": "2.0", "id": message["id"], "result": result}]


class FakeTransport(Transport):
    """
    In-memory transport. Every frame the client sends is recorded and passed
    to `responder`, whose replies are queued for the client's reader.
    """

    def __init__(self, responder=default_responder):
        self.responder = responder
        self.sent: list[dict] = []
        self.launched = False
        self.closed = False
        self.terminate_calls = 0
        self._inbox: queue.Queue = queue.Queue()

    def launch(self) -> None:
        self.launched = True

    def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportClosed("fake transport closed")
        message = json.loads(data)
        self.sent.append(message)
        for reply in self.responder(message) or []:
            self.push(reply)

    def push(self, message) -> None:
        """Queue a dict (encoded as JSON) or raw bytes for the reader."""
        if isinstance(message, dict):
            message = json.dumps(message).encode()
        self._inbox.put(message)

    def end_stream(self) -> None:
        """Simulate the server process exiting."""
        self._inbox.put(None)

    def receive(self) -> bytes:
        item = self._inbox.get()
        if item is None:
            self._inbox.put(None)
            raise TransportClosed("fake server exited")
        return item

    def terminate(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.terminate_calls += 1
        self.end_stream()

    def is_alive(self) -> bool:
        return self.launched and not self.closed

    def sent_methods(self) -> list[str]:
        return [m.get("method") for m in self.sent]


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def stub_params(timeout: float = 5.0, **env: str) -> ServerParameters:
    return ServerParameters(
        command=sys.executable,
        args=[str(STUB_SERVER)],
        env={"PYTHONPATH": str(ROOT), **env},
        request_timeout=timeout,
    )


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_client(fake_transport):
    client = SyncClient(transport=fake_transport, request_timeout=2.0)
    client.initialize()
    yield client
    client.close()


@pytest.fixture
def make_params():
    return stub_params


@pytest.fixture
def stub_client():
    client = SyncClient(stub_params(STUB_WORKERS="4"))
    client.initialize()
    yield client
    client.close()
