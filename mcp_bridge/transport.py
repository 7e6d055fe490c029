"""
Transport layer for MCP tool communication.

Implements:
  - JsonRpcRequest / JsonRpcResponse: the message envelopes
  - StdioTransport: newline-delimited frames over a child's stdin/stdout

The transport knows nothing about methods or ids. It launches the process,
writes one frame at a time and hands complete frames back to its single
reader. Protocol semantics live in mcp_bridge.client.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mcp_bridge.config import MAX_FRAME_SIZE, PROCESS_TERMINATE_TIMEOUT
from mcp_bridge.errors import LaunchError, MalformedFrame, TransportClosed

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger(__name__ + ".stderr")

JSONRPC_VERSION = "2.0"

# Lines of server stderr kept for error messages
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class JsonRpcRequest:
    """JSON-RPC 2.0 request. A request without an id is a notification."""
    method: str
    params: dict[str, Any] | None = None
    id: int | str | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_json(self) -> str:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        if self.id is not None:
            message["id"] = self.id
        return json.dumps(message, separators=(",", ":"))

    def encode(self) -> bytes:
        return self.to_json().encode("utf-8")


@dataclass(frozen=True)
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_message(cls, message: dict) -> "JsonRpcResponse":
        error = message.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"code": 0, "message": str(error)}
        return cls(
            id=message.get("id"),
            result=message.get("result"),
            error=error,
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> "JsonRpcResponse":
        return cls.from_message(decode_message(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error
        else:
            message["result"] = self.result
        return json.dumps(message, separators=(",", ":"))

    def encode(self) -> bytes:
        return self.to_json().encode("utf-8")


def decode_message(frame: str | bytes) -> dict:
    """Parse one frame into a JSON object or raise MalformedFrame."""
    try:
        message = json.loads(frame)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedFrame(f"Frame is not valid JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedFrame(
            f"Frame is not a JSON object: {type(message).__name__}"
        )
    return message


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


class Transport(ABC):
    """Abstract byte transport for MCP communication."""

    @abstractmethod
    def launch(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Write one frame."""
        ...

    @abstractmethod
    def receive(self) -> bytes:
        """Block until one complete frame is available and return it."""
        ...

    @abstractmethod
    def terminate(self) -> None:
        """Stop the transport. Calling it twice is a no-op."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...


class StdioTransport(Transport):
    """
    Newline-delimited frames over a subprocess's stdin/stdout.

    This is MCP's native local transport. The tool server runs as a child
    process. Frames are written to its stdin and read from its stdout,
    one line per message. stderr is drained in the background and logged.

    Writes are serialized with a lock. receive() must only be called from
    one thread at a time.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["node", "rest-server.js"]
            env: Environment overrides merged onto the inherited environment.
            cwd: Working directory for the process.
        """
        self.command = list(command)
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: subprocess.Popen | None = None
        self._write_lock = threading.Lock()
        self._terminate_lock = threading.Lock()
        self._stderr_thread: threading.Thread | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._returncode: int | None = None
        self._launched = False

    @property
    def state(self) -> ProcessState:
        if not self._launched:
            return ProcessState.STARTING
        return ProcessState.RUNNING if self.is_alive() else ProcessState.EXITED

    @property
    def returncode(self) -> int | None:
        if self._process is not None:
            return self._process.poll()
        return self._returncode

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    def launch(self) -> None:
        """Launch the tool server subprocess."""
        if self._launched:
            raise LaunchError("Transport was already launched")

        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.cwd,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise LaunchError(f"Cannot start {self.command[0]!r}: {e}") from e
        self._launched = True

        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"mcp-stderr-{self._process.pid}",
            daemon=True,
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        stream = self._process.stderr if self._process else None
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    stderr_logger.debug(line)
        except (OSError, ValueError):
            # Stream closed by terminate()
            pass

    def _closed_error(self, reason: str) -> TransportClosed:
        code = self.returncode
        message = reason if code is None else f"{reason} (exit code {code})"
        if self._stderr_tail:
            message += ". stderr: " + " | ".join(self._stderr_tail)[:500]
        return TransportClosed(message)

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.poll() is None

    def send(self, data: bytes) -> None:
        """Write one frame to the server's stdin."""
        if b"\n" in data:
            raise ValueError("Frame must not contain a newline")

        with self._write_lock:
            process = self._process
            if process is None or process.stdin is None or process.poll() is not None:
                raise self._closed_error("Tool server is not running")
            try:
                process.stdin.write(data + b"\n")
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise self._closed_error(f"Write to tool server failed: {e}") from e

    def receive(self) -> bytes:
        """Read one frame from the server's stdout, skipping blank lines."""
        while True:
            process = self._process
            if process is None or process.stdout is None:
                raise self._closed_error("Tool server is not running")
            try:
                line = process.stdout.readline(MAX_FRAME_SIZE + 1)
            except (OSError, ValueError) as e:
                raise self._closed_error(f"Read from tool server failed: {e}") from e

            if not line:
                raise self._closed_error("Tool server closed its output")
            if not line.endswith(b"\n"):
                if len(line) > MAX_FRAME_SIZE:
                    raise MalformedFrame(
                        f"Frame exceeds maximum size of {MAX_FRAME_SIZE} bytes"
                    )
                raise MalformedFrame("Stream ended in the middle of a frame")

            line = line.strip()
            if line:
                return line

    def terminate(self, grace: float = PROCESS_TERMINATE_TIMEOUT) -> None:
        """Terminate the tool server subprocess, killing it after `grace` seconds."""
        with self._terminate_lock:
            process = self._process
            if process is None:
                return

            # A writer blocked on a full pipe must not stall shutdown
            if self._write_lock.acquire(timeout=grace):
                try:
                    if process.stdin:
                        process.stdin.close()
                except OSError:
                    pass
                finally:
                    self._write_lock.release()

            if process.poll() is None:
                self._signal(process)
                try:
                    process.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        f"Tool server pid={process.pid} ignored SIGTERM for {grace}s, killing"
                    )
                    self._signal(process, force=True)
                    process.wait()

            for stream in (process.stdout, process.stderr):
                try:
                    if stream:
                        stream.close()
                except OSError:
                    pass
            if self._stderr_thread is not None:
                self._stderr_thread.join(timeout=1)

            self._returncode = process.returncode
            self._process = None
            logger.info(f"Stdio transport stopped (exit code {self._returncode})")

    @staticmethod
    def _signal(process: subprocess.Popen, force: bool = False) -> None:
        """Signal the server's whole process group where the platform allows it."""
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    def __del__(self) -> None:
        """Ensure the subprocess is reaped even if terminate() was never called."""
        try:
            self.terminate(grace=1)
        except Exception:
            # Interpreter shutdown may have torn down modules already
            pass
