"""
Server launch configuration.

A server is described by the command that starts it, its arguments and the
environment overrides it needs (credentials, hosts). Several servers can be
kept in one JSON file using the common ``mcpServers`` layout:

    {
      "mcpServers": {
        "documents": {
          "command": "node",
          "args": ["rest-server.js"],
          "env": {"API_HOST": "https://example.org", "API_TOKEN": "${API_TOKEN}"},
          "requestTimeout": 20
        }
      }
    }

``${VAR}`` references in env values are expanded from the parent
environment when the file is loaded.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Seconds to wait for any single response
DEFAULT_REQUEST_TIMEOUT = 10.0

# Seconds between SIGTERM and SIGKILL when stopping a server
PROCESS_TERMINATE_TIMEOUT = 5

# MCP revision sent in the initialize request
PROTOCOL_VERSION = "2024-11-05"

# Upper bound on a single newline-delimited frame (16 MB)
MAX_FRAME_SIZE = 16 * 1024 * 1024


class ConfigError(ValueError):
    """Invalid server configuration."""
    pass


@dataclass
class ServerParameters:
    """How to launch one tool server."""
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str = "server") -> "ServerParameters":
        """Build parameters from one ``mcpServers`` entry."""
        if not isinstance(data, dict):
            raise ConfigError(f"[{name}] entry must be an object")

        command = data.get("command")
        if not command or not isinstance(command, str):
            raise ConfigError(f"[{name}] 'command' is required")

        args = data.get("args", [])
        if not isinstance(args, list):
            raise ConfigError(f"[{name}] 'args' must be a list")

        env = data.get("env", {})
        if not isinstance(env, dict):
            raise ConfigError(f"[{name}] 'env' must be an object")

        timeout = data.get("requestTimeout", DEFAULT_REQUEST_TIMEOUT)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"[{name}] 'requestTimeout' must be a positive number")

        return cls(
            command=command,
            args=[str(a) for a in args],
            env={str(k): os.path.expandvars(str(v)) for k, v in env.items()},
            cwd=data.get("cwd"),
            request_timeout=float(timeout),
        )


def load_server_config(path: str | Path) -> dict[str, ServerParameters]:
    """
    Load every server defined in a JSON config file.

    Returns:
        {server_id: ServerParameters}, in file order.
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")

    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        raise ConfigError(f"{path}: expected an 'mcpServers' object")

    return {
        server_id: ServerParameters.from_dict(entry, name=server_id)
        for server_id, entry in servers.items()
    }
