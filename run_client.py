"""
Run Client — launch MCP tool servers, list their tools, call one.

It:
1. Loads server definitions from a JSON config (or a command after --)
2. Starts each server and performs the handshake
3. Discovers tools and prints them
4. Optionally calls one tool with JSON arguments
5. Stops every server on exit

Usage:
    # List tools from every server in a config file
    python run_client.py --config servers.json --list

    # Launch a server directly, passing credentials as env overrides
    python run_client.py --env API_TOKEN=secret -- node rest-server.js

    # Call a tool
    python run_client.py --call echo --args '{"message": "hi"}' -- python -m mcp_bridge.servers.echo
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys

from mcp_bridge.adapters import ToolCallback
from mcp_bridge.config import ConfigError, ServerParameters, load_server_config
from mcp_bridge.errors import MCPError
from mcp_bridge.manager import ToolServerManager

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_env(pairs: list[str]) -> dict[str, str]:
    """Turn ["KEY=VALUE", ...] into a dict."""
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def load_servers(args: argparse.Namespace) -> dict[str, ServerParameters]:
    """Server definitions from --config and/or the trailing command."""
    servers: dict[str, ServerParameters] = {}
    if args.config:
        servers.update(load_server_config(args.config))

    command = args.command[1:] if args.command[:1] == ["--"] else args.command
    if command:
        servers["cli"] = ServerParameters(command=command[0], args=command[1:])

    env = parse_env(args.env)
    for params in servers.values():
        params.env.update(env)
        if args.timeout is not None:
            params.request_timeout = args.timeout
    return servers


def find_tool(callbacks: list[ToolCallback], name: str) -> ToolCallback | None:
    return next((cb for cb in callbacks if cb.name == name), None)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Launch MCP tool servers over stdio and call their tools.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_client.py --config servers.json --list
  python run_client.py --call echo --args '{"message": "hi"}' -- python -m mcp_bridge.servers.echo
        """,
    )
    parser.add_argument("--config", "-c", type=str, help="JSON file with an 'mcpServers' object")
    parser.add_argument("--env", "-e", action="append", default=[], help="KEY=VALUE environment override (repeatable)")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds (default: 10)")
    parser.add_argument("--list", action="store_true", help="Print discovered tools")
    parser.add_argument("--call", type=str, help="Tool to call")
    parser.add_argument("--args", type=str, default="{}", help="JSON object of tool arguments")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Server command (after --)")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        servers = load_servers(args)
        arguments = json.loads(args.args)
    except (ConfigError, ValueError) as e:
        parser.error(str(e))
    if not servers:
        parser.error("--config or a server command is required")
    if not isinstance(arguments, dict):
        parser.error("--args must be a JSON object")

    manager = ToolServerManager()

    # Graceful shutdown on Ctrl+C
    def shutdown(sig, frame):
        print("\nShutting down MCP servers...")
        manager.stop_all()
        sys.exit(130)
    previous_handler = signal.signal(signal.SIGINT, shutdown)

    try:
        return run(manager, servers, args, arguments)
    finally:
        manager.stop_all()
        signal.signal(signal.SIGINT, previous_handler)


def run(
    manager: ToolServerManager,
    servers: dict[str, ServerParameters],
    args: argparse.Namespace,
    arguments: dict,
) -> int:
    """Start the servers, print their tools and make the requested call."""
    for server_id, params in servers.items():
        manager.register_server(server_id, params)
    manager.start_all()
    if not any(manager.list_servers().values()):
        print("No tool server started.")
        return 1

    callbacks = manager.adapters()

    if args.list or not args.call:
        print(f"\nDiscovered {len(callbacks)} tools:\n")
        for cb in callbacks:
            print(cb.describe())
            print()

    if args.call:
        callback = find_tool(callbacks, args.call)
        if callback is None:
            print(f"Error: tool '{args.call}' not found. Available: {[cb.name for cb in callbacks]}")
            return 1
        try:
            result = callback.invoke(arguments)
        except MCPError as e:
            print(f"Error: {e}")
            return 1
        print("=" * 60)
        print(result.text or json.dumps(result.content, indent=2))
        print("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())
