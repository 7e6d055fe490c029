"""
Echo tool server: the smallest useful StdioToolServer.

Two tools for exercising a client end to end:
    echo   returns its message as plain text, optionally repeated
    fail   reports an isError result with the given reason

Launch:
    python -m mcp_bridge.servers.echo

Try it by hand:
    echo '{"jsonrpc":"2.0","id":1,"method":"tools/call","params":{"name":"echo","arguments":{"message":"hi"}}}' \
        | python -m mcp_bridge.servers.echo
"""

from mcp_bridge.server import StdioToolServer, ToolHandler

MAX_REPEAT = 100


class EchoHandler(ToolHandler):
    name = "echo"
    description = "Return the message unchanged, repeated `repeat` times."
    parameters = {
        "message": {"type": "string", "description": "Text to send back"},
        "repeat": {"type": "integer", "description": f"Copies to return, 1-{MAX_REPEAT}"},
    }
    required = ["message"]

    def handle(self, params: dict) -> str:
        repeat = params.get("repeat", 1)
        if not isinstance(repeat, int) or not 1 <= repeat <= MAX_REPEAT:
            raise ValueError(f"repeat must be an integer between 1 and {MAX_REPEAT}")
        return " ".join([str(params["message"])] * repeat)


class FailHandler(ToolHandler):
    name = "fail"
    description = "Fail with the given reason, for testing error paths."
    parameters = {"reason": {"type": "string", "description": "Error text to report"}}

    def handle(self, params: dict) -> str:
        raise RuntimeError(params.get("reason") or "failed on request")


def build_server() -> StdioToolServer:
    server = StdioToolServer("echo")
    server.register(EchoHandler())
    server.register(FailHandler())
    return server


if __name__ == "__main__":
    build_server().run()
