"""Minimal MCP server over stdio, used by the transport tests."""

import json
import sys

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the given text",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    },
    {"name": "ping_me", "description": "Pings the client before answering"},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def handle(request):
    method = request.get("method")
    params = request.get("params") or {}
    if method == "initialize":
        return {
            "protocolVersion": params.get("protocolVersion"),
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake-stdio", "version": "0.1"},
        }
    if method == "tools/list":
        return {"tools": TOOLS}
    if method == "tools/call":
        name = params.get("name")
        if name == "echo":
            return {"content": [{"type": "text", "text": params["arguments"].get("text", "")}]}
        if name == "ping_me":
            send({"jsonrpc": "2.0", "id": "server-ping", "method": "ping"})
            reply = json.loads(sys.stdin.readline())
            status = "pong received" if reply.get("result") == {} else "no pong"
            return {"content": [{"type": "text", "text": status}]}
    raise LookupError(method)


def main():
    # Noise that is not JSON-RPC; clients must skip it.
    sys.stdout.write("fake server starting\n")
    sys.stdout.flush()
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        if "id" not in request:
            continue  # notification
        send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "debug"}})
        try:
            send({"jsonrpc": "2.0", "id": request["id"], "result": handle(request)})
        except LookupError as exc:
            send({"jsonrpc": "2.0", "id": request["id"], "error": {"code": -32601, "message": f"unknown: {exc}"}})


if __name__ == "__main__":
    main()
