"""Minimal line-delimited JSON-RPC tool server used by the transport tests.

Launched as ``python tests/fake_mcp_server.py [flags]``.  Flags switch on the
misbehaviours the tests need:

``--no-tools``       ``tools/list`` answers "method not found".
``--no-prompts``     ``prompts/list`` answers "method not found".
``--no-resources``   ``resources/list`` answers "method not found".
``--silent-call``    ``tools/call`` is never answered.
``--slow-call SECS`` the first ``tools/call`` is answered after ``SECS`` seconds.
``--crash-on-call``  the process exits as soon as ``tools/call`` arrives.
``--noise``          a non-JSON banner is printed before serving.
``--name NAME``      server name reported by ``initialize``.
"""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any, Dict

METHOD_NOT_FOUND = -32601

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the message back.",
        "inputSchema": {
            "type": "object",
            "properties": {"message": {"type": "string"}},
            "required": ["message"],
        },
    },
    {
        "name": "add",
        "description": "Add two numbers.",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        },
    },
    {"name": "pid", "description": "Report the server process id.", "inputSchema": {"type": "object"}},
    {"name": "fail", "description": "Always reports an error.", "inputSchema": {"type": "object"}},
]
RESOURCES = [{"uri": "memo://greeting", "name": "greeting", "mimeType": "text/plain"}]
PROMPTS = [{"name": "greet", "description": "Say hello", "arguments": [{"name": "who", "required": True}]}]


class MethodNotFound(Exception):
    pass


class FakeServer:
    def __init__(self, argv: list[str]) -> None:
        self.flags = set(arg for arg in argv if arg.startswith("--"))
        self.name = "fake-mcp"
        if "--name" in argv:
            self.name = argv[argv.index("--name") + 1]
        self.slow_call = 0.0
        if "--slow-call" in argv:
            self.slow_call = float(argv[argv.index("--slow-call") + 1])

    def run(self) -> None:
        if "--noise" in self.flags:
            self._write_raw("fake server starting up")
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as exc:
                self._write({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": str(exc)}})
                continue
            if "id" not in request:
                continue
            request_id = request["id"]
            method = request.get("method", "")
            params = request.get("params") or {}
            try:
                result = self._dispatch(method, params)
            except MethodNotFound:
                self._write(
                    {"jsonrpc": "2.0", "id": request_id, "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"}}
                )
                continue
            except Exception as exc:
                self._write({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32603, "message": str(exc)}})
                continue
            if result is not None:
                self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": "1.0"},
                "echoClientInfo": params.get("clientInfo"),
            }
        if method == "tools/list":
            if "--no-tools" in self.flags:
                raise MethodNotFound()
            return {"tools": TOOLS}
        if method == "resources/list":
            if "--no-resources" in self.flags:
                raise MethodNotFound()
            return {"resources": RESOURCES}
        if method == "prompts/list":
            if "--no-prompts" in self.flags:
                raise MethodNotFound()
            return {"prompts": PROMPTS}
        if method == "resources/read":
            return {"contents": [{"uri": params.get("uri"), "mimeType": "text/plain", "text": "hello there"}]}
        if method == "prompts/get":
            who = (params.get("arguments") or {}).get("who", "nobody")
            return {"messages": [{"role": "user", "content": {"type": "text", "text": f"Say hello to {who}"}}]}
        if method == "tools/call":
            return self._call_tool(params)
        raise MethodNotFound()

    def _call_tool(self, params: Dict[str, Any]) -> Any:
        if "--silent-call" in self.flags:
            return None
        if "--crash-on-call" in self.flags:
            sys.stdout.flush()
            os._exit(3)
        if self.slow_call:
            delay, self.slow_call = self.slow_call, 0.0
            time.sleep(delay)
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if name == "echo":
            return _text(str(arguments.get("message", "")))
        if name == "add":
            return _text(str(arguments.get("a", 0) + arguments.get("b", 0)))
        if name == "pid":
            return _text(str(os.getpid()))
        if name == "fail":
            return {"content": [{"type": "text", "text": "tool exploded"}], "isError": True}
        raise ValueError(f"Unknown tool: {name}")

    def _write(self, payload: Dict[str, Any]) -> None:
        self._write_raw(json.dumps(payload))

    @staticmethod
    def _write_raw(text: str) -> None:
        sys.stdout.write(text + "\n")
        sys.stdout.flush()


def _text(value: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": value}], "isError": False}


if __name__ == "__main__":
    FakeServer(sys.argv[1:]).run()
