# Where: iter_e2e/harness/tests/conftest.py
# What: Shared fixtures for harness unit tests: a fake service over HTTP and a fake binary.
# Why: Exercise real sockets and processes without the real service.
from __future__ import annotations

import json
import stat
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from iter_e2e.harness.ports import port_available
from iter_e2e.harness.results import ResultStore

TOOLS = [
    {"name": "list_projects", "description": "List registered projects"},
    {"name": "search", "description": "Search indexed code"},
    {"name": "get_dependencies", "description": "Dependencies of a symbol"},
    {"name": "get_dependents", "description": "Dependents of a symbol"},
]


def _rpc_reply(request: dict, base_url: str) -> dict:
    method = request.get("method")
    request_id = request.get("id")
    if method == "initialize":
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {"serverInfo": {"name": "iter-service", "version": "test"}},
        }
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOLS}}
    if method == "tools/call":
        name = request["params"]["name"]
        if name == "broken":
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": [{"type": "text", "text": "boom"}], "isError": True},
            }
        text = json.dumps({"tool": name, "arguments": request["params"].get("arguments", {})})
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {"content": [{"type": "text", "text": text}]},
        }
    if method == "test/empty":
        return {"jsonrpc": "2.0", "id": request_id}
    if method == "test/wrong-id":
        return {"jsonrpc": "2.0", "id": (request_id or 0) + 100, "result": {}}
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": -32601, "message": f"Method not found: {method}"},
    }


class _FakeServiceHandler(BaseHTTPRequestHandler):
    server_version = "FakeIter/1.0"

    def _send(self, status: int, body: bytes = b"", content_type: str = "application/json") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _send_json(self, status: int, payload) -> None:
        self._send(status, json.dumps(payload).encode("utf-8"))

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    @property
    def base_url(self) -> str:
        host, port = self.server.server_address[:2]
        return f"http://{host}:{port}"

    def do_GET(self):
        if self.path == "/health":
            self._send_json(200, {"status": "ok"})
        elif self.path == "/slow":
            time.sleep(2)
            self._send_json(200, {"status": "slow"})
        elif self.path == "/mcp/sse":
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.end_headers()
            self.wfile.write(f"event: endpoint\ndata: {self.base_url}/mcp/v1?sessionId=1\n\n".encode())
            self.wfile.flush()
        elif self.path == "/bad-sse":
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.end_headers()
            self.wfile.write(b"event: message\ndata: hello\n\n")
            self.wfile.flush()
        elif self.path.startswith("/web/"):
            self._send(200, b"<html><body><h1>iter</h1></body></html>", "text/html")
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self):
        body = self._read_body()
        if self.path == "/echo":
            self._send_json(
                201,
                {
                    "body": json.loads(body) if body else None,
                    "content_type": self.headers.get("Content-Type"),
                },
            )
        elif self.path == "/mcp/v1":
            self._send_json(200, _rpc_reply(json.loads(body), self.base_url))
        else:
            self._send_json(404, {"error": "not found"})

    def do_DELETE(self):
        self._send(204)

    def log_message(self, format, *args):
        return None


@pytest.fixture
def fake_service():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _FakeServiceHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def store(tmp_path):
    return ResultStore.create(tmp_path / "results", "api", "unit-test")


FAKE_SERVICE_SCRIPT = """
import json
import os
import sys
import tomllib
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

config_path = sys.argv[sys.argv.index("--config") + 1]
with open(config_path, "rb") as f:
    config = tomllib.load(f)
port = config["service"]["port"]
data_dir = config["service"]["data_dir"]
with open(os.path.join(data_dir, "env.json"), "w") as f:
    json.dump(
        {key: os.environ.get(key) for key in ("ITER_CONFIG", "ITER_DATA_DIR", "GOOGLE_GEMINI_API_KEY")},
        f,
    )


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        status = 200 if self.path == "/health" else 404
        body = b'{"status": "ok"}' if status == 200 else b"{}"
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        print(format % args, flush=True)


server = ThreadingHTTPServer(("127.0.0.1", port), Handler)
print("listening on", port, flush=True)
try:
    server.serve_forever()
except KeyboardInterrupt:
    print("interrupted", flush=True)
finally:
    server.server_close()
"""

HANGING_SERVICE_SCRIPT = """
import time

print("starting but never serving", flush=True)
time.sleep(120)
"""


def _write_executable(path, body: str):
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_service_binary(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return _write_executable(bin_dir / "iter-service", FAKE_SERVICE_SCRIPT)


@pytest.fixture
def hanging_service_binary(tmp_path):
    bin_dir = tmp_path / "hanging-bin"
    bin_dir.mkdir()
    return _write_executable(bin_dir / "iter-service", HANGING_SERVICE_SCRIPT)


@pytest.fixture
def unused_port():
    for port in range(29000, 29200):
        if port_available(port):
            return port
    pytest.skip("no free loopback port found")
