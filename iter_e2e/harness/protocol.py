"""
JSON-RPC 2.0 client for the service's tool protocol.

Requests go to ``POST /mcp/v1`` through an ``HTTPTestClient`` so every
exchange lands in the test log. The SSE endpoint is only probed for its
handshake; the harness never consumes the stream beyond the first event.
"""

from __future__ import annotations

import itertools
import json
import threading
from dataclasses import dataclass
from typing import Any, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from iter_e2e.harness import constants
from iter_e2e.harness.errors import (
    ProtocolCallError,
    ProtocolViolationError,
    RequestTimeoutError,
    TransportError,
)
from iter_e2e.harness.http_client import HTTPTestClient

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "iter-e2e", "version": "1.0.0"}


class ProtocolRequest(BaseModel):
    jsonrpc: str = constants.JSONRPC_VERSION
    id: int
    method: str
    params: Optional[dict[str, Any]] = None


class ProtocolError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any = None


class ProtocolResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    jsonrpc: str = constants.JSONRPC_VERSION
    id: Optional[int | str] = None
    result: Any = None
    error: Optional[ProtocolError] = None


def build_rpc_payload(method: str, params: dict[str, Any] | None = None, *, request_id: int = 1) -> dict:
    """Envelope as a plain dict, for callers that send it through other transports."""
    return ProtocolRequest(id=request_id, method=method, params=params).model_dump(
        exclude_none=True
    )


def parse_response(raw: Any, method: str) -> ProtocolResponse:
    if not isinstance(raw, dict):
        raise ProtocolViolationError(f"{method}: response is not a JSON object: {raw!r}")
    if "result" not in raw and raw.get("error") is None:
        raise ProtocolViolationError(f"{method}: response has neither result nor error")
    try:
        response = ProtocolResponse.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolViolationError(f"{method}: malformed response envelope", cause=exc)
    if response.error is not None:
        raise ProtocolCallError(
            method, response.error.code, response.error.message, response.error.data
        )
    return response


@dataclass(frozen=True)
class ToolResult:
    content: list[dict[str, Any]]
    is_error: bool = False

    @property
    def text(self) -> str:
        return "\n".join(
            item.get("text", "") for item in self.content if item.get("type") == "text"
        )


@dataclass(frozen=True)
class SSEHandshake:
    event: str
    endpoint_url: str
    raw: str


class ProtocolClient:
    def __init__(self, http: HTTPTestClient, *, path: str = constants.MCP_RPC_PATH) -> None:
        self.http = http
        self.path = path
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def call(self, method: str, params: dict[str, Any] | None = None) -> ProtocolResponse:
        request_id = self._next_id()
        payload = build_rpc_payload(method, params, request_id=request_id)
        result = self.http.post(self.path, payload)
        if not result.ok:
            raise ProtocolViolationError(f"{method}: HTTP status {result.status}: {result.text}")
        try:
            raw = result.json()
        except json.JSONDecodeError as exc:
            raise ProtocolViolationError(f"{method}: response is not JSON", cause=exc)
        response = parse_response(raw, method)
        if response.id != request_id:
            raise ProtocolViolationError(
                f"{method}: response id {response.id!r} does not match request id {request_id}"
            )
        return response

    def initialize(self) -> dict[str, Any]:
        response = self.call(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        return response.result or {}

    def list_tools(self) -> list[dict[str, Any]]:
        result = self.call("tools/list").result
        if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
            raise ProtocolViolationError(f"tools/list: unexpected result {result!r}")
        return result["tools"]

    def tool_names(self) -> list[str]:
        return [tool.get("name", "") for tool in self.list_tools()]

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        result = self.call("tools/call", {"name": name, "arguments": arguments or {}}).result
        if not isinstance(result, dict):
            raise ProtocolViolationError(f"tools/call {name}: unexpected result {result!r}")
        return ToolResult(
            content=list(result.get("content") or []),
            is_error=bool(result.get("isError", False)),
        )

    def probe_sse(self, *, path: str = constants.MCP_SSE_PATH, timeout: float = 5.0) -> SSEHandshake:
        """Open the event stream and validate its first ``endpoint`` event."""
        url = f"{self.http.base_url}{path}"
        self.http.log("GET %s (stream)", path)
        try:
            with requests.Session() as session:
                session.trust_env = False
                with session.get(
                    url,
                    headers={"Accept": "text/event-stream"},
                    stream=True,
                    timeout=timeout,
                ) as response:
                    if response.status_code != 200:
                        raise ProtocolViolationError(
                            f"SSE: unexpected status {response.status_code}"
                        )
                    raw = ""
                    # The first event ends at the first blank line.
                    for chunk in response.iter_content(chunk_size=None):
                        raw += chunk.decode("utf-8", errors="replace")
                        if "\n\n" in raw:
                            break
        except requests.exceptions.Timeout as exc:
            raise RequestTimeoutError("SSE handshake timed out", cause=exc)
        except requests.exceptions.RequestException as exc:
            raise TransportError("SSE handshake failed", cause=exc)

        self.http.log("SSE first chunk: %s", raw)
        return parse_sse_handshake(raw)


def parse_sse_handshake(raw: str) -> SSEHandshake:
    event = ""
    endpoint = ""
    for line in raw.splitlines():
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:") and not endpoint:
            endpoint = line[len("data:"):].strip()
    if event != "endpoint":
        raise ProtocolViolationError(f"SSE: expected 'event: endpoint', got {raw!r}")
    if not endpoint.startswith("http"):
        raise ProtocolViolationError(f"SSE: endpoint data is not a URL: {raw!r}")
    return SSEHandshake(event=event, endpoint_url=endpoint, raw=raw)
