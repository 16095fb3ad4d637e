# Where: iter_e2e/harness/driver.py
# What: Exercises run from inside a driver container against the primary by alias.
# Why: Drivers only reach the service over the bridge network; curl is the common denominator.
from __future__ import annotations

import json
import shlex
from typing import Any

from iter_e2e.harness import constants
from iter_e2e.harness.containers import ContainerOrchestrator, ExecResult
from iter_e2e.harness.errors import ProtocolViolationError, TransportError
from iter_e2e.harness.protocol import build_rpc_payload, parse_response
from iter_e2e.harness.scrub import extract_json, strip_control_sequences

# curl: "Couldn't resolve host" / "Failed to connect".
CURL_RESOLVE_FAILED = 6
CURL_CONNECT_FAILED = 7


def build_curl_script(method: str, url: str, payload: Any = None, *, max_time: float | None = None) -> str:
    parts = ["curl", "-s"]
    if max_time is not None:
        parts += ["--max-time", str(max_time)]
    if method.upper() != "GET":
        parts += ["-X", method.upper()]
    if payload is not None:
        parts += ["-H", "Content-Type: application/json", "-d", json.dumps(payload, separators=(",", ":"))]
    parts.append(url)
    return " ".join(shlex.quote(part) for part in parts)


class DriverClient:
    """Runs curl inside a driver container and decodes the JSON it prints."""

    def __init__(
        self,
        orchestrator: ContainerOrchestrator,
        driver: str = constants.DRIVER_ALIAS,
        *,
        base_url: str | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.driver = driver
        self.base_url = (base_url or orchestrator.internal_base_url).rstrip("/")
        self._rpc_id = 0

    def run(self, script: str, timeout: float | None = None) -> ExecResult:
        return self.orchestrator.exec_bash(self.driver, script, timeout)

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        script = build_curl_script(method, f"{self.base_url}{path}", payload)
        result = self.run(script)
        if not result.ok:
            raise TransportError(
                f"{method} {path} from {self.driver} failed (exit {result.exit_code}): {result.output}"
            )
        try:
            return extract_json(result.output)
        except ValueError as exc:
            output = strip_control_sequences(result.output)[:500]
            raise ProtocolViolationError(f"{method} {path} from {self.driver} returned no JSON: {output!r}", cause=exc)

    def health(self) -> Any:
        return self._request("GET", constants.HEALTH_PATH)

    def register_project(self, name: str, path: str) -> str:
        response = self._request("POST", constants.PROJECTS_PATH, {"name": name, "path": path})
        if not isinstance(response, dict) or not response.get("id"):
            raise TransportError(f"register_project: unexpected response {response!r}")
        return str(response["id"])

    def index_project(self, project_id: str) -> Any:
        return self._request("POST", f"{constants.PROJECTS_PATH}/{project_id}/index")

    def get_project(self, project_id: str) -> Any:
        return self._request("GET", f"{constants.PROJECTS_PATH}/{project_id}")

    def search(self, project_id: str, query: str, limit: int | None = None) -> Any:
        body: dict[str, Any] = {"query": query}
        if limit is not None:
            body["limit"] = limit
        return self._request("POST", f"{constants.PROJECTS_PATH}/{project_id}/search", body)

    def index_status(self) -> Any:
        return self._request("GET", constants.INDEX_STATUS_PATH)

    def rpc(self, method: str, params: dict[str, Any] | None = None) -> Any:
        self._rpc_id += 1
        payload = build_rpc_payload(method, params, request_id=self._rpc_id)
        raw = self._request("POST", constants.MCP_RPC_PATH, payload)
        return parse_response(raw, method).result

    def list_tools(self) -> list[str]:
        result = self.rpc("tools/list") or {}
        return [tool.get("name", "") for tool in result.get("tools", [])]

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        return self.rpc("tools/call", {"name": name, "arguments": arguments or {}})

    def list_projects(self) -> Any:
        return self.call_tool("list_projects")

    def search_tool(self, query: str, project_id: str | None = None) -> Any:
        arguments = {"query": query}
        if project_id:
            arguments["project_id"] = project_id
        return self.call_tool("search", arguments)

    def probe_alias(self, alias: str, port: int = constants.CONTAINER_SERVICE_PORT, *, max_time: float = 5) -> ExecResult:
        """Raw health probe against ``alias``; callers inspect the exit code."""
        url = f"http://{alias}:{port}{constants.HEALTH_PATH}"
        return self.run(build_curl_script("GET", url, max_time=max_time))

    def configure_mcp(self, name: str = constants.PRIMARY_ALIAS) -> ExecResult:
        """Register the service's RPC endpoint with the agent CLI in the driver."""
        self.run(f"claude mcp remove {shlex.quote(name)}")
        result = self.run(
            "claude mcp add --transport http "
            f"{shlex.quote(name)} {shlex.quote(self.base_url + constants.MCP_RPC_PATH)}"
        )
        if not result.ok and "already" not in result.output:
            raise TransportError(f"configure_mcp failed: {result.output}")
        return result

    def run_prompt(self, prompt: str, *, max_turns: int = 10, timeout: float | None = None) -> ExecResult:
        script = (
            f'export PATH="{constants.DRIVER_HOME}/.local/bin:$PATH" && '
            f"claude -p --dangerously-skip-permissions --max-turns {max_turns} {shlex.quote(prompt)}"
        )
        return self.run(script, timeout)
