"""
JSON-over-HTTP client for tests.

Every request and response is logged to the environment's ResultStore before
the call returns, so a failed run can be reconstructed from artifacts alone.
No retries here: readiness polling is the only place that retries.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import requests

from iter_e2e.harness.errors import RequestTimeoutError, TransportError
from iter_e2e.harness.results import ResultStore

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class HTTPResult:
    method: str
    url: str
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


class HTTPTestClient:
    def __init__(
        self,
        base_url: str,
        store: ResultStore | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.timeout = timeout
        self._session = session or requests.Session()
        # The service under test is always addressed directly, never via a proxy.
        self._session.trust_env = False

    def log(self, message: str, *args: Any) -> None:
        if self.store is not None:
            self.store.log(message, *args)

    def request(self, method: str, path: str, body: Any = None, **kwargs) -> HTTPResult:
        method = method.upper()
        url = f"{self.base_url}{path}"
        headers = dict(kwargs.pop("headers", None) or {})
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers.setdefault("Content-Type", "application/json")

        self.log("%s %s", method, path)
        start = time.monotonic()
        try:
            response = self._session.request(
                method,
                url,
                data=data,
                headers=headers or None,
                timeout=kwargs.pop("timeout", self.timeout),
                **kwargs,
            )
        except requests.exceptions.Timeout as exc:
            self.log("%s %s timed out: %s", method, path, exc)
            raise RequestTimeoutError(f"{method} {path} timed out", cause=exc)
        except requests.exceptions.RequestException as exc:
            self.log("%s %s failed: %s", method, path, exc)
            raise TransportError(f"{method} {path} failed", cause=exc)

        result = HTTPResult(
            method=method,
            url=url,
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            elapsed=time.monotonic() - start,
        )
        self.log("Response: %d %s", result.status, result.text)
        return result

    def get(self, path: str, **kwargs) -> HTTPResult:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, body: Any = None, **kwargs) -> HTTPResult:
        return self.request("POST", path, body, **kwargs)

    def delete(self, path: str, **kwargs) -> HTTPResult:
        return self.request("DELETE", path, **kwargs)

    def get_html(self, path: str) -> str:
        result = self.get(path)
        if result.status != 200:
            raise TransportError(f"GET {path}: unexpected status {result.status}")
        return result.text

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "HTTPTestClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
