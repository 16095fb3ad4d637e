# Where: iter_e2e/harness/readiness.py
# What: Deadlines, bounded polling and health probes.
# Why: Readiness waits are the one place retries belong; keep them in one module.
from __future__ import annotations

import threading
import time
from typing import Callable, TypeVar

import requests

from iter_e2e.harness import constants
from iter_e2e.harness.errors import ReadinessTimeoutError

T = TypeVar("T")


class Deadline:
    """A monotonic time budget, optionally cancelled early from another thread."""

    def __init__(self, seconds: float | None, *, cancel_event: threading.Event | None = None):
        self.seconds = seconds
        self._start = time.monotonic()
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def elapsed(self) -> float:
        return time.monotonic() - self._start

    def remaining(self) -> float | None:
        if self.seconds is None:
            return None
        return max(0.0, self.seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound(self, timeout: float) -> float:
        """Clamp a phase timeout to what is left of this deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)


def poll_until(
    probe: Callable[[], tuple[bool, str | None]],
    *,
    target: str,
    timeout: float,
    interval: float,
    deadline: Deadline | None = None,
) -> float:
    """
    Call ``probe`` until it reports success or the budget runs out.

    ``probe`` returns ``(ok, error)``; the last error is reported in the
    ``ReadinessTimeoutError``. Returns the elapsed time on success.
    """
    budget = deadline.bound(timeout) if deadline else timeout
    start = time.monotonic()
    last_error: str | None = None
    while True:
        ok, error = probe()
        elapsed = time.monotonic() - start
        if ok:
            return elapsed
        last_error = error or last_error
        if elapsed >= budget or (deadline is not None and deadline.expired):
            raise ReadinessTimeoutError(target, elapsed, last_error)
        time.sleep(interval)


def probe_health(base_url: str, *, timeout: float = 2.0) -> tuple[bool, str | None]:
    """One GET /health; success is a 200 answer."""
    try:
        with requests.Session() as session:
            session.trust_env = False
            response = session.get(f"{base_url}{constants.HEALTH_PATH}", timeout=timeout)
    except requests.exceptions.RequestException as exc:
        return False, str(exc)
    if response.status_code == 200:
        return True, None
    return False, f"Status code {response.status_code}"


def wait_for_healthy(
    base_url: str,
    *,
    timeout: float,
    interval: float = 0.1,
    probe_timeout: float = 2.0,
    deadline: Deadline | None = None,
) -> float:
    return poll_until(
        lambda: probe_health(base_url, timeout=probe_timeout),
        target=f"{base_url}{constants.HEALTH_PATH}",
        timeout=timeout,
        interval=interval,
        deadline=deadline,
    )


def wait_for_unreachable(
    base_url: str,
    *,
    timeout: float,
    interval: float = 0.1,
    probe_timeout: float = 0.5,
) -> bool:
    """Poll until the health endpoint stops answering; False if it never does."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with requests.Session() as session:
                session.trust_env = False
                session.get(f"{base_url}{constants.HEALTH_PATH}", timeout=probe_timeout)
        except requests.exceptions.RequestException:
            return True
        time.sleep(interval)
    return False


def wait_for(timeout: float, check: Callable[[], bool], *, interval: float = 0.1) -> bool:
    """Return True as soon as ``check`` passes, False once ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(interval)
    return False


def retry(
    attempts: int,
    delay: float,
    fn: Callable[[], T],
    *,
    log: Callable[[str], None] | None = None,
) -> T:
    """Run ``fn`` up to ``attempts`` times, re-raising the last failure."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last_exc: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            if log:
                log(f"Attempt {attempt} failed: {exc}")
            if attempt < attempts:
                time.sleep(delay)
    assert last_exc is not None
    raise last_exc
