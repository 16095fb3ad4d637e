"""
Harness error taxonomy.

Lower layers raise these with a kind, a message and an optional cause; the
facade and the test body decide how severe they are. ``EnvironmentSkip`` is
the only kind that should end up as a skipped test instead of a failure.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    SETUP = "setup"
    READINESS_TIMEOUT = "readiness_timeout"
    SKIP = "skip"
    ASSERTION = "assertion"
    CLEANUP = "cleanup"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    LIFECYCLE = "lifecycle"
    ARTIFACT = "artifact"


class HarnessError(Exception):
    """Base exception for the orchestration layer."""

    kind: ErrorKind = ErrorKind.SETUP

    def __init__(self, message: str, *, cause: BaseException | None = None):
        self.message = message
        self.cause = cause
        if cause is not None:
            super().__init__(f"{message}: {cause}")
        else:
            super().__init__(message)


class SetupError(HarnessError):
    """Binary or image missing, port exhaustion, directory creation failure."""

    kind = ErrorKind.SETUP


class ReadinessTimeoutError(HarnessError):
    """Raised when a readiness probe never succeeds within its bound."""

    kind = ErrorKind.READINESS_TIMEOUT

    def __init__(self, target: str, elapsed: float, last_error: str | None = None):
        self.target = target
        self.elapsed = elapsed
        self.last_error = last_error
        message = f"{target} not ready after {elapsed:.1f}s"
        if last_error:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)


class EnvironmentSkip(HarnessError):
    """Expected absence of an optional capability (docker, credentials, browser)."""

    kind = ErrorKind.SKIP


class RequestTimeoutError(HarnessError):
    """A blocking call ran out of time."""

    kind = ErrorKind.TIMEOUT


class CommandTimeoutError(RequestTimeoutError):
    """A command executed inside a container exceeded its time limit."""

    def __init__(self, container: str, argv: list[str], timeout: float):
        self.container = container
        self.argv = argv
        self.timeout = timeout
        super().__init__(f"Command in {container} timed out after {timeout}s: {' '.join(argv)}")


class TransportError(HarnessError):
    """Connection refused, reset or otherwise failed before a response arrived."""

    kind = ErrorKind.TRANSPORT


class ProtocolCallError(HarnessError):
    """The service answered a JSON-RPC request with an error object."""

    kind = ErrorKind.PROTOCOL

    def __init__(self, method: str, code: int, message: str, data=None):
        self.method = method
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(f"{method} returned error {code}: {message}")


class ProtocolViolationError(HarnessError):
    """Malformed envelope, missing result/error, or a broken SSE handshake."""

    kind = ErrorKind.PROTOCOL


class LifecycleError(HarnessError):
    """Illegal state transition, e.g. starting an environment twice."""

    kind = ErrorKind.LIFECYCLE


class ArtifactError(HarnessError):
    """Writing a result artifact failed."""

    kind = ErrorKind.ARTIFACT


class BrowserError(HarnessError):
    kind = ErrorKind.TRANSPORT


class BrowserTimeoutError(BrowserError):
    kind = ErrorKind.TIMEOUT


class BrowserUnavailableError(EnvironmentSkip):
    """No headless browser could be launched on this host."""
