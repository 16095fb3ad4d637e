# Where: iter_e2e/harness/process.py
# What: Local child-process lifecycle for one iter-service instance.
# Why: Start, readiness, graceful stop and port release belong to one state machine.
from __future__ import annotations

import enum
import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TextIO

from iter_e2e.harness import constants
from iter_e2e.harness.errors import LifecycleError, ReadinessTimeoutError, SetupError
from iter_e2e.harness.readiness import Deadline, wait_for_healthy, wait_for_unreachable
from iter_e2e.harness.service_config import write_service_config
from iter_e2e.harness.settings import Timeouts

logger = logging.getLogger(__name__)


class ProcessState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


def find_binary(project_root: Path, explicit: Path | None = None) -> Path | None:
    """Explicit override, then PATH, then ``<project_root>/tests/bin``."""
    if explicit is not None:
        return explicit if explicit.is_file() else None
    on_path = shutil.which(constants.SERVICE_BINARY)
    if on_path:
        return Path(on_path)
    candidate = project_root / "tests" / "bin" / constants.SERVICE_BINARY
    if candidate.is_file():
        return candidate
    return None


@dataclass
class ServiceProcessSpec:
    binary: Path
    port: int
    data_dir: Path
    config_path: Path
    log_path: Path
    project_root: Path | None = None
    include_llm_config: bool = True
    extra_env: dict[str, str] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return f"http://{constants.LOOPBACK_HOST}:{self.port}"

    def command(self) -> list[str]:
        return [str(self.binary), "serve", "--config", str(self.config_path)]

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.extra_env)
        env[constants.ENV_SERVICE_CONFIG] = str(self.config_path)
        env[constants.ENV_SERVICE_DATA_DIR] = str(self.data_dir)
        return env


class ProcessSupervisor:
    """
    Owns one spawned service process.

    NOT_STARTED -> STARTING -> READY -> STOPPING -> STOPPED, with
    STARTING -> FAILED when launch or readiness fails. Starting twice raises
    LifecycleError; stopping anything but a READY/FAILED process is a no-op.
    """

    def __init__(
        self,
        spec: ServiceProcessSpec,
        timeouts: Timeouts | None = None,
        *,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.spec = spec
        self.timeouts = timeouts or Timeouts()
        self.state = ProcessState.NOT_STARTED
        self.process: subprocess.Popen | None = None
        self._log_stream: TextIO | None = None
        self._lock = threading.Lock()
        self._log = log

    @property
    def base_url(self) -> str:
        return self.spec.base_url

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    def _note(self, message: str) -> None:
        logger.info(message)
        if self._log:
            self._log(message)

    def start(self, deadline: Deadline | None = None) -> float:
        """Spawn the service and block until /health answers. Returns startup time."""
        with self._lock:
            if self.state is not ProcessState.NOT_STARTED:
                raise LifecycleError(f"Service process already {self.state.value}")
            self.state = ProcessState.STARTING

        spec = self.spec
        try:
            spec.data_dir.mkdir(parents=True, exist_ok=True)
            write_service_config(
                spec.config_path,
                port=spec.port,
                data_dir=spec.data_dir,
                project_root=spec.project_root,
                include_llm=spec.include_llm_config,
                shutdown_timeout=int(self.timeouts.shutdown_grace),
            )
            self._log_stream = spec.log_path.open("w", encoding="utf-8")
            self.process = subprocess.Popen(
                spec.command(),
                env=spec.environment(),
                stdin=subprocess.DEVNULL,
                stdout=self._log_stream,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            self._close_log()
            self.state = ProcessState.FAILED
            raise SetupError(f"Failed to launch {spec.binary}", cause=exc)

        self._note(f"Started {constants.SERVICE_NAME} (pid {self.process.pid}) on port {spec.port}")
        try:
            elapsed = wait_for_healthy(
                spec.base_url,
                timeout=self.timeouts.readiness_timeout,
                interval=self.timeouts.probe_interval,
                probe_timeout=self.timeouts.probe_timeout,
                deadline=deadline,
            )
        except ReadinessTimeoutError:
            self._note("Service did not become ready; terminating")
            self.state = ProcessState.FAILED
            self._terminate()
            self._close_log()
            raise

        self.state = ProcessState.READY
        self._note(f"Service ready in {elapsed:.2f}s")
        return elapsed

    def stop(self) -> None:
        with self._lock:
            if self.state not in (ProcessState.READY, ProcessState.FAILED):
                return
            previous = self.state
            self.state = ProcessState.STOPPING

        if self.process is not None and self.process.poll() is None:
            self._terminate()
        if previous is ProcessState.READY:
            released = wait_for_unreachable(
                self.spec.base_url,
                timeout=self.timeouts.port_release_timeout,
                interval=self.timeouts.probe_interval,
            )
            if not released:
                self._note(f"Port {self.spec.port} still answering after stop")
        self._close_log()
        self.state = ProcessState.STOPPED
        self._note("Service stopped")

    def _terminate(self) -> None:
        process = self.process
        if process is None or process.poll() is not None:
            return
        process.send_signal(signal.SIGINT)
        try:
            process.wait(timeout=self.timeouts.shutdown_grace)
        except subprocess.TimeoutExpired:
            self._note(f"No exit {self.timeouts.shutdown_grace}s after SIGINT; killing")
            process.kill()
            process.wait(timeout=self.timeouts.shutdown_grace)

    def _close_log(self) -> None:
        if self._log_stream is not None:
            try:
                self._log_stream.close()
            except OSError:
                pass
            self._log_stream = None
