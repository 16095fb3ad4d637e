# Where: iter_e2e/harness/environment.py
# What: Test environments over three interchangeable backends, plus the TestSetup facade.
# Why: Tests ask for "a running service" and never care which backend provides it.
from __future__ import annotations

import enum
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, Optional

from iter_e2e.harness import constants
from iter_e2e.harness.browser import BrowserCapture
from iter_e2e.harness.containers import (
    ContainerOrchestrator,
    ContainerSpec,
    ExecResult,
    driver_spec,
    primary_spec,
)
from iter_e2e.harness.driver import DriverClient
from iter_e2e.harness.errors import CommandTimeoutError, LifecycleError, SetupError
from iter_e2e.harness.evidence import save_terminal_evidence
from iter_e2e.harness.http_client import HTTPTestClient
from iter_e2e.harness.ports import PortAllocator, allocator_for
from iter_e2e.harness.process import ProcessSupervisor, ServiceProcessSpec, find_binary
from iter_e2e.harness.projects import create_test_project
from iter_e2e.harness.protocol import ProtocolClient
from iter_e2e.harness.readiness import Deadline, wait_for_healthy
from iter_e2e.harness.results import ResultStore, TestSummary
from iter_e2e.harness.settings import HarnessSettings

logger = logging.getLogger(__name__)


class BackendMode(str, enum.Enum):
    LOCAL = "local"
    EXTERNAL = "external"
    CONTAINERIZED = "containerized"


class EnvironmentState(str, enum.Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"


def run_local(argv: list[str], timeout: float, *, cwd: Path | None = None) -> ExecResult:
    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise CommandTimeoutError("local", argv, timeout) from None
    except OSError as exc:
        return ExecResult(exit_code=127, output=str(exc))
    return ExecResult(exit_code=completed.returncode, output=completed.stdout or "")


class Backend(ABC):
    mode: BackendMode

    @abstractmethod
    def start(self, deadline: Deadline | None = None) -> None:
        """Provision and block until the service answers /health."""

    @abstractmethod
    def stop(self) -> None:
        """Release everything ``start`` acquired. Safe after a failed start."""

    @property
    @abstractmethod
    def base_url(self) -> str:
        """URL reachable from the host running the tests."""

    @property
    def internal_base_url(self) -> str:
        """URL a driver uses to reach the service; the host URL unless networked."""
        return self.base_url

    def exec(self, argv: list[str], timeout: float | None = None) -> ExecResult:
        return run_local(argv, timeout or 300.0)


class LocalBackend(Backend):
    mode = BackendMode.LOCAL

    def __init__(
        self,
        settings: HarnessSettings,
        store: ResultStore,
        *,
        allocator: PortAllocator | None = None,
        binary: Path | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.port = (allocator or allocator_for(settings.port_base)).allocate()
        self.binary = binary
        self.supervisor: ProcessSupervisor | None = None

    @property
    def base_url(self) -> str:
        return f"http://{constants.LOOPBACK_HOST}:{self.port}"

    @property
    def config_path(self) -> Path:
        return self.store.data_dir / constants.CONFIG_FILE_NAME

    def start(self, deadline: Deadline | None = None) -> None:
        binary = self.binary or find_binary(self.settings.project_root, self.settings.service_binary)
        if binary is None:
            raise SetupError(
                f"{constants.SERVICE_BINARY} binary not found (PATH, tests/bin or {constants.ENV_SERVICE_BIN})"
            )
        spec = ServiceProcessSpec(
            binary=binary,
            port=self.port,
            data_dir=self.store.data_dir,
            config_path=self.config_path,
            log_path=self.store.path(constants.SERVICE_LOG_NAME),
            project_root=self.settings.project_root,
            extra_env=self.settings.forwarded_env(),
        )
        self.supervisor = ProcessSupervisor(spec, self.settings.timeouts, log=self.store.log)
        self.supervisor.start(deadline)

    def stop(self) -> None:
        if self.supervisor is not None:
            self.supervisor.stop()

    def exec(self, argv: list[str], timeout: float | None = None) -> ExecResult:
        return run_local(argv, timeout or self.settings.timeouts.exec_timeout, cwd=self.store.data_dir)


class ExternalBackend(Backend):
    """A service someone else runs; only its health is checked."""

    mode = BackendMode.EXTERNAL

    def __init__(self, settings: HarnessSettings, store: ResultStore) -> None:
        if not settings.base_url:
            raise SetupError(f"{constants.ENV_BASE_URL} is not set")
        self.settings = settings
        self.store = store
        self._base_url = settings.base_url

    @property
    def base_url(self) -> str:
        return self._base_url

    def start(self, deadline: Deadline | None = None) -> None:
        timeouts = self.settings.timeouts
        wait_for_healthy(
            self._base_url,
            timeout=timeouts.external_readiness_timeout,
            interval=timeouts.probe_interval,
            probe_timeout=timeouts.probe_timeout,
            deadline=deadline,
        )
        self.store.log("Using external service at %s", self._base_url)

    def stop(self) -> None:
        return None

    def exec(self, argv: list[str], timeout: float | None = None) -> ExecResult:
        return run_local(argv, timeout or self.settings.timeouts.exec_timeout, cwd=self.store.data_dir)


class ContainerizedBackend(Backend):
    """Primary service container plus optional driver containers on one bridge network."""

    mode = BackendMode.CONTAINERIZED

    def __init__(
        self,
        settings: HarnessSettings,
        store: ResultStore,
        *,
        drivers: Iterable[ContainerSpec] = (),
        orchestrator: ContainerOrchestrator | None = None,
        prune_stale: bool = False,
    ) -> None:
        self.settings = settings
        self.store = store
        self.driver_specs = list(drivers)
        self.prune_stale = prune_stale
        self.orchestrator = orchestrator or ContainerOrchestrator(
            store=store,
            timeouts=settings.timeouts,
            credentials_file=settings.credentials_file,
        )
        self.failed = False

    @property
    def base_url(self) -> str:
        if not self.orchestrator.host_base_url:
            raise LifecycleError("Primary container is not running")
        return self.orchestrator.host_base_url

    @property
    def internal_base_url(self) -> str:
        return self.orchestrator.internal_base_url

    def start(self, deadline: Deadline | None = None) -> None:
        orchestrator = self.orchestrator
        orchestrator.deadline = deadline
        orchestrator.ensure_available()
        if self.prune_stale:
            orchestrator.prune_stale()
        try:
            orchestrator.create_network()
            orchestrator.start_primary(
                primary_spec(self.settings.primary_image, self.settings.forwarded_env()), deadline
            )
            for spec in self.driver_specs:
                orchestrator.start_driver(spec, deadline)
        except Exception:
            self.failed = True
            raise

    def stop(self) -> None:
        orchestrator = self.orchestrator
        for spec in self.driver_specs:
            if spec.alias in orchestrator.containers:
                orchestrator.cleanup.attempt(
                    f"copy results from {spec.alias}", lambda alias=spec.alias: orchestrator.copy_results(alias)
                )
        if self.failed:
            orchestrator.cleanup.attempt("capture container logs", orchestrator.capture_logs)
        orchestrator.teardown()

    def exec(self, argv: list[str], timeout: float | None = None) -> ExecResult:
        return self.orchestrator.exec(constants.PRIMARY_ALIAS, argv, timeout)


class TestEnvironment:
    """
    A started-or-startable service plus the results directory of one test.

    CREATED -> STARTED -> STOPPED; STOPPED is terminal, including after a
    failed start. Environments made with ``for_test`` share a running backend
    and never stop it.
    """

    __test__ = False

    def __init__(
        self,
        name: str,
        kind: str,
        backend: Backend,
        store: ResultStore,
        settings: HarnessSettings,
        *,
        owns_backend: bool = True,
    ) -> None:
        self.name = name
        self.kind = kind
        self.backend = backend
        self.store = store
        self.settings = settings
        self.owns_backend = owns_backend
        self.state = EnvironmentState.CREATED if owns_backend else EnvironmentState.STARTED
        self.started_at = time.monotonic()
        self._http: HTTPTestClient | None = None

    @property
    def mode(self) -> BackendMode:
        return self.backend.mode

    @property
    def base_url(self) -> str:
        return self.backend.base_url

    @property
    def internal_base_url(self) -> str:
        return self.backend.internal_base_url

    @property
    def port(self) -> Optional[int]:
        return getattr(self.backend, "port", None)

    @property
    def results_dir(self) -> Path:
        return self.store.results_dir

    @property
    def data_dir(self) -> Path:
        return self.store.data_dir

    @property
    def config_path(self) -> Path:
        return self.store.data_dir / constants.CONFIG_FILE_NAME

    def start(self, deadline: Deadline | None = None) -> "TestEnvironment":
        if self.state is not EnvironmentState.CREATED:
            raise LifecycleError(f"Environment {self.name} is {self.state.value}; cannot start")
        try:
            self.backend.start(deadline)
        except BaseException:
            self.state = EnvironmentState.STOPPED
            self.backend.stop()
            raise
        self.state = EnvironmentState.STARTED
        self.store.log("Environment %s started (%s) at %s", self.name, self.mode.value, self.base_url)
        return self

    def stop(self) -> None:
        if self.state is EnvironmentState.STOPPED:
            return
        was_started = self.state is EnvironmentState.STARTED
        self.state = EnvironmentState.STOPPED
        if self._http is not None:
            self._http.close()
            self._http = None
        if was_started and self.owns_backend:
            self.backend.stop()

    def for_test(
        self,
        test_name: str,
        *,
        kind: str | None = None,
        printer: Callable[[str], None] | None = None,
    ) -> "TestEnvironment":
        """A per-test view with its own results directory over this running backend."""
        if self.state is not EnvironmentState.STARTED:
            raise LifecycleError(f"Environment {self.name} is not started")
        kind = kind or self.kind
        if kind not in constants.KINDS:
            raise SetupError(f"Unknown test kind {kind!r}; expected one of {constants.KINDS}")
        store = ResultStore.create(self.settings.resolved_results_root, kind, test_name, printer=printer)
        return TestEnvironment(test_name, kind, self.backend, store, self.settings, owns_backend=False)

    def log(self, message: str, *args) -> None:
        self.store.log(message, *args)

    def http(self) -> HTTPTestClient:
        if self._http is None:
            self._http = HTTPTestClient(self.base_url, self.store, timeout=self.settings.timeouts.http_timeout)
        return self._http

    def protocol(self) -> ProtocolClient:
        return ProtocolClient(self.http())

    def browser(self) -> BrowserCapture:
        return BrowserCapture.launch(self.base_url, self.store, timeout=self.settings.timeouts.browser_timeout)

    def driver(self, alias: str = constants.DRIVER_ALIAS) -> DriverClient:
        if not isinstance(self.backend, ContainerizedBackend):
            raise SetupError("Driver containers require the containerized backend")
        return DriverClient(self.backend.orchestrator, alias)

    def exec(self, argv: list[str], timeout: float | None = None) -> ExecResult:
        return self.backend.exec(argv, timeout)

    def create_test_project(self, name: str) -> Path:
        return create_test_project(self.store.data_dir, name)

    def save_terminal_evidence(self, name: str, title: str, command: str, output: str, exit_code: int) -> bool:
        return save_terminal_evidence(
            self.store, name, title, command, output, exit_code, browser_factory=self.browser
        )

    def finish(
        self,
        passed: bool,
        details: str = "",
        *errors: str,
        duration: float | None = None,
        required_screenshots: Iterable[str] = (),
    ) -> TestSummary:
        if duration is None:
            duration = time.monotonic() - self.started_at
        return self.store.write_summary(
            passed, duration, details, *errors, required_screenshots=required_screenshots
        )


class TestSetup:
    """
    Facade that picks a backend and owns the environment's lifecycle.

    ``ITER_BASE_URL`` selects the external backend; otherwise containers when
    requested (``TEST_DOCKER=1`` or ``mode``); otherwise a local process.
    Usable per test (``with TestSetup(...) as env``) or per suite
    (``start()`` / ``cleanup()``).
    """

    __test__ = False

    def __init__(
        self,
        kind: str,
        name: str,
        *,
        settings: HarnessSettings | None = None,
        mode: BackendMode | None = None,
        allocator: PortAllocator | None = None,
        drivers: Iterable[ContainerSpec] = (),
        with_driver: bool = False,
        orchestrator: ContainerOrchestrator | None = None,
        printer: Callable[[str], None] | None = None,
    ) -> None:
        if kind not in constants.KINDS:
            raise SetupError(f"Unknown test kind {kind!r}; expected one of {constants.KINDS}")
        self.kind = kind
        self.name = name
        self.settings = settings or HarnessSettings()
        self.requested_mode = mode
        self.allocator = allocator
        self.drivers = list(drivers)
        if with_driver and not self.drivers:
            self.drivers.append(driver_spec(self.settings.driver_image))
        self.orchestrator = orchestrator
        self.printer = printer
        self.environment: TestEnvironment | None = None

    def select_mode(self) -> BackendMode:
        if self.settings.base_url:
            return BackendMode.EXTERNAL
        if self.requested_mode is not None:
            return self.requested_mode
        if self.settings.use_docker:
            return BackendMode.CONTAINERIZED
        return BackendMode.LOCAL

    def _backend(self, mode: BackendMode, store: ResultStore) -> Backend:
        if mode is BackendMode.EXTERNAL:
            return ExternalBackend(self.settings, store)
        if mode is BackendMode.CONTAINERIZED:
            return ContainerizedBackend(
                self.settings, store, drivers=self.drivers, orchestrator=self.orchestrator
            )
        return LocalBackend(self.settings, store, allocator=self.allocator)

    def start(self) -> TestEnvironment:
        if self.environment is not None:
            raise LifecycleError(f"TestSetup {self.name} already started")
        mode = self.select_mode()
        store = ResultStore.create(
            self.settings.resolved_results_root, self.kind, self.name, printer=self.printer
        )
        store.log("Starting %s environment for %s/%s", mode.value, self.kind, self.name)
        backend = self._backend(mode, store)
        environment = TestEnvironment(self.name, self.kind, backend, store, self.settings)
        self.environment = environment
        deadline = Deadline(self.settings.timeouts.suite_timeout) if mode is BackendMode.CONTAINERIZED else None
        environment.start(deadline)
        return environment

    def cleanup(self) -> None:
        if self.environment is not None:
            self.environment.stop()

    @property
    def base_url(self) -> str:
        if self.environment is None:
            return ""
        return self.environment.base_url

    def __enter__(self) -> TestEnvironment:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
