# Where: iter_e2e/harness/containers.py
# What: Docker network + primary/driver container lifecycle through the Docker SDK.
# Why: Containerized runs need one owner for every resource they create so teardown is complete.
from __future__ import annotations

import io
import logging
import math
import posixpath
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import docker
import docker.errors

from iter_e2e.harness import constants
from iter_e2e.harness.cleanup import CleanupSink, ignore_missing, prune_stale_resources
from iter_e2e.harness.errors import (
    CommandTimeoutError,
    EnvironmentSkip,
    ReadinessTimeoutError,
    RequestTimeoutError,
    SetupError,
    TransportError,
)
from iter_e2e.harness.readiness import Deadline, poll_until, probe_health
from iter_e2e.harness.results import ResultStore
from iter_e2e.harness.settings import Timeouts

logger = logging.getLogger(__name__)

_EXITED_STATES = {"exited", "dead"}


@dataclass
class ContainerSpec:
    image: str
    alias: str
    environment: dict[str, str] = field(default_factory=dict)
    command: Optional[list[str]] = None
    ports: tuple[int, ...] = ()


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def primary_spec(image: str = constants.PRIMARY_IMAGE, env: dict[str, str] | None = None) -> ContainerSpec:
    return ContainerSpec(
        image=image,
        alias=constants.PRIMARY_ALIAS,
        environment=dict(env or {}),
        ports=(constants.CONTAINER_SERVICE_PORT,),
    )


def driver_spec(
    image: str = constants.DRIVER_IMAGE,
    *,
    alias: str = constants.DRIVER_ALIAS,
    env: dict[str, str] | None = None,
) -> ContainerSpec:
    environment = {
        constants.ENV_BASE_URL: f"http://{constants.PRIMARY_ALIAS}:{constants.CONTAINER_SERVICE_PORT}",
        "HOME": constants.DRIVER_HOME,
        "CHROME_BIN": "/usr/bin/chromium",
        "CHROMEDP_NO_SANDBOX": "true",
    }
    environment.update(env or {})
    return ContainerSpec(
        image=image,
        alias=alias,
        environment=environment,
        command=["tail", "-f", "/dev/null"],
    )


def tar_single_file(name: str, data: bytes, mode: int = 0o644) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mode = mode
        info.mtime = int(time.time())
        archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class ContainerOrchestrator:
    """
    One bridge network, one primary container and any number of drivers.

    Everything created is registered with a CleanupSink as soon as it exists,
    so ``teardown()`` releases partially provisioned topologies too.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        store: ResultStore | None = None,
        timeouts: Timeouts | None = None,
        credentials_file: Path | None = None,
        run_id: str | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.timeouts = timeouts or Timeouts()
        self.credentials_file = credentials_file
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.network = None
        self.containers: dict[str, Any] = {}
        self.primary_alias: str | None = None
        self.host_base_url: str | None = None
        # Suite budget; every exec is clamped to what is left of it.
        self.deadline: Deadline | None = None
        self.cleanup = CleanupSink(log=self._log)

    @property
    def labels(self) -> dict[str, str]:
        return {constants.MANAGED_LABEL: "true", constants.RUN_LABEL: self.run_id}

    @property
    def internal_base_url(self) -> str:
        return f"http://{constants.PRIMARY_ALIAS}:{constants.CONTAINER_SERVICE_PORT}"

    def _log(self, message: str) -> None:
        if self.store is not None:
            self.store.log(message)
        else:
            logger.info(message)

    def _resource_name(self, suffix: str) -> str:
        return f"{constants.NETWORK_PREFIX}-{self.run_id}-{suffix}"

    def ensure_available(self) -> None:
        try:
            if self.client is None:
                self.client = docker.from_env()
            self.client.ping()
        except docker.errors.DockerException as exc:
            raise EnvironmentSkip("Docker daemon is not available", cause=exc)

    def prune_stale(self, label: str = constants.MANAGED_LABEL) -> int:
        removed = prune_stale_resources(self.client, label=label)
        if removed:
            self._log(f"Removed {removed} stale resource(s)")
        return removed

    def create_network(self):
        name = self._resource_name("net")
        try:
            self.network = self.client.networks.create(name, driver="bridge", labels=self.labels)
        except docker.errors.APIError as exc:
            raise SetupError(f"Failed to create network {name}", cause=exc)
        network = self.network
        self.cleanup.push(f"remove network {name}", lambda: ignore_missing(network.remove))
        self._log(f"Created network {name}")
        return self.network

    def _create(self, spec: ContainerSpec):
        if self.network is None:
            self.create_network()
        name = self._resource_name(spec.alias)
        try:
            container = self.client.containers.create(
                spec.image,
                command=spec.command,
                name=name,
                detach=True,
                environment=spec.environment,
                labels=self.labels,
                ports={f"{port}/tcp": None for port in spec.ports},
            )
        except docker.errors.ImageNotFound as exc:
            raise SetupError(f"Image {spec.image} not found; build images first", cause=exc)
        except docker.errors.APIError as exc:
            raise SetupError(f"Failed to create container {name}", cause=exc)
        self.cleanup.push(
            f"remove container {name}", lambda: ignore_missing(lambda: container.remove(force=True))
        )
        try:
            self.network.connect(container, aliases=[spec.alias])
            container.start()
        except docker.errors.APIError as exc:
            raise SetupError(f"Failed to start container {name}", cause=exc)
        self.containers[spec.alias] = container
        self._log(f"Started container {name} ({spec.image}) as '{spec.alias}'")
        return container

    def _check_alive(self, container) -> None:
        container.reload()
        if container.status in _EXITED_STATES:
            tail = container.logs(tail=50).decode("utf-8", errors="replace")
            raise SetupError(f"Container {container.name} exited during startup:\n{tail}")

    def start_primary(self, spec: ContainerSpec, deadline: Deadline | None = None) -> str:
        """Start the service container and wait for /health on its host port."""
        container = self._create(spec)
        self.primary_alias = spec.alias
        port_key = f"{constants.CONTAINER_SERVICE_PORT}/tcp"

        def _probe() -> tuple[bool, str | None]:
            self._check_alive(container)
            bindings = (container.ports or {}).get(port_key) or []
            if not bindings:
                return False, f"{port_key} not published yet"
            base_url = f"http://{constants.LOOPBACK_HOST}:{bindings[0]['HostPort']}"
            ok, error = probe_health(base_url, timeout=self.timeouts.probe_timeout)
            if ok:
                self.host_base_url = base_url
            return ok, error

        try:
            elapsed = poll_until(
                _probe,
                target=f"container {spec.alias}",
                timeout=self.timeouts.container_startup_timeout,
                interval=max(self.timeouts.probe_interval, 0.5),
                deadline=deadline,
            )
        except ReadinessTimeoutError:
            self.capture_logs()
            raise
        self._log(f"Primary '{spec.alias}' healthy at {self.host_base_url} after {elapsed:.1f}s")
        return self.host_base_url

    def start_driver(self, spec: ContainerSpec, deadline: Deadline | None = None):
        container = self._create(spec)

        def _probe() -> tuple[bool, str | None]:
            self._check_alive(container)
            exit_code, output = container.exec_run(["echo", "ready"])
            if exit_code == 0:
                return True, None
            return False, output.decode("utf-8", errors="replace")

        poll_until(
            _probe,
            target=f"container {spec.alias}",
            timeout=self.timeouts.driver_startup_timeout,
            interval=max(self.timeouts.probe_interval, 0.5),
            deadline=deadline,
        )
        self._log(f"Driver '{spec.alias}' ready")
        return container

    def _container(self, name: str):
        try:
            return self.containers[name]
        except KeyError:
            raise SetupError(f"Container '{name}' is not started") from None

    def exec(self, name: str, argv: list[str], timeout: float | None = None, *, user: str = "") -> ExecResult:
        container = self._container(name)
        limit = self.timeouts.exec_timeout if timeout is None else timeout
        if self.deadline is not None:
            if self.deadline.expired:
                raise RequestTimeoutError(
                    f"Suite deadline of {self.deadline.seconds}s expired before exec in {name}: {' '.join(argv)}"
                )
            limit = self.deadline.bound(limit)
        wrapped = ["timeout", str(max(1, math.ceil(limit))), *argv]
        self._log(f"[{name}] $ {' '.join(argv)}")
        try:
            exit_code, output = container.exec_run(wrapped, user=user)
        except docker.errors.APIError as exc:
            raise TransportError(f"exec in {name} failed", cause=exc)
        text = (output or b"").decode("utf-8", errors="replace")
        if exit_code == constants.EXEC_TIMEOUT_EXIT_CODE:
            raise CommandTimeoutError(name, argv, limit)
        self._log(f"[{name}] exit {exit_code}")
        return ExecResult(exit_code=exit_code, output=text)

    def exec_bash(self, name: str, script: str, timeout: float | None = None, *, user: str = "") -> ExecResult:
        return self.exec(name, ["bash", "-c", script], timeout, user=user)

    def copy_file(self, name: str, data: bytes, remote_path: str, mode: int = 0o644) -> None:
        container = self._container(name)
        directory, filename = posixpath.split(remote_path)
        self.exec(name, ["mkdir", "-p", directory])
        try:
            ok = container.put_archive(directory, tar_single_file(filename, data, mode))
        except docker.errors.APIError as exc:
            raise TransportError(f"Failed to copy {remote_path} into {name}", cause=exc)
        if not ok:
            raise TransportError(f"Failed to copy {remote_path} into {name}")

    def copy_dir(self, name: str, local: Path, remote: str) -> None:
        container = self._container(name)
        parent, leaf = posixpath.split(remote.rstrip("/"))
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            archive.add(str(local), arcname=leaf)
        self.exec(name, ["mkdir", "-p", parent])
        try:
            container.put_archive(parent, buffer.getvalue())
        except docker.errors.APIError as exc:
            raise TransportError(f"Failed to copy {local} into {name}:{remote}", cause=exc)

    def require_credentials(self) -> None:
        if self.credentials_file is None or not self.credentials_file.is_file():
            raise EnvironmentSkip("No agent credentials found; skipping")

    def copy_credentials(self, name: str = constants.DRIVER_ALIAS) -> bool:
        if self.credentials_file is None or not self.credentials_file.is_file():
            self._log("No agent credentials found")
            return False
        self.copy_file(name, self.credentials_file.read_bytes(), constants.DRIVER_CREDENTIALS_PATH)
        credentials_dir = posixpath.dirname(constants.DRIVER_CREDENTIALS_PATH)
        self.exec(name, ["chown", "-R", f"{constants.DRIVER_USER}:{constants.DRIVER_USER}", credentials_dir])
        self._log("Credentials copied")
        return True

    def copy_results(self, name: str = constants.DRIVER_ALIAS, remote_path: str = constants.DRIVER_RESULTS_PATH) -> Path | None:
        """Pull ``remote_path`` out of a driver as a tar archive. Best effort."""
        container = self.containers.get(name)
        if container is None or self.store is None:
            return None
        try:
            stream, _ = container.get_archive(remote_path)
            data = b"".join(stream)
        except docker.errors.NotFound:
            return None
        except docker.errors.APIError as exc:
            self._log(f"Could not copy results from {name}: {exc}")
            return None
        return self.store.save("container-results.tar", data)

    def capture_logs(self) -> list[Path]:
        saved: list[Path] = []
        if self.store is None:
            return saved
        for alias, container in self.containers.items():
            try:
                logs = container.logs()
            except docker.errors.APIError as exc:
                self._log(f"Could not read logs for {alias}: {exc}")
                continue
            saved.append(self.store.save(f"{alias}-container.log", logs))
        return saved

    def teardown(self):
        failures = self.cleanup.run()
        self.containers.clear()
        self.network = None
        return failures
