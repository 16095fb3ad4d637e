# Where: iter_e2e/scenarios/support.py
# What: Glue between pytest and the harness: suite startup, skips and per-test summaries.
# Why: Every suite needs the same skip rules and must always leave a summary behind.
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Union

import pytest

from iter_e2e.harness import constants
from iter_e2e.harness.environment import BackendMode, ContainerizedBackend, TestEnvironment, TestSetup
from iter_e2e.harness.errors import EnvironmentSkip
from iter_e2e.harness.process import find_binary
from iter_e2e.harness.readiness import wait_for
from iter_e2e.harness.results import ResultStore, TestSummary
from iter_e2e.harness.settings import HarnessSettings

INDEX_WAIT_SECONDS = 60.0


@dataclass(frozen=True)
class SuiteUnavailable:
    """
    Stands in for a suite environment that could not be started.

    Each test of the suite still gets a summary: skipped when the host lacks
    a capability, failed when startup itself broke.
    """

    kind: str
    settings: HarnessSettings
    reason: str
    skipped: bool = True

    def record(self, item) -> TestSummary:
        kind = marked_kind(item) or self.kind
        store = ResultStore.create(self.settings.resolved_results_root, kind, item.name)
        store.log("Suite unavailable: %s", self.reason)
        if self.skipped:
            return store.write_summary(True, 0.0, f"skipped: {self.reason}")
        return store.write_summary(False, 0.0, "setup failed", self.reason)

    def finish(self, item) -> None:
        """Record the summary, then end the test as skipped or failed."""
        self.record(item)
        if self.skipped:
            pytest.skip(self.reason)
        pytest.fail(self.reason, pytrace=False)


SuiteEnv = Union[TestEnvironment, SuiteUnavailable]


def marked_kind(item) -> str | None:
    marker = item.get_closest_marker("kind")
    return marker.args[0] if marker is not None else None


def unrunnable_reason(setup: TestSetup) -> str | None:
    """Why the selected backend cannot possibly start on this host, or None."""
    settings = setup.settings
    if setup.select_mode() is BackendMode.LOCAL and find_binary(settings.project_root, settings.service_binary) is None:
        return f"{constants.SERVICE_BINARY} binary not found; run with --build or set {constants.ENV_SERVICE_BIN}"
    return None


@contextmanager
def running_suite(kind: str, name: str, **kwargs) -> Iterator[SuiteEnv]:
    """
    Start one environment for a whole suite.

    Skips and startup failures are not raised here; a ``SuiteUnavailable``
    is yielded instead so every test can write its own summary.
    """
    setup = TestSetup(kind, name, **kwargs)
    unavailable: SuiteUnavailable | None = None
    reason = unrunnable_reason(setup)
    if reason is not None:
        unavailable = SuiteUnavailable(kind, setup.settings, reason)
    else:
        try:
            env = setup.start()
        except EnvironmentSkip as exc:
            unavailable = SuiteUnavailable(kind, setup.settings, str(exc))
        except Exception as exc:
            unavailable = SuiteUnavailable(
                kind, setup.settings, f"{name} failed to start: {type(exc).__name__}: {exc}", skipped=False
            )
    if unavailable is not None:
        yield unavailable
        return
    try:
        yield env
    finally:
        setup.cleanup()


def _outcome(item) -> tuple[bool, str, list[str]]:
    reports = [getattr(item, f"rep_{phase}", None) for phase in ("setup", "call")]
    for report in reports:
        if report is None:
            continue
        if report.failed:
            return False, f"{report.when} failed", [report.longreprtext[-2000:]]
        if report.skipped:
            reason = report.longrepr[2] if isinstance(report.longrepr, tuple) else ""
            return True, f"skipped: {reason}", []
    return True, "", []


def write_outcome(item, env: TestEnvironment, started: float) -> TestSummary:
    """Write the test's summary; a green test whose summary failed is failed here."""
    passed, details, errors = _outcome(item)
    required: tuple[str, ...] = ()
    marker = item.get_closest_marker("screenshots")
    if marker is not None and not details.startswith("skipped"):
        required = tuple(marker.args)
    summary = env.finish(passed, details, *errors, duration=time.monotonic() - started, required_screenshots=required)
    call = getattr(item, "rep_call", None)
    if passed and not summary.passed and call is not None and call.passed:
        pytest.fail("; ".join(summary.errors), pytrace=False)
    return summary


@contextmanager
def per_test(item, suite_env: SuiteEnv) -> Iterator[TestEnvironment]:
    if isinstance(suite_env, SuiteUnavailable):
        suite_env.finish(item)
    env = suite_env.for_test(item.name, kind=marked_kind(item))
    started = time.monotonic()
    try:
        yield env
    finally:
        env.stop()
        write_outcome(item, env, started)


def open_browser(env: TestEnvironment):
    try:
        return env.browser()
    except EnvironmentSkip as exc:
        pytest.skip(str(exc))


def service_project_path(env: TestEnvironment, name: str) -> str:
    """Create a sample project and return the path as the service sees it."""
    local = env.create_test_project(name)
    if isinstance(env.backend, ContainerizedBackend):
        remote = f"{constants.CONTAINER_PROJECTS_ROOT}/{name}"
        env.backend.orchestrator.copy_dir(constants.PRIMARY_ALIAS, local, remote)
        return remote
    return str(Path(local).resolve())


def wait_for_results(search: Callable[[], dict], timeout: float = INDEX_WAIT_SECONDS) -> dict:
    """Repeat ``search`` until it returns non-empty ``results`` (indexing is asynchronous)."""
    last: dict = {}

    def _check() -> bool:
        nonlocal last
        last = search()
        return bool(last.get("results"))

    wait_for(timeout, _check, interval=1.0)
    return last
