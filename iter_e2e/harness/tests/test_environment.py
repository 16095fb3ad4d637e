# Where: iter_e2e/harness/tests/test_environment.py
# What: Unit tests for backend selection, environment lifecycle and the TestSetup facade.
# Why: Tests ask for a running service; the facade must pick and release the right backend.
from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock

import pytest

from iter_e2e.harness.cleanup import CleanupSink
from iter_e2e.harness.containers import driver_spec
from iter_e2e.harness.environment import (
    BackendMode,
    ContainerizedBackend,
    EnvironmentState,
    LocalBackend,
    TestSetup,
    run_local,
)
from iter_e2e.harness.errors import CommandTimeoutError, LifecycleError, ReadinessTimeoutError, SetupError
from iter_e2e.harness.ports import PortAllocator
from iter_e2e.harness.readiness import probe_health
from iter_e2e.harness.settings import HarnessSettings, Timeouts


def _settings(tmp_path, **overrides) -> HarnessSettings:
    values = {
        "project_root": tmp_path,
        "results_root": tmp_path / "results",
        "base_url": None,
        "use_docker": False,
        "api_credential": None,
        "service_binary": None,
    }
    values.update(overrides)
    return HarnessSettings(**values)


def _mock_orchestrator(host_base_url: str = "http://127.0.0.1:32768") -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.host_base_url = host_base_url
    orchestrator.internal_base_url = "http://iter:19000"
    orchestrator.cleanup = CleanupSink()
    orchestrator.containers = {}
    return orchestrator


@pytest.mark.parametrize(
    ("overrides", "mode", "expected"),
    [
        ({}, None, BackendMode.LOCAL),
        ({"use_docker": True}, None, BackendMode.CONTAINERIZED),
        ({"use_docker": True}, BackendMode.LOCAL, BackendMode.LOCAL),
        ({"base_url": "http://svc:1"}, BackendMode.CONTAINERIZED, BackendMode.EXTERNAL),
        ({"base_url": "http://svc:1", "use_docker": True}, None, BackendMode.EXTERNAL),
    ],
)
def test_select_mode(tmp_path, overrides, mode, expected):
    setup = TestSetup("api", "select", settings=_settings(tmp_path, **overrides), mode=mode)

    assert setup.select_mode() is expected


def test_unknown_kind(tmp_path):
    with pytest.raises(SetupError):
        TestSetup("perf", "x", settings=_settings(tmp_path))


def test_with_driver_adds_default_driver(tmp_path):
    setup = TestSetup("api", "x", settings=_settings(tmp_path), with_driver=True)

    assert [spec.alias for spec in setup.drivers] == ["claude"]


def test_external_backend(tmp_path, fake_service):
    settings = _settings(tmp_path, base_url=fake_service)

    with TestSetup("mcp", "external", settings=settings) as env:
        assert env.mode is BackendMode.EXTERNAL
        assert env.base_url == fake_service
        assert env.internal_base_url == fake_service
        assert env.port is None
        assert env.http().get("/health").ok
        assert "search" in env.protocol().tool_names()
        assert env.results_dir == tmp_path / "results" / "mcp" / "external"

    assert env.state is EnvironmentState.STOPPED
    assert "Using external service" in env.store.log_path.read_text()


def test_external_backend_unhealthy(tmp_path, unused_port):
    settings = _settings(
        tmp_path,
        base_url=f"http://127.0.0.1:{unused_port}",
        timeouts=Timeouts(external_readiness_timeout=0.3, probe_interval=0.05, probe_timeout=0.2),
    )
    setup = TestSetup("api", "unhealthy", settings=settings)

    with pytest.raises(ReadinessTimeoutError):
        setup.start()

    assert setup.environment.state is EnvironmentState.STOPPED
    with pytest.raises(LifecycleError):
        setup.start()


def test_local_backend_lifecycle(tmp_path, fake_service_binary, unused_port):
    settings = _settings(
        tmp_path,
        service_binary=fake_service_binary,
        api_credential="secret",
        timeouts=Timeouts(readiness_timeout=10.0, shutdown_grace=3.0),
    )
    setup = TestSetup(
        "service", "local", settings=settings, allocator=PortAllocator(base=unused_port - 1)
    )

    env = setup.start()
    try:
        assert env.mode is BackendMode.LOCAL
        assert env.port == unused_port
        assert env.base_url == f"http://127.0.0.1:{unused_port}"
        assert env.config_path.is_file()
        assert env.http().get("/health").json() == {"status": "ok"}
        env_json = json.loads((env.data_dir / "env.json").read_text())
        assert env_json["GOOGLE_GEMINI_API_KEY"] == "secret"
        with pytest.raises(SetupError):
            env.driver()
    finally:
        setup.cleanup()

    assert not probe_health(env.base_url, timeout=0.5)[0]
    assert (env.results_dir / "service.log").is_file()
    setup.cleanup()


def test_local_backend_uses_configured_port_base(tmp_path, store, unused_port):
    settings = _settings(tmp_path, port_base=unused_port - 1)

    backend = LocalBackend(settings, store)

    assert backend.port == unused_port
    assert backend.base_url == f"http://127.0.0.1:{unused_port}"


def test_local_backend_without_binary(tmp_path):
    settings = _settings(tmp_path, service_binary=tmp_path / "missing")

    with pytest.raises(SetupError, match="binary not found"):
        TestSetup("api", "nobinary", settings=settings).start()


def test_for_test_shares_backend(tmp_path, fake_service):
    setup = TestSetup("api", "suite", settings=_settings(tmp_path, base_url=fake_service))
    env = setup.start()

    child = env.for_test("child-test")
    assert child.state is EnvironmentState.STARTED
    assert child.base_url == env.base_url
    assert child.results_dir == tmp_path / "results" / "api" / "child-test"
    project = child.create_test_project("demo")
    assert (project / "main.go").is_file()
    summary = child.finish(True, "ok", duration=1.5)
    assert summary.passed
    assert summary.duration == "1.500s"
    assert (child.results_dir / "summary.json").is_file()

    child.stop()
    assert env.state is EnvironmentState.STARTED
    setup.cleanup()
    assert env.state is EnvironmentState.STOPPED
    with pytest.raises(LifecycleError):
        env.for_test("late")


def test_containerized_backend(tmp_path):
    orchestrator = _mock_orchestrator()
    orchestrator.start_driver.side_effect = lambda spec, deadline: orchestrator.containers.update(
        {spec.alias: MagicMock()}
    )
    setup = TestSetup(
        "api",
        "containers",
        settings=_settings(tmp_path, api_credential="k"),
        mode=BackendMode.CONTAINERIZED,
        with_driver=True,
        orchestrator=orchestrator,
    )

    env = setup.start()
    assert env.base_url == "http://127.0.0.1:32768"
    assert env.internal_base_url == "http://iter:19000"
    assert env.driver().base_url == "http://iter:19000"
    primary = orchestrator.start_primary.call_args.args[0]
    assert primary.alias == "iter"
    assert primary.environment == {"GOOGLE_GEMINI_API_KEY": "k"}
    deadline = orchestrator.start_primary.call_args.args[1]
    assert orchestrator.deadline is deadline
    assert deadline.seconds == setup.settings.timeouts.suite_timeout
    orchestrator.prune_stale.assert_not_called()

    setup.cleanup()

    orchestrator.copy_results.assert_called_once_with("claude")
    orchestrator.capture_logs.assert_not_called()
    orchestrator.teardown.assert_called_once()


def test_containerized_backend_failed_start(tmp_path):
    orchestrator = _mock_orchestrator()
    orchestrator.start_primary.side_effect = SetupError("primary exited")
    backend = ContainerizedBackend(
        _settings(tmp_path), MagicMock(), drivers=[driver_spec()], orchestrator=orchestrator, prune_stale=True
    )

    with pytest.raises(SetupError):
        backend.start()
    backend.stop()

    orchestrator.prune_stale.assert_called_once()
    orchestrator.start_driver.assert_not_called()
    orchestrator.capture_logs.assert_called_once()
    orchestrator.teardown.assert_called_once()


def test_containerized_base_url_before_start(tmp_path):
    backend = ContainerizedBackend(_settings(tmp_path), MagicMock(), orchestrator=_mock_orchestrator(None))

    with pytest.raises(LifecycleError):
        backend.base_url


def test_run_local(tmp_path):
    result = run_local([sys.executable, "-c", "print('hi')"], 10, cwd=tmp_path)
    assert result.ok
    assert result.output == "hi\n"

    assert run_local([str(tmp_path / "missing")], 5).exit_code == 127

    with pytest.raises(CommandTimeoutError):
        run_local([sys.executable, "-c", "import time; time.sleep(5)"], 0.5)


def test_for_test_kind_override(tmp_path, fake_service):
    setup = TestSetup("api", "suite", settings=_settings(tmp_path, base_url=fake_service))
    env = setup.start()
    try:
        child = env.for_test("tools", kind="mcp")
        assert child.kind == "mcp"
        assert child.results_dir == tmp_path / "results" / "mcp" / "tools"
        with pytest.raises(SetupError):
            env.for_test("x", kind="perf")
    finally:
        setup.cleanup()
