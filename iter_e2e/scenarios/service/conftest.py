import time

import pytest

from iter_e2e.harness import constants
from iter_e2e.harness.environment import BackendMode, TestSetup
from iter_e2e.scenarios.support import SuiteUnavailable, running_suite, unrunnable_reason, write_outcome


@pytest.fixture(scope="module")
def suite_env():
    with running_suite(constants.KIND_SERVICE, "service-suite") as env:
        yield env


@pytest.fixture
def service_setup(request):
    """An unstarted, locally spawned service owned by one test."""
    setup = TestSetup(constants.KIND_SERVICE, request.node.name)
    reason = unrunnable_reason(setup)
    if reason is None and setup.select_mode() is not BackendMode.LOCAL:
        reason = "start/stop scenarios need a locally spawned service"
    if reason is not None:
        SuiteUnavailable(constants.KIND_SERVICE, setup.settings, reason).finish(request.node)
    started = time.monotonic()
    yield setup
    setup.cleanup()
    if setup.environment is not None:
        write_outcome(request.node, setup.environment, started)
