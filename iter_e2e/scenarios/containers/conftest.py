import pytest

from iter_e2e.harness import constants
from iter_e2e.harness.environment import BackendMode
from iter_e2e.harness.settings import HarnessSettings
from iter_e2e.scenarios.support import SuiteUnavailable, running_suite


@pytest.fixture(scope="module")
def suite_env():
    settings = HarnessSettings()
    if settings.base_url:
        yield SuiteUnavailable(
            constants.KIND_API,
            settings,
            f"{constants.ENV_BASE_URL} is set; container topology scenarios need Docker",
        )
        return
    with running_suite(
        constants.KIND_API,
        "containers-suite",
        settings=settings,
        mode=BackendMode.CONTAINERIZED,
        with_driver=True,
    ) as env:
        yield env


@pytest.fixture
def driver(env):
    return env.driver()
