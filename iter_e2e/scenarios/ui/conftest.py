import pytest

from iter_e2e.harness import constants
from iter_e2e.scenarios.support import open_browser, running_suite


@pytest.fixture(scope="module")
def suite_env():
    with running_suite(constants.KIND_UI, "ui-suite") as env:
        yield env


@pytest.fixture
def browser(env):
    with open_browser(env) as capture:
        yield capture
