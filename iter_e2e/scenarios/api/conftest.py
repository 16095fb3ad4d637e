import pytest

from iter_e2e.harness import constants
from iter_e2e.scenarios.support import running_suite


@pytest.fixture(scope="module")
def suite_env():
    with running_suite(constants.KIND_API, "api-suite") as env:
        yield env
