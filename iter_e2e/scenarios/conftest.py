"""
Shared fixtures for the iter-service scenario suites.

Each suite directory provides a module-scoped ``suite_env``; the ``env``
fixture below turns it into a per-test environment with its own results
directory and always writes that test's summary.
"""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from iter_e2e.harness.logs import setup_logging
from iter_e2e.scenarios.support import per_test

# Load .env.test (base/defaults only; the real environment wins).
env_file = Path(__file__).parent / ".env.test"
if env_file.exists():
    load_dotenv(env_file, override=False)

setup_logging()


def pytest_configure(config):
    config.addinivalue_line("markers", "screenshots(*names): PNGs the test must leave behind")
    config.addinivalue_line("markers", "kind(name): results kind for this test")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    report = outcome.get_result()
    setattr(item, f"rep_{report.when}", report)


@pytest.fixture
def env(request, suite_env):
    """Per-test view over the suite's running service."""
    with per_test(request.node, suite_env) as test_env:
        yield test_env


@pytest.fixture
def http(env):
    return env.http()
