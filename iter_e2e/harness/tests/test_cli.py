# Where: iter_e2e/harness/tests/test_cli.py
# What: Unit tests for runner argument parsing and pytest command assembly.
# Why: Suite flags and patterns must map onto the right scenario directories.
from __future__ import annotations

import os
import sys

import pytest

from iter_e2e import run_tests
from iter_e2e.harness.cli import parse_args


def test_defaults():
    args = parse_args([])

    assert args.suite == "all"
    assert args.pattern is None
    assert args.verbose is True
    assert not args.docker
    assert not args.prune


@pytest.mark.parametrize("suite", ["service", "api", "mcp", "ui", "containers"])
def test_suite_flags(suite):
    assert parse_args([f"--{suite}"]).suite == suite


def test_suite_flags_are_exclusive():
    with pytest.raises(SystemExit):
        parse_args(["--api", "--ui"])


def test_pattern_and_flags():
    args = parse_args(["--mcp", "tools", "--docker", "-q", "--fail-fast"])

    assert args.suite == "mcp"
    assert args.pattern == "tools"
    assert args.docker
    assert args.verbose is False
    assert args.fail_fast


def test_build_pytest_command():
    cmd = run_tests.build_pytest_command(parse_args(["--api", "health", "--fail-fast"]))

    assert cmd[:3] == [sys.executable, "-m", "pytest"]
    assert cmd[3] == str(run_tests.SCENARIOS_DIR / "api")
    assert cmd[4:] == ["-k", "health", "-x", "-v"]


def test_build_pytest_command_all_quiet():
    cmd = run_tests.build_pytest_command(parse_args(["-q"]))

    assert cmd[3:] == [str(run_tests.SCENARIOS_DIR), "-q"]


@pytest.mark.parametrize(
    ("suite", "kinds"),
    [("all", None), ("api", ["api"]), ("containers", ["api", "mcp"])],
)
def test_suite_kinds(suite, kinds):
    assert run_tests.suite_kinds(suite) == kinds


def test_apply_args_to_env(monkeypatch, tmp_path):
    for name in ("ITER_BASE_URL", "TEST_DOCKER", "ITER_E2E_RESULTS_ROOT"):
        monkeypatch.setenv(name, "unset")
    args = parse_args(["--docker", "--base-url", "http://svc:19000", "--results-root", str(tmp_path)])

    run_tests.apply_args_to_env(args)

    assert os.environ["ITER_BASE_URL"] == "http://svc:19000"
    assert os.environ["TEST_DOCKER"] == "1"
    assert os.environ["ITER_E2E_RESULTS_ROOT"] == str(tmp_path.resolve())
