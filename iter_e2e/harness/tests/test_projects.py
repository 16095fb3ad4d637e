# Where: iter_e2e/harness/tests/test_projects.py
# What: Unit tests for generated and fixture source projects.
# Why: Search scenarios rely on known symbols existing on disk.
from __future__ import annotations

from unittest.mock import MagicMock

from iter_e2e.harness.projects import (
    SAMPLE_SYMBOLS,
    copy_fixture_projects,
    create_test_project,
    fixture_projects,
)


def test_create_test_project(tmp_path):
    project = create_test_project(tmp_path, "my project")

    assert project == tmp_path / "test-projects" / "my project"
    source = (project / "main.go").read_text()
    assert all(f"func {symbol}(" in source for symbol in SAMPLE_SYMBOLS)
    assert (project / "go.mod").read_text() == "module my-project\n\ngo 1.21\n"


def test_fixture_projects(tmp_path):
    assert fixture_projects(tmp_path) == []

    root = tmp_path / "tests" / "test-code"
    (root / "beta").mkdir(parents=True)
    (root / "alpha").mkdir()
    (root / "README.md").write_text("not a project")

    assert [path.name for path in fixture_projects(tmp_path)] == ["alpha", "beta"]


def test_copy_fixture_projects(tmp_path):
    (tmp_path / "tests" / "test-code" / "alpha").mkdir(parents=True)
    orchestrator = MagicMock()

    copied = copy_fixture_projects(orchestrator, tmp_path)

    assert copied == {"alpha": "/data/projects/alpha"}
    orchestrator.copy_dir.assert_called_once_with(
        "iter", tmp_path / "tests" / "test-code" / "alpha", "/data/projects/alpha"
    )
