# Where: iter_e2e/harness/projects.py
# What: Small source trees for the service to register, index and search.
# Why: Search scenarios need deterministic content with known symbols.
from __future__ import annotations

import re
from pathlib import Path

from iter_e2e.harness import constants
from iter_e2e.harness.containers import ContainerOrchestrator

TEST_PROJECTS_DIR = "test-projects"
FIXTURE_PROJECTS_RELATIVE = Path("tests") / "test-code"

SAMPLE_MAIN_GO = """package main

import "fmt"

// HelloWorld prints a greeting message.
func HelloWorld() {
\tfmt.Println("Hello, World!")
}

// Add adds two numbers together.
func Add(a, b int) int {
\treturn a + b
}

func main() {
\tHelloWorld()
\tfmt.Println(Add(1, 2))
}
"""

SAMPLE_SYMBOLS = ("HelloWorld", "Add")

_MODULE_NAME_RE = re.compile(r"[^A-Za-z0-9._/-]+")


def create_test_project(data_dir: Path, name: str) -> Path:
    """Write a one-file Go module under ``data_dir/test-projects/<name>``."""
    project_dir = data_dir / TEST_PROJECTS_DIR / name
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / "main.go").write_text(SAMPLE_MAIN_GO, encoding="utf-8")
    module = _MODULE_NAME_RE.sub("-", name) or "testproject"
    (project_dir / "go.mod").write_text(f"module {module}\n\ngo 1.21\n", encoding="utf-8")
    return project_dir


def fixture_projects(project_root: Path) -> list[Path]:
    root = project_root / FIXTURE_PROJECTS_RELATIVE
    if not root.is_dir():
        return []
    return sorted(path for path in root.iterdir() if path.is_dir())


def copy_fixture_projects(
    orchestrator: ContainerOrchestrator,
    project_root: Path,
    *,
    container: str = constants.PRIMARY_ALIAS,
    remote_root: str = constants.CONTAINER_PROJECTS_ROOT,
) -> dict[str, str]:
    """Copy ``tests/test-code/*`` into a container; returns name -> remote path."""
    copied: dict[str, str] = {}
    for project in fixture_projects(project_root):
        remote = f"{remote_root}/{project.name}"
        orchestrator.copy_dir(container, project, remote)
        copied[project.name] = remote
    return copied
