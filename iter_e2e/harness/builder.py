# Where: iter_e2e/harness/builder.py
# What: Build the service binary and the container images used by the harness.
# Why: Builds stream into a log file and run at most once per harness process.
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable

from iter_e2e.harness import constants
from iter_e2e.harness.errors import SetupError
from iter_e2e.harness.logs import LogSink, run_and_stream

logger = logging.getLogger(__name__)

BUILD_LOG_NAME = "build.log"
IMAGE_DOCKERFILES: tuple[tuple[str, str], ...] = (
    (constants.PRIMARY_IMAGE, constants.PRIMARY_DOCKERFILE),
    (constants.DRIVER_IMAGE, constants.DRIVER_DOCKERFILE),
)

_built_images: set[str] = set()
_build_lock = threading.Lock()


def read_version(project_root: Path) -> str:
    try:
        version = (project_root / ".version").read_text(encoding="utf-8").strip()
    except OSError:
        return "dev"
    return version or "dev"


def binary_output_path(project_root: Path) -> Path:
    return project_root / "tests" / "bin" / constants.SERVICE_BINARY


def build_binary_command(project_root: Path, output: Path) -> list[str]:
    return [
        "go",
        "build",
        "-ldflags",
        f"-X main.version={read_version(project_root)}",
        "-o",
        str(output),
        f"./cmd/{constants.SERVICE_BINARY}",
    ]


def build_service_binary(
    project_root: Path,
    log_dir: Path,
    *,
    printer: Callable[[str], None] | None = None,
) -> Path:
    """Compile the service into ``tests/bin`` and return the binary path."""
    output = binary_output_path(project_root)
    output.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_binary_command(project_root, output)
    with LogSink(log_dir / BUILD_LOG_NAME).open("a") as log:
        rc = run_and_stream(cmd, cwd=project_root, env=os.environ.copy(), log=log, printer=printer)
        if rc != 0:
            raise SetupError(f"{constants.SERVICE_NAME} build failed (exit code {rc})")
        log.write_line(f"Built: {output}")
    logger.info("Built %s", output)
    return output


def build_image_command(project_root: Path, tag: str, dockerfile: str) -> list[str]:
    return ["docker", "build", "-t", tag, "-f", str(project_root / dockerfile), str(project_root)]


def build_images(
    project_root: Path,
    log_dir: Path,
    *,
    images: tuple[tuple[str, str], ...] = IMAGE_DOCKERFILES,
    force: bool = False,
    printer: Callable[[str], None] | None = None,
) -> list[str]:
    """
    Build each ``(tag, dockerfile)`` image once per process.

    Returns the tags built by this call; ``force`` rebuilds everything.
    """
    built: list[str] = []
    with _build_lock:
        if force:
            _built_images.clear()
        with LogSink(log_dir / BUILD_LOG_NAME).open("a") as log:
            for tag, dockerfile in images:
                if tag in _built_images:
                    continue
                cmd = build_image_command(project_root, tag, dockerfile)
                rc = run_and_stream(cmd, cwd=project_root, env=os.environ.copy(), log=log, printer=printer)
                if rc != 0:
                    raise SetupError(f"Image build failed for {tag} (exit code {rc})")
                _built_images.add(tag)
                built.append(tag)
    if built:
        logger.info("Built images: %s", ", ".join(built))
    return built


def force_build_images(project_root: Path, log_dir: Path, **kwargs) -> list[str]:
    return build_images(project_root, log_dir, force=True, **kwargs)
