"""
Per-test results directories and summaries.

Layout: ``<results_root>/<kind>/<test_name>/`` holding ``data/``, ``test.log``,
named artifacts, ``summary.json`` and ``SUMMARY.md``. Each run starts from an
empty directory; a rerun of the same test replaces the previous one.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar, Iterable

from pydantic import BaseModel, ConfigDict

from iter_e2e.harness import constants
from iter_e2e.harness.errors import ArtifactError, LifecycleError, SetupError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("-", value.strip()).strip("-.")
    return cleaned or "default"


def format_duration(seconds: float) -> str:
    if seconds >= 60:
        minutes, rest = divmod(seconds, 60)
        return f"{int(minutes)}m{rest:.3f}s"
    if seconds >= 1:
        return f"{seconds:.3f}s"
    return f"{seconds * 1000:.1f}ms"


class TestSummary(BaseModel):
    """Structured outcome of one test, written once at completion."""

    __test__: ClassVar[bool] = False
    model_config = ConfigDict(frozen=True)

    test_name: str
    kind: str
    passed: bool
    duration: str
    duration_seconds: float
    timestamp: str
    details: str = ""
    errors: tuple[str, ...] = ()
    screenshots: tuple[str, ...] = ()
    logs: tuple[str, ...] = ()

    def to_markdown(self) -> str:
        def _bullets(items: tuple[str, ...], empty: str) -> list[str]:
            return [f"- {item}" for item in items] if items else [empty]

        lines = [
            f"# Test: {self.test_name}",
            "",
            f"**Result:** {'PASS' if self.passed else 'FAIL'}",
            f"**Duration:** {self.duration}",
            f"**Timestamp:** {self.timestamp}",
            "",
            "## Screenshots",
            *_bullets(self.screenshots, "- None captured"),
            "",
            "## Logs",
            *_bullets(self.logs, "- None captured"),
            "",
            "## Details",
            self.details,
            "",
            "## Errors",
            *_bullets(self.errors, "None"),
        ]
        return "\n".join(lines) + "\n"


class ResultStore:
    """Owns one results directory and everything written into it."""

    def __init__(
        self,
        results_dir: Path,
        *,
        test_name: str,
        kind: str,
        printer: Callable[[str], None] | None = None,
    ) -> None:
        self.results_dir = results_dir
        self.test_name = test_name
        self.kind = kind
        self.printer = printer
        self.artifact_errors: list[str] = []
        self.summary: TestSummary | None = None
        self._log_lock = threading.Lock()

    @classmethod
    def create(
        cls,
        results_root: Path,
        kind: str,
        test_name: str,
        *,
        printer: Callable[[str], None] | None = None,
    ) -> "ResultStore":
        """Purge and recreate ``results_root/kind/test_name`` with its data dir."""
        results_dir = results_root / safe_name(kind) / safe_name(test_name)
        try:
            if results_dir.exists():
                shutil.rmtree(results_dir)
            (results_dir / constants.DATA_DIR_NAME).mkdir(parents=True)
        except OSError as exc:
            raise SetupError(f"Failed to create results directory {results_dir}", cause=exc)
        return cls(results_dir, test_name=test_name, kind=kind, printer=printer)

    @property
    def data_dir(self) -> Path:
        return self.results_dir / constants.DATA_DIR_NAME

    @property
    def log_path(self) -> Path:
        return self.results_dir / constants.TEST_LOG_NAME

    def path(self, name: str) -> Path:
        return self.results_dir / name

    def log(self, message: str, *args: Any) -> None:
        """Append a timestamped line to test.log and forward it to the reporter."""
        if args:
            message = message % args
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        line = f"[{stamp}] {message}"
        try:
            with self._log_lock, self.log_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.debug("test.log write failed for %s: %s", self.test_name, exc)
        logger.info("[%s] %s", self.test_name, message)
        if self.printer:
            self.printer(line)

    def save(self, name: str, data: bytes) -> Path:
        path = self.path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            error = f"Failed to save {name}: {exc}"
            self.artifact_errors.append(error)
            self.log(error)
            raise ArtifactError(f"Failed to save {name}", cause=exc)
        return path

    def save_text(self, name: str, text: str) -> Path:
        return self.save(name, text.encode("utf-8"))

    def save_json(self, name: str, value: Any) -> Path:
        if isinstance(value, BaseModel):
            payload = value.model_dump_json(indent=2)
        else:
            payload = json.dumps(value, indent=2, ensure_ascii=False, default=str)
        return self.save_text(name, payload)

    def _scan(self, suffix: str) -> tuple[str, ...]:
        if not self.results_dir.is_dir():
            return ()
        return tuple(
            sorted(
                entry.name
                for entry in self.results_dir.iterdir()
                if entry.is_file() and entry.name.endswith(suffix)
            )
        )

    def collect_screenshots(self) -> tuple[str, ...]:
        return self._scan(".png")

    def collect_logs(self) -> tuple[str, ...]:
        return self._scan(".log")

    def missing_screenshots(self, required: Iterable[str]) -> list[str]:
        return [name for name in required if not self.path(f"{name}.png").is_file()]

    def write_summary(
        self,
        passed: bool,
        duration: float,
        details: str,
        *errors: str,
        required_screenshots: Iterable[str] = (),
    ) -> TestSummary:
        """
        Scan the directory and write summary.json plus SUMMARY.md.

        Must be the last artifact-producing call of a test. Missing required
        screenshots turn the run into a failure.
        """
        if self.summary is not None:
            raise LifecycleError(f"Summary already written for {self.test_name}")

        all_errors = list(errors)
        missing = self.missing_screenshots(required_screenshots)
        if missing:
            passed = False
            all_errors.append(f"Missing required screenshots: {missing}")
        all_errors.extend(self.artifact_errors)

        summary = TestSummary(
            test_name=self.test_name,
            kind=self.kind,
            passed=passed,
            duration=format_duration(duration),
            duration_seconds=round(duration, 3),
            timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            details=details,
            errors=tuple(all_errors),
            screenshots=self.collect_screenshots(),
            logs=self.collect_logs(),
        )
        try:
            self.path(constants.SUMMARY_JSON_NAME).write_text(
                summary.model_dump_json(indent=2), encoding="utf-8"
            )
            self.path(constants.SUMMARY_MD_NAME).write_text(summary.to_markdown(), encoding="utf-8")
        except OSError as exc:
            raise ArtifactError(f"Failed to write summary for {self.test_name}", cause=exc)
        self.summary = summary
        return summary
