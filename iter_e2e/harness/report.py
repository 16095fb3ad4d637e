# Where: iter_e2e/harness/report.py
# What: Aggregate per-test summaries under a results root into one run report.
# Why: The CLI prints failures from artifacts, not from test-runner output parsing.
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from iter_e2e.harness import constants
from iter_e2e.harness.results import TestSummary

logger = logging.getLogger(__name__)

RUN_SUMMARY_NAME = "run-summary.json"


@dataclass
class RunReport:
    summaries: list[TestSummary] = field(default_factory=list)
    unreadable: list[Path] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.summaries)

    @property
    def passed(self) -> int:
        return sum(1 for summary in self.summaries if summary.passed)

    @property
    def failed(self) -> list[TestSummary]:
        return [summary for summary in self.summaries if not summary.passed]


def collect_summaries(results_root: Path, kinds: Iterable[str] | None = None) -> RunReport:
    report = RunReport()
    if not results_root.is_dir():
        return report
    wanted = set(kinds) if kinds else None
    for path in sorted(results_root.glob(f"*/*/{constants.SUMMARY_JSON_NAME}")):
        if wanted is not None and path.parent.parent.name not in wanted:
            continue
        try:
            report.summaries.append(TestSummary.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable summary %s: %s", path, exc)
            report.unreadable.append(path)
    return report


def render_report(report: RunReport, *, results_root: Path | None = None) -> str:
    lines = [
        "=" * 40,
        f"Total: {report.total}",
        f"Passed: {report.passed}",
        f"Failed: {len(report.failed)}",
    ]
    if results_root is not None:
        lines.append(f"Results: {results_root}")
    lines.append("=" * 40)
    for summary in report.failed:
        lines.append(f"FAIL {summary.kind}/{summary.test_name} ({summary.duration})")
        lines.extend(f"    - {error}" for error in summary.errors)
    for path in report.unreadable:
        lines.append(f"UNREADABLE {path}")
    return "\n".join(lines)


def write_run_summary(results_root: Path, report: RunReport, *, suite: str, exit_code: int) -> Path:
    path = results_root / RUN_SUMMARY_NAME
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "suite": suite,
        "total_tests": report.total,
        "passed": report.passed,
        "failed": len(report.failed),
        "exit_code": exit_code,
    }
    results_root.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def run_exit_code(pytest_exit_code: int, report: RunReport) -> int:
    """Non-zero when pytest failed or any summary on disk did not pass."""
    if pytest_exit_code:
        return pytest_exit_code
    return 1 if report.failed or report.unreadable else 0
