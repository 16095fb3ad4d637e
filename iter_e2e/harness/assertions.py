# Where: iter_e2e/harness/assertions.py
# What: Response assertions that collect every mismatch before failing.
# Why: One run should report all discovered problems, not just the first.
from __future__ import annotations

import json
from typing import Any

from iter_e2e.harness.http_client import HTTPResult
from iter_e2e.harness.results import ResultStore


def parse_json(data: bytes | str) -> dict[str, Any]:
    try:
        value = json.loads(data)
    except json.JSONDecodeError as exc:
        raise AssertionError(f"Failed to parse JSON: {exc}\nData: {data!r}") from exc
    if not isinstance(value, dict):
        raise AssertionError(f"Expected JSON object, got {type(value).__name__}: {data!r}")
    return value


def parse_json_array(data: bytes | str) -> list[Any]:
    try:
        value = json.loads(data)
    except json.JSONDecodeError as exc:
        raise AssertionError(f"Failed to parse JSON array: {exc}\nData: {data!r}") from exc
    if not isinstance(value, list):
        raise AssertionError(f"Expected JSON array, got {type(value).__name__}: {data!r}")
    return value


class Checks:
    """
    Soft assertions.

    Each check records a failure instead of raising; ``verify()`` raises a
    single AssertionError listing them all. Failures are also logged to the
    ResultStore when one is attached.
    """

    def __init__(self, store: ResultStore | None = None) -> None:
        self.store = store
        self.failures: list[str] = []

    def fail(self, message: str) -> bool:
        self.failures.append(message)
        if self.store is not None:
            self.store.log("CHECK FAILED: %s", message)
        return False

    def true(self, condition: bool, message: str) -> bool:
        return True if condition else self.fail(message)

    def equal(self, actual: Any, expected: Any, label: str = "value") -> bool:
        if actual == expected:
            return True
        return self.fail(f"Expected {label} {expected!r}, got {actual!r}")

    def status(self, result: HTTPResult | None, expected: int) -> bool:
        if result is None:
            return self.fail(f"Expected status {expected}, but response was None")
        if result.status != expected:
            return self.fail(
                f"Expected status {expected}, got {result.status} for {result.method} {result.url}"
            )
        return True

    def contains(self, haystack: str, needle: str) -> bool:
        if needle in haystack:
            return True
        return self.fail(f"Expected string to contain {needle!r}, got: {haystack[:500]}")

    def has_key(self, mapping: dict[str, Any], key: str) -> bool:
        if key in mapping:
            return True
        return self.fail(f"Expected key {key!r} in {sorted(mapping)}")

    def includes_all(self, collection, expected, label: str = "items") -> bool:
        missing = [item for item in expected if item not in collection]
        if not missing:
            return True
        return self.fail(f"Missing {label}: {missing}")

    @property
    def passed(self) -> bool:
        return not self.failures

    def verify(self) -> None:
        if self.failures:
            joined = "\n".join(f"  - {failure}" for failure in self.failures)
            raise AssertionError(f"{len(self.failures)} check(s) failed:\n{joined}")
