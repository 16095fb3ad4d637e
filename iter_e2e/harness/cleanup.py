# Where: iter_e2e/harness/cleanup.py
# What: Best-effort cleanup sink and stale Docker resource pruning.
# Why: Cleanup must never turn a test result into an error; keep that policy in one place.
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

import docker.errors

from iter_e2e.harness import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupFailure:
    description: str
    error: str


class CleanupSink:
    """
    Collects cleanup actions and runs them once, newest first.

    Every action runs even when an earlier one fails; failures are logged and
    kept in ``failures`` but never raised. Running the sink again is a no-op.
    """

    def __init__(self, log: Callable[[str], None] | None = None) -> None:
        self._actions: list[tuple[str, Callable[[], object]]] = []
        self._lock = threading.Lock()
        self._log = log
        self.failures: list[CleanupFailure] = []

    def push(self, description: str, action: Callable[[], object]) -> None:
        with self._lock:
            self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    def run(self) -> list[CleanupFailure]:
        with self._lock:
            actions = list(reversed(self._actions))
            self._actions.clear()
        for description, action in actions:
            self.attempt(description, action)
        return list(self.failures)

    def attempt(self, description: str, action: Callable[[], object]) -> bool:
        """Run a single action now, recording rather than raising any failure."""
        try:
            action()
        except Exception as exc:
            failure = CleanupFailure(description=description, error=str(exc))
            self.failures.append(failure)
            message = f"[WARN] Cleanup step failed ({description}): {exc}"
            logger.warning(message)
            if self._log:
                self._log(message)
            return False
        return True


def ignore_missing(action: Callable[[], object]) -> None:
    try:
        action()
    except docker.errors.NotFound:
        return


def prune_stale_resources(client, *, label: str = constants.MANAGED_LABEL) -> int:
    """Remove containers and networks left behind by aborted runs.

    Returns the number of resources removed.
    """
    removed = 0
    filters = {"label": f"{label}=true"}
    for container in client.containers.list(all=True, filters=filters):
        logger.info("Removing stale container %s", container.name)
        ignore_missing(lambda: container.remove(force=True))
        removed += 1
    for network in client.networks.list(filters=filters):
        logger.info("Removing stale network %s", network.name)
        ignore_missing(network.remove)
        removed += 1
    return removed
