# Where: iter_e2e/harness/ports.py
# What: Collision-free loopback port allocation for concurrent local environments.
# Why: Isolate port-allocation policy from environment orchestration.
from __future__ import annotations

import socket
import threading

from iter_e2e.harness import constants


def port_available(port: int, host: str = constants.LOOPBACK_HOST) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """
    Hands out ports from a monotonically increasing counter.

    Probing and advancing the counter happen under one lock, so concurrent
    callers never receive the same port. After ``max_attempts`` busy
    candidates the next counter value is returned unchecked.
    """

    def __init__(
        self,
        base: int = constants.PORT_BASE,
        *,
        max_attempts: int = constants.PORT_PROBE_ATTEMPTS,
        host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self.base = base
        self.max_attempts = max_attempts
        self.host = host
        self._counter = base
        self._lock = threading.Lock()

    def _advance(self) -> int:
        self._counter += 1
        if self._counter > constants.PORT_MAX:
            self._counter = self.base + 1
        return self._counter

    def allocate(self) -> int:
        with self._lock:
            for _ in range(self.max_attempts):
                candidate = self._advance()
                if port_available(candidate, self.host):
                    return candidate
            return self._advance()

    next = allocate


_allocators: dict[int, PortAllocator] = {}
_allocators_lock = threading.Lock()


def allocator_for(base: int = constants.PORT_BASE) -> PortAllocator:
    """The process-wide allocator for ``base``; one counter per base."""
    with _allocators_lock:
        allocator = _allocators.get(base)
        if allocator is None:
            allocator = _allocators[base] = PortAllocator(base)
        return allocator


def allocate_port() -> int:
    return allocator_for().allocate()
