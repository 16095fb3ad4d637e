# Where: iter_e2e/harness/tests/test_cleanup.py
# What: Unit tests for the best-effort cleanup sink and stale resource pruning.
# Why: Cleanup must run every step and never turn into a test error.
from __future__ import annotations

from unittest.mock import MagicMock

import docker.errors

from iter_e2e.harness.cleanup import CleanupSink, ignore_missing, prune_stale_resources


def test_actions_run_newest_first():
    order: list[str] = []
    sink = CleanupSink()
    sink.push("network", lambda: order.append("network"))
    sink.push("primary", lambda: order.append("primary"))
    sink.push("driver", lambda: order.append("driver"))

    failures = sink.run()

    assert order == ["driver", "primary", "network"]
    assert failures == []


def test_failures_are_collected_not_raised():
    logged: list[str] = []
    order: list[str] = []

    def _broken():
        raise RuntimeError("boom")

    sink = CleanupSink(log=logged.append)
    sink.push("first", lambda: order.append("first"))
    sink.push("broken", _broken)

    failures = sink.run()

    assert order == ["first"]
    assert [failure.description for failure in failures] == ["broken"]
    assert failures[0].error == "boom"
    assert "broken" in logged[0]


def test_run_is_idempotent():
    calls = {"n": 0}
    sink = CleanupSink()
    sink.push("once", lambda: calls.__setitem__("n", calls["n"] + 1))

    sink.run()
    sink.run()

    assert calls["n"] == 1
    assert len(sink) == 0


def test_attempt_reports_success():
    sink = CleanupSink()

    assert sink.attempt("ok", lambda: None) is True
    assert sink.attempt("bad", lambda: 1 / 0) is False
    assert len(sink.failures) == 1


def test_ignore_missing_swallows_not_found_only():
    def _gone():
        raise docker.errors.NotFound("gone")

    ignore_missing(_gone)


def test_prune_stale_resources_removes_labelled_resources():
    client = MagicMock()
    container = MagicMock()
    container.name = "iter-e2e-abc-iter"
    missing = MagicMock()
    missing.name = "iter-e2e-abc-claude"
    missing.remove.side_effect = docker.errors.NotFound("already gone")
    network = MagicMock()
    network.name = "iter-e2e-abc-net"
    client.containers.list.return_value = [container, missing]
    client.networks.list.return_value = [network]

    removed = prune_stale_resources(client)

    assert removed == 3
    container.remove.assert_called_once_with(force=True)
    network.remove.assert_called_once_with()
    client.containers.list.assert_called_once_with(
        all=True, filters={"label": "com.iter-e2e.managed=true"}
    )
