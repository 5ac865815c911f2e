"""Tests for ExecutionTracker bookkeeping."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from forgeflow.errors import ExecutionTimeout, NotFound
from forgeflow.models import Execution, NodeResult, NodeStatus
from forgeflow.tracker import CancelToken, ExecutionTracker


def _register(tracker: ExecutionTracker, run_id: str, started_at: datetime | None = None) -> CancelToken:
    token = CancelToken()
    execution = Execution(id=run_id, flow_id="flow-1")
    if started_at is not None:
        execution.started_at = started_at
    tracker.register(execution, token)
    return token


def test_cancel_token_keeps_first_reason() -> None:
    token = CancelToken()

    assert token.cancel("first") is True
    assert token.cancel("second") is False
    assert token.cancelled
    assert token.reason == "first"


def test_register_rejects_duplicate_ids() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")

    with pytest.raises(ValueError):
        _register(tracker, "exec-1")


def test_snapshots_are_isolated_from_live_record() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")

    snapshot = tracker.get("exec-1")
    tracker.append_result("exec-1", NodeResult(node_id="a", status=NodeStatus.SUCCESS))

    assert snapshot.results == []
    assert len(tracker.get("exec-1").results) == 1


def test_results_are_refused_once_terminal() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")

    assert tracker.finish("exec-1", NodeStatus.SUCCESS)
    accepted = tracker.append_result("exec-1", NodeResult(node_id="late", status=NodeStatus.SUCCESS))

    assert accepted is False
    assert tracker.get("exec-1").results == []
    assert tracker.finish("exec-1", NodeStatus.ERROR, "again") is False
    assert tracker.get("exec-1").status == NodeStatus.SUCCESS


def test_cancel_sets_token_and_error_state() -> None:
    tracker = ExecutionTracker()
    token = _register(tracker, "exec-1")

    execution = tracker.cancel("exec-1", ExecutionTimeout("too slow"))

    assert token.cancelled
    assert isinstance(token.reason, ExecutionTimeout)
    assert execution.status == NodeStatus.ERROR
    assert execution.error == "too slow"
    assert execution.ended_at is not None


def test_cancel_requires_an_active_run() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")
    tracker.cancel("exec-1")

    with pytest.raises(NotFound):
        tracker.cancel("exec-1")
    with pytest.raises(NotFound):
        tracker.cancel("exec-unknown")


def test_release_prunes_oldest_finished_runs() -> None:
    tracker = ExecutionTracker(max_history=2)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index in range(3):
        run_id = f"exec-{index}"
        _register(tracker, run_id, started_at=base + timedelta(minutes=index))
        tracker.finish(run_id, NodeStatus.SUCCESS)
        tracker.release(run_id)

    assert sorted(execution.id for execution in tracker.list()) == ["exec-1", "exec-2"]
    with pytest.raises(NotFound):
        tracker.get("exec-0")


def test_wait_returns_after_release() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")
    assert tracker.is_active("exec-1")

    tracker.finish("exec-1", NodeStatus.SUCCESS)
    tracker.release("exec-1")

    assert not tracker.is_active("exec-1")
    assert tracker.wait("exec-1", timeout=1).status == NodeStatus.SUCCESS


def test_discard_refuses_running_runs() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-1")

    with pytest.raises(ValueError):
        tracker.discard("exec-1")

    tracker.release("exec-1")
    tracker.discard("exec-1")
    assert tracker.list() == []


def test_prune_keeps_running_runs() -> None:
    tracker = ExecutionTracker()
    _register(tracker, "exec-running")
    _register(tracker, "exec-done")
    tracker.finish("exec-done", NodeStatus.SUCCESS)
    tracker.release("exec-done")

    assert tracker.prune(0) == 1
    assert [execution.id for execution in tracker.list()] == ["exec-running"]


def test_wait_answers_for_a_run_pruned_on_release() -> None:
    tracker = ExecutionTracker(max_history=1)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    _register(tracker, "exec-newer", started_at=base + timedelta(minutes=1))
    tracker.finish("exec-newer", NodeStatus.SUCCESS)
    tracker.release("exec-newer")
    _register(tracker, "exec-waited", started_at=base)

    waiting = threading.Event()
    outcome: list[Execution] = []

    def waiter() -> None:
        waiting.set()
        outcome.append(tracker.wait("exec-waited", timeout=5))

    thread = threading.Thread(target=waiter)
    thread.start()
    assert waiting.wait(2)
    time.sleep(0.1)

    tracker.finish("exec-waited", NodeStatus.SUCCESS)
    tracker.release("exec-waited")
    thread.join(5)

    with pytest.raises(NotFound):
        tracker.get("exec-waited")
    [execution] = outcome
    assert execution.id == "exec-waited"
    assert execution.status == NodeStatus.SUCCESS
