from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .errors import NotFound
from .models import Execution, NodeResult, NodeStatus, utc_now

logger = logging.getLogger(__name__)

CancelReason = str | BaseException


class CancelToken:
    """Cooperative cancellation flag for one run. The first reason wins."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: CancelReason | None = None

    def cancel(self, reason: CancelReason = "cancelled") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class _TrackedRun:
    execution: Execution
    token: CancelToken
    done: threading.Event = field(default_factory=threading.Event)


class ExecutionTracker:
    """Owns every execution record and the live cancellation token of each run.

    All state sits behind one lock. Callers only ever see deep copies, so a
    result is either fully visible in a snapshot or not at all.
    """

    def __init__(self, max_history: int = 0) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, _TrackedRun] = {}
        self.max_history = max_history

    def register(self, execution: Execution, token: CancelToken) -> None:
        with self._lock:
            if execution.id in self._runs:
                raise ValueError(f"execution already registered: {execution.id}")
            self._runs[execution.id] = _TrackedRun(execution=execution, token=token)

    def append_result(self, run_id: str, result: NodeResult) -> bool:
        with self._lock:
            run = self._require(run_id)
            if run.execution.is_terminal:
                logger.debug("dropping result for node %s of finished run %s", result.node_id, run_id)
                return False
            run.execution.results.append(result)
            return True

    def finish(self, run_id: str, status: NodeStatus, error: str | None = None) -> bool:
        with self._lock:
            run = self._require(run_id)
            if run.execution.is_terminal:
                return False
            run.execution.status = status
            run.execution.error = error
            run.execution.ended_at = utc_now()
            return True

    def cancel(self, run_id: str, reason: CancelReason = "stopped") -> Execution:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.done.is_set() or run.execution.is_terminal:
                raise NotFound(f"execution not found: {run_id}")
            run.token.cancel(reason)
            run.execution.status = NodeStatus.ERROR
            run.execution.error = str(reason)
            run.execution.ended_at = utc_now()
            return run.execution.model_copy(deep=True)

    def release(self, run_id: str) -> None:
        """Marks the run's worker as finished and applies the history limit."""
        with self._lock:
            run = self._require(run_id)
            run.done.set()
            if self.max_history > 0:
                self.prune(self.max_history)

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            return run is not None and not run.done.is_set()

    def get(self, run_id: str) -> Execution:
        with self._lock:
            return self._require(run_id).execution.model_copy(deep=True)

    def list(self) -> list[Execution]:
        with self._lock:
            return [run.execution.model_copy(deep=True) for run in self._runs.values()]

    def wait(self, run_id: str, timeout: float | None = None) -> Execution:
        """Blocks until the run's worker is done; still answers if the run was pruned meanwhile."""
        with self._lock:
            run = self._require(run_id)
        run.done.wait(timeout)
        with self._lock:
            return run.execution.model_copy(deep=True)

    def discard(self, run_id: str) -> None:
        with self._lock:
            run = self._require(run_id)
            if not run.done.is_set():
                raise ValueError(f"execution still running: {run_id}")
            del self._runs[run_id]

    def prune(self, keep: int) -> int:
        """Drops the oldest finished runs beyond ``keep``; returns how many went."""
        with self._lock:
            finished = [run for run in self._runs.values() if run.done.is_set()]
            excess = len(finished) - max(keep, 0)
            if excess <= 0:
                return 0
            finished.sort(key=lambda run: run.execution.started_at)
            for run in finished[:excess]:
                del self._runs[run.execution.id]
            return excess

    def _require(self, run_id: str) -> _TrackedRun:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFound(f"execution not found: {run_id}")
        return run
