from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from .config import EngineSettings
from .errors import ExecutionTimeout, HandlerFailure, NotFound
from .models import Execution, Flow, Node, NodeResult, NodeStatus, parse_flow, utc_now
from .nodes.base import NodeRegistry
from .tracker import CancelToken, ExecutionTracker

logger = logging.getLogger(__name__)


class ExecutionSink(Protocol):
    def save_execution(self, execution: Execution) -> None: ...


@dataclass(frozen=True, slots=True)
class FlowGraph:
    """Action-node graph of a flow. Trigger nodes and their edges are left out."""

    nodes: dict[str, Node]
    order: list[str]
    adjacency: dict[str, list[str]]
    parents: dict[str, list[str]]
    in_degree: dict[str, int]

    @classmethod
    def build(cls, flow: Flow) -> FlowGraph:
        nodes = {node.id: node for node in flow.action_nodes()}
        order = list(nodes)
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in order}
        parents: dict[str, list[str]] = defaultdict(list)
        in_degree: dict[str, int] = {node_id: 0 for node_id in order}

        for edge in flow.edges:
            if edge.source not in nodes or edge.target not in nodes:
                continue
            adjacency[edge.source].append(edge.target)
            parents[edge.target].append(edge.source)
            in_degree[edge.target] += 1

        return cls(nodes=nodes, order=order, adjacency=adjacency, parents=dict(parents), in_degree=in_degree)

    def roots(self) -> list[str]:
        return [node_id for node_id in self.order if self.in_degree[node_id] == 0]


class FlowEngine:
    def __init__(
        self,
        registry: NodeRegistry,
        tracker: ExecutionTracker | None = None,
        store: ExecutionSink | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.registry = registry
        self.tracker = tracker or ExecutionTracker()
        self.store = store
        self.settings = settings or EngineSettings()

    def run(
        self,
        flow_definition: Flow | Mapping[str, Any] | str | bytes,
        input_data: Mapping[str, Any] | None = None,
    ) -> str:
        """Starts a run in the background and returns its id without waiting.

        Raises InvalidFlow before any state is created when the definition
        cannot be parsed.
        """
        flow = parse_flow(flow_definition)
        run_id = f"exec-{time.time_ns()}-{uuid.uuid4().hex[:6]}"
        token = CancelToken()
        execution = Execution(id=run_id, flow_id=flow.id, status=NodeStatus.RUNNING, started_at=utc_now())
        self.tracker.register(execution, token)

        timer = threading.Timer(self.settings.run_timeout_seconds, self._expire, args=(run_id,))
        timer.daemon = True
        worker = threading.Thread(
            target=self._execute,
            args=(flow, run_id, token, dict(input_data or {}), timer),
            name=f"flow-run-{run_id}",
            daemon=True,
        )
        logger.info("starting run %s of flow %s", run_id, flow.id or "<unsaved>", extra={"run_id": run_id})
        timer.start()
        worker.start()
        return run_id

    def stop(self, run_id: str) -> Execution:
        execution = self.tracker.cancel(run_id, "stopped by request")
        logger.info("stop requested for run %s", run_id, extra={"run_id": run_id})
        return execution

    def get(self, run_id: str) -> Execution:
        return self.tracker.get(run_id)

    def list(self) -> list[Execution]:
        return self.tracker.list()

    def wait(self, run_id: str, timeout: float | None = None) -> Execution:
        return self.tracker.wait(run_id, timeout)

    def discard(self, run_id: str) -> None:
        """Forgets a finished run. Raises ValueError while it is still running."""
        self.tracker.discard(run_id)

    def _expire(self, run_id: str) -> None:
        if not self.tracker.is_active(run_id):
            return
        reason = ExecutionTimeout(f"run timed out after {self.settings.run_timeout_seconds:g}s")
        try:
            self.tracker.cancel(run_id, reason)
        except NotFound:
            return
        logger.warning("run %s timed out", run_id, extra={"run_id": run_id})

    def _execute(
        self,
        flow: Flow,
        run_id: str,
        token: CancelToken,
        input_data: dict[str, Any],
        timer: threading.Timer,
    ) -> None:
        try:
            self._traverse(flow, run_id, token, input_data)
            self.tracker.finish(run_id, NodeStatus.SUCCESS)
        except Exception as exc:
            logger.exception("run %s aborted by an engine error", run_id, extra={"run_id": run_id})
            self.tracker.finish(run_id, NodeStatus.ERROR, error=str(exc))
        finally:
            timer.cancel()
            execution = self.tracker.get(run_id)
            self._persist(execution)
            self.tracker.release(run_id)

        logger.info(
            "run %s finished with status %s",
            run_id,
            execution.status.value,
            extra={"run_id": run_id, "results": len(execution.results)},
        )

    def _traverse(self, flow: Flow, run_id: str, token: CancelToken, input_data: dict[str, Any]) -> None:
        graph = FlowGraph.build(flow)
        join_all = self.settings.join_policy == "all"
        halt_on_failure = self.settings.failure_policy == "halt"

        remaining = dict(graph.in_degree)
        roots = graph.roots()
        fired: set[str] = set(roots)
        outputs: dict[str, Any] = {}
        executed = 0

        # Depth-first: a node's ready successors run before its siblings.
        stack = list(reversed(roots))
        while stack:
            node_id = stack.pop()
            if token.cancelled:
                logger.info("run %s cancelled before node %s: %s", run_id, node_id, token.reason)
                return

            node = graph.nodes[node_id]
            payload = self._payload_for(node_id, graph, outputs, input_data)
            result = self._execute_node(node, payload)
            if not self.tracker.append_result(run_id, result):
                return
            executed += 1

            if result.status == NodeStatus.ERROR:
                if halt_on_failure:
                    continue
            else:
                outputs[node_id] = result.output

            ready: list[str] = []
            for successor in graph.adjacency[node_id]:
                if join_all:
                    remaining[successor] -= 1
                    if remaining[successor] == 0:
                        ready.append(successor)
                elif successor not in fired:
                    fired.add(successor)
                    ready.append(successor)
            stack.extend(reversed(ready))

        skipped = len(graph.nodes) - executed
        if skipped:
            logger.info("run %s left %d node(s) unexecuted", run_id, skipped, extra={"run_id": run_id})

    def _payload_for(
        self,
        node_id: str,
        graph: FlowGraph,
        outputs: dict[str, Any],
        input_data: dict[str, Any],
    ) -> dict[str, Any]:
        payload = dict(input_data)
        for parent in graph.parents.get(node_id, []):
            if parent not in outputs:
                continue
            output = outputs[parent]
            if isinstance(output, dict):
                payload.update(output)
            else:
                payload[parent] = output
        return payload

    def _execute_node(self, node: Node, payload: dict[str, Any]) -> NodeResult:
        started = utc_now()
        clock = time.perf_counter()
        try:
            output = self.registry.execute(node.id, node.kind, node.config, payload)
        except HandlerFailure as exc:
            logger.warning("%s", exc)
            return NodeResult(
                node_id=node.id,
                status=NodeStatus.ERROR,
                error=str(exc.cause) or type(exc.cause).__name__,
                duration_ms=_elapsed_ms(clock),
                timestamp=started,
            )
        return NodeResult(
            node_id=node.id,
            status=NodeStatus.SUCCESS,
            output=output,
            duration_ms=_elapsed_ms(clock),
            timestamp=started,
        )

    def _persist(self, execution: Execution) -> None:
        if self.store is None:
            return
        try:
            self.store.save_execution(execution)
        except Exception:
            logger.exception("failed to persist execution %s", execution.id)


def _elapsed_ms(clock: float) -> int:
    return int((time.perf_counter() - clock) * 1000)
