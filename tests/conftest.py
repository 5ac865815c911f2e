"""Test configuration and fixtures."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from forgeflow.config import EngineSettings, TriggerSettings
from forgeflow.engine import FlowEngine
from forgeflow.models import Flow
from forgeflow.nodes import NodeRegistry, NodeSpec, register_builtin_nodes
from forgeflow.store import SQLiteStore
from forgeflow.tracker import ExecutionTracker
from forgeflow.triggers import TriggerManager


class Gate:
    """Handler that blocks until released, so tests control when a node finishes."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def handler(self, _params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        self.started.set()
        self.release.wait(5)
        return {"gated": True}


class FakeClipboard:
    def __init__(self, content: str | bytes | None = "") -> None:
        self.content = content

    def get_clipboard_content(self) -> str | bytes | None:
        return self.content


class RecordingHotkeyBackend:
    def __init__(self) -> None:
        self.registered: dict[str, Callable[[], None]] = {}

    def register_global_hotkey(self, combo: str, callback: Callable[[], None]) -> None:
        self.registered[combo] = callback

    def unregister_global_hotkey(self, combo: str) -> None:
        self.registered.pop(combo, None)


def _fail(_params: dict[str, Any], _payload: dict[str, Any]) -> Any:
    raise RuntimeError("boom")


def _echo(params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    return {"echo": params.get("value"), "inputs": sorted(payload)}


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def registry(gate: Gate) -> NodeRegistry:
    """Built-in handlers plus ``fail``, ``echo`` and ``gate`` for tests."""
    registry = NodeRegistry()
    register_builtin_nodes(registry)
    registry.register(NodeSpec(type_name="fail", description="Always raises.", handler=_fail))
    registry.register(NodeSpec(type_name="echo", description="Echoes config.", handler=_echo))
    registry.register(NodeSpec(type_name="gate", description="Blocks until released.", handler=gate.handler))
    return registry


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "data" / "forgeflow.db")


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(run_timeout_seconds=30)


@pytest.fixture
def engine(registry: NodeRegistry, store: SQLiteStore, engine_settings: EngineSettings) -> FlowEngine:
    return FlowEngine(registry, tracker=ExecutionTracker(), store=store, settings=engine_settings)


@pytest.fixture
def trigger_settings() -> TriggerSettings:
    return TriggerSettings(webhook_autostart=False, clipboard_poll_seconds=0.01, shutdown_timeout_seconds=5)


@pytest.fixture
def clipboard() -> FakeClipboard:
    return FakeClipboard()


@pytest.fixture
def hotkey_backend() -> RecordingHotkeyBackend:
    return RecordingHotkeyBackend()


@pytest.fixture
def triggers(
    engine: FlowEngine,
    store: SQLiteStore,
    trigger_settings: TriggerSettings,
    clipboard: FakeClipboard,
    hotkey_backend: RecordingHotkeyBackend,
):
    manager = TriggerManager(
        engine,
        store,
        settings=trigger_settings,
        clipboard_provider=clipboard,
        hotkey_backend=hotkey_backend,
    )
    yield manager
    manager.shutdown(timeout=5)


@pytest.fixture
def build_flow() -> Callable[..., Flow]:
    """Builds a flow from ``(id, node_type)`` pairs and ``(source, target)`` edges."""

    def _build(
        nodes: list[tuple[str, str] | dict[str, Any]],
        edges: list[tuple[str, str]] = (),
        flow_id: str = "flow-test",
        name: str = "Test flow",
    ) -> Flow:
        raw_nodes = []
        for node in nodes:
            if isinstance(node, dict):
                raw_nodes.append(node)
                continue
            node_id, node_type = node
            raw_nodes.append({"id": node_id, "type": "custom", "data": {"nodeType": node_type, "category": "action"}})
        raw_edges = [{"id": f"e-{s}-{t}", "source": s, "target": t} for s, t in edges]
        return Flow.model_validate({"id": flow_id, "name": name, "nodes": raw_nodes, "edges": raw_edges})

    return _build


def trigger_node(node_id: str, node_type: str, **config: Any) -> dict[str, Any]:
    return {"id": node_id, "type": "custom", "data": {"nodeType": node_type, "category": "trigger", "config": config}}


@pytest.fixture
def make_trigger_node() -> Callable[..., dict[str, Any]]:
    return trigger_node


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return wait_for
