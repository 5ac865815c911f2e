from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import AppConfig
from .engine import FlowEngine
from .errors import ForgeFlowError
from .nodes import NodeRegistry, register_builtin_nodes
from .store import SQLiteStore
from .tracker import ExecutionTracker
from .triggers import TriggerManager

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """The wired-up core: one instance per process, passed to whatever needs it."""

    config: AppConfig
    store: SQLiteStore
    registry: NodeRegistry
    tracker: ExecutionTracker
    engine: FlowEngine
    triggers: TriggerManager

    @classmethod
    def from_config(cls, config: AppConfig | None = None, store: SQLiteStore | None = None) -> Runtime:
        config = config or AppConfig()
        store = store or SQLiteStore(config.database_path())
        registry = NodeRegistry()
        register_builtin_nodes(registry)
        tracker = ExecutionTracker(max_history=config.execution_history_limit())
        engine = FlowEngine(registry, tracker=tracker, store=store, settings=config.engine())
        triggers = TriggerManager(engine, store, settings=config.triggers())
        return cls(
            config=config,
            store=store,
            registry=registry,
            tracker=tracker,
            engine=engine,
            triggers=triggers,
        )

    def start(self) -> None:
        try:
            self.triggers.start_all_triggers()
        except ForgeFlowError:
            logger.exception("trigger start-up failed; continuing without stored triggers")

    def shutdown(self) -> None:
        self.triggers.shutdown()
