from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol

import yaml

from .errors import InvalidFlow, NotFound
from .models import Execution, ExecutionSummary, Flow, FlowSummary, parse_flow, utc_now

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "yaml")


class FlowStore(Protocol):
    def load_flow(self, flow_id: str) -> Flow: ...

    def list_flows(self) -> list[FlowSummary]: ...


class SQLiteStore:
    def __init__(self, db_path: str | Path = "data/forgeflow.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS flows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    flow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    record TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    body TEXT NOT NULL
                )
                """
            )

    def save_flow(self, flow: Flow | Mapping[str, Any] | str) -> str:
        parsed = parse_flow(flow)
        now = utc_now()
        update: dict[str, Any] = {"updated_at": now}
        if not parsed.id:
            update["id"] = f"flow-{time.time_ns()}"
            update["created_at"] = now
        elif parsed.created_at is None:
            update["created_at"] = self._created_at(parsed.id) or now
        stored = parsed.model_copy(update=update)

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO flows (id, name, definition, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    updated_at = excluded.updated_at
                """,
                (
                    stored.id,
                    stored.name,
                    stored.model_dump_json(by_alias=True),
                    stored.created_at.isoformat(),
                    stored.updated_at.isoformat(),
                ),
            )
        logger.debug("saved flow %s", stored.id)
        return stored.id

    def load_flow(self, flow_id: str) -> Flow:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM flows WHERE id = ?",
                (flow_id,),
            ).fetchone()

        if not row:
            raise NotFound(f"flow not found: {flow_id}")
        return parse_flow(row["definition"])

    def list_flows(self) -> list[FlowSummary]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, definition FROM flows ORDER BY updated_at DESC").fetchall()

        summaries: list[FlowSummary] = []
        for row in rows:
            try:
                flow = parse_flow(row["definition"])
            except InvalidFlow as exc:
                logger.warning("skipping unreadable flow %s: %s", row["id"], exc)
                continue
            summaries.append(
                FlowSummary(
                    id=flow.id,
                    name=flow.name,
                    description=flow.description,
                    enabled=flow.enabled,
                    created_at=flow.created_at,
                    updated_at=flow.updated_at,
                    node_count=len(flow.nodes),
                )
            )
        return summaries

    def delete_flow(self, flow_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM flows WHERE id = ?", (flow_id,))
        if cursor.rowcount == 0:
            raise NotFound(f"flow not found: {flow_id}")

    def export_flow(self, flow_id: str, fmt: str = "json") -> str:
        flow = self.load_flow(flow_id)
        data = flow.model_dump(mode="json", by_alias=True)
        if fmt == "json":
            return json.dumps(data, indent=2)
        if fmt == "yaml":
            return yaml.safe_dump(data, sort_keys=False)
        raise ValueError(f"export format must be one of {EXPORT_FORMATS}")

    def import_flow(self, text: str, fmt: str = "json") -> str:
        """Stores an exported flow under a fresh id."""
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"import format must be one of {EXPORT_FORMATS}")
        try:
            raw = json.loads(text) if fmt == "json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise InvalidFlow(f"invalid flow {fmt}: {exc}") from exc
        if not isinstance(raw, dict):
            raise InvalidFlow("invalid flow: expected an object at the top level")
        raw.update({"id": "", "createdAt": None, "updatedAt": None})
        return self.save_flow(raw)

    def save_execution(self, execution: Execution) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO executions (id, flow_id, status, started_at, ended_at, record)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.flow_id,
                    execution.status.value,
                    execution.started_at.isoformat(),
                    execution.ended_at.isoformat() if execution.ended_at else None,
                    execution.model_dump_json(by_alias=True),
                ),
            )

    def get_execution(self, execution_id: str) -> Execution:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM executions WHERE id = ?",
                (execution_id,),
            ).fetchone()

        if not row:
            raise NotFound(f"execution not found: {execution_id}")
        return Execution.model_validate_json(row["record"])

    def list_executions(self, limit: int = 0, flow_id: str | None = None) -> list[ExecutionSummary]:
        query = "SELECT record FROM executions"
        params: list[Any] = []
        if flow_id is not None:
            query += " WHERE flow_id = ?"
            params.append(flow_id)
        query += " ORDER BY started_at DESC"
        if limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [Execution.model_validate_json(row["record"]).summary() for row in rows]

    def delete_execution(self, execution_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM executions WHERE id = ?", (execution_id,))
        if cursor.rowcount == 0:
            raise NotFound(f"execution not found: {execution_id}")

    def save_settings(self, settings: Mapping[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (id, body) VALUES (1, ?)",
                (json.dumps(dict(settings)),),
            )

    def load_settings(self) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT body FROM settings WHERE id = 1").fetchone()
        if not row:
            return {}
        return json.loads(row["body"])

    def _created_at(self, flow_id: str) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute("SELECT created_at FROM flows WHERE id = ?", (flow_id,)).fetchone()
        if not row:
            return None
        return datetime.fromisoformat(row["created_at"])
