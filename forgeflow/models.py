from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidFlow, InvalidTriggerConfig

TRIGGER_CATEGORY = "trigger"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Accepts both snake_case and the camelCase names used by the flow editor."""

    model_config = ConfigDict(populate_by_name=True)


class FrozenWireModel(WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NodeStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class Position(FrozenWireModel):
    x: float = 0.0
    y: float = 0.0


class NodeData(FrozenWireModel):
    label: str = ""
    category: str = "action"
    node_type: str | None = Field(default=None, alias="nodeType")
    config: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None
    icon: str | None = None

    @field_validator("config", mode="before")
    @classmethod
    def _none_config(cls, value: Any) -> Any:
        return {} if value is None else value


class Node(FrozenWireModel):
    id: str
    type: str = ""
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)

    @property
    def kind(self) -> str:
        return self.data.node_type or self.type

    @property
    def config(self) -> dict[str, Any]:
        return self.data.config

    @property
    def is_trigger(self) -> bool:
        return self.data.category == TRIGGER_CATEGORY


class Edge(FrozenWireModel):
    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class Flow(FrozenWireModel):
    id: str = ""
    name: str = "Untitled flow"
    description: str | None = None
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    enabled: bool = True
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("nodes", "edges", mode="before")
    @classmethod
    def _none_list(cls, value: Any) -> Any:
        return () if value is None else value

    @model_validator(mode="after")
    def _check_graph(self) -> Flow:
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"duplicate node id: {node.id}")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in seen:
                raise ValueError(f"edge {edge.id or '?'} references unknown source node: {edge.source}")
            if edge.target not in seen:
                raise ValueError(f"edge {edge.id or '?'} references unknown target node: {edge.target}")
        return self

    def action_nodes(self) -> list[Node]:
        return [node for node in self.nodes if not node.is_trigger]

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.is_trigger]


class NodeResult(FrozenWireModel):
    node_id: str = Field(alias="nodeId")
    status: NodeStatus
    output: Any = None
    error: str | None = None
    duration_ms: int = Field(default=0, alias="duration")
    timestamp: datetime = Field(default_factory=utc_now)


class Execution(WireModel):
    id: str
    flow_id: str = Field(alias="flowId")
    status: NodeStatus = NodeStatus.RUNNING
    results: list[NodeResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now, alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (NodeStatus.SUCCESS, NodeStatus.ERROR) and self.ended_at is not None

    def summary(self) -> ExecutionSummary:
        return ExecutionSummary(
            id=self.id,
            flow_id=self.flow_id,
            status=self.status,
            started_at=self.started_at,
            ended_at=self.ended_at,
            error=self.error,
            node_count=len(self.results),
            success_count=sum(1 for r in self.results if r.status == NodeStatus.SUCCESS),
            error_count=sum(1 for r in self.results if r.status == NodeStatus.ERROR),
        )


class ExecutionSummary(WireModel):
    id: str
    flow_id: str = Field(alias="flowId")
    status: NodeStatus
    started_at: datetime = Field(alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    error: str | None = None
    node_count: int = Field(default=0, alias="nodeCount")
    success_count: int = Field(default=0, alias="successCount")
    error_count: int = Field(default=0, alias="errorCount")


class FlowSummary(WireModel):
    id: str
    name: str
    description: str | None = None
    enabled: bool = True
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    node_count: int = Field(default=0, alias="nodeCount")


class RunRequest(BaseModel):
    input_data: dict[str, Any] = Field(default_factory=dict)


def parse_flow(definition: Flow | Mapping[str, Any] | str | bytes) -> Flow:
    if isinstance(definition, Flow):
        return definition
    try:
        if isinstance(definition, (str, bytes, bytearray)):
            return Flow.model_validate_json(definition)
        if isinstance(definition, Mapping):
            return Flow.model_validate(dict(definition))
    except ValidationError as exc:
        raise InvalidFlow(f"invalid flow: {_first_error(exc)}") from exc
    raise InvalidFlow(f"invalid flow: unsupported definition type {type(definition).__name__}")


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


# Trigger node configuration. Known trigger kinds are validated when they are
# registered; unknown ones fall through to GenericTriggerConfig.

FileEventFilter = Literal["all", "create", "modify", "delete"]


class _TriggerConfigBase(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    enabled: bool = True


class ScheduleTriggerConfig(_TriggerConfigBase):
    kind: Literal["trigger_schedule"] = "trigger_schedule"
    cron: str

    @field_validator("cron")
    @classmethod
    def _cron_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("cron expression is required")
        return value


class WebhookTriggerConfig(_TriggerConfigBase):
    kind: Literal["trigger_webhook"] = "trigger_webhook"
    path: str
    method: str = "POST"

    @field_validator("path")
    @classmethod
    def _path_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("webhook path is required")
        return value.strip()

    @field_validator("method", mode="before")
    @classmethod
    def _method_default(cls, value: Any) -> Any:
        return value or "POST"


class FileWatchTriggerConfig(_TriggerConfigBase):
    kind: Literal["trigger_file_watch"] = "trigger_file_watch"
    path: str
    events: FileEventFilter = "all"

    @field_validator("path")
    @classmethod
    def _path_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("watch path is required")
        return value.strip()

    @field_validator("events", mode="before")
    @classmethod
    def _events_default(cls, value: Any) -> Any:
        return value or "all"


class ClipboardTriggerConfig(_TriggerConfigBase):
    kind: Literal["trigger_clipboard"] = "trigger_clipboard"
    text_only: bool = Field(default=True, alias="textOnly")


class HotkeyTriggerConfig(_TriggerConfigBase):
    kind: Literal["trigger_hotkey"] = "trigger_hotkey"
    hotkey: str

    @field_validator("hotkey")
    @classmethod
    def _hotkey_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("hotkey is required")
        return value.strip()


class GenericTriggerConfig(_TriggerConfigBase):
    kind: str


_TRIGGER_CONFIG_TYPES: dict[str, type[_TriggerConfigBase]] = {
    "trigger_schedule": ScheduleTriggerConfig,
    "trigger_webhook": WebhookTriggerConfig,
    "trigger_file_watch": FileWatchTriggerConfig,
    "trigger_clipboard": ClipboardTriggerConfig,
    "trigger_hotkey": HotkeyTriggerConfig,
}


def trigger_config_for(node: Node) -> _TriggerConfigBase:
    kind = node.kind
    model = _TRIGGER_CONFIG_TYPES.get(kind, GenericTriggerConfig)
    payload = dict(node.config)
    payload["kind"] = kind
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidTriggerConfig(f"{kind} node {node.id}: {_first_error(exc)}") from exc
