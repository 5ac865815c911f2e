from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from ..errors import HandlerFailure, NotFound

ActionHandler = Callable[[dict[str, Any], dict[str, Any]], Any]


@dataclass(slots=True)
class NodeSpec:
    type_name: str
    description: str
    handler: ActionHandler


class NodeRegistry:
    """Maps a node type tag to the handler that executes it.

    A handler receives the node's config and the payload assembled from the
    run input and upstream outputs. It returns the node output or raises.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, NodeSpec] = {}

    def register(self, spec: NodeSpec) -> None:
        self._nodes[spec.type_name] = spec

    def get(self, type_name: str) -> NodeSpec:
        if type_name not in self._nodes:
            raise NotFound(f"Unknown node type: {type_name}")
        return self._nodes[type_name]

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._nodes

    def list_types(self) -> list[str]:
        return sorted(self._nodes)

    def list_specs(self) -> list[dict[str, str]]:
        return [
            {"type": self._nodes[key].type_name, "description": self._nodes[key].description}
            for key in sorted(self._nodes)
        ]

    def execute(self, node_id: str, type_name: str, config: dict[str, Any], payload: dict[str, Any]) -> Any:
        try:
            handler = self.get(type_name).handler
        except NotFound as exc:
            raise HandlerFailure(node_id, type_name, exc) from exc
        try:
            return handler(dict(config), dict(payload))
        except Exception as exc:
            raise HandlerFailure(node_id, type_name, exc) from exc
