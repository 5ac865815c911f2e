from __future__ import annotations

import json
import logging
import time
from typing import Any

from .base import NodeRegistry, NodeSpec

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 3600.0

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def passthrough_handler(_params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    return payload


def set_fields_handler(params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    fields = params.get("fields", {})
    if not isinstance(fields, dict):
        raise ValueError("set_fields.fields must be a dictionary")

    merged = dict(payload)
    merged.update(fields)
    return merged


def template_handler(params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    template = params.get("template", "")
    if not isinstance(template, str):
        raise ValueError("template.template must be a string")

    # Literal replacement only; payload values are never evaluated.
    text = template.replace("{{json}}", json.dumps(payload, ensure_ascii=True, default=str))
    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)):
            text = text.replace("{{" + key + "}}", str(value))
    return {"text": text, "payload": payload}


def delay_handler(params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    seconds = params.get("seconds", params.get("duration", 1))
    if not isinstance(seconds, (int, float)) or isinstance(seconds, bool) or seconds < 0:
        raise ValueError("delay.seconds must be a non-negative number")
    if seconds > MAX_DELAY_SECONDS:
        raise ValueError(f"delay.seconds must not exceed {MAX_DELAY_SECONDS:g}")
    time.sleep(float(seconds))
    return {**payload, "delayed_seconds": seconds}


def log_handler(params: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    message = params.get("message", "")
    if not isinstance(message, str):
        raise ValueError("log.message must be a string")
    level = str(params.get("level", "info")).lower()
    if level not in _LOG_LEVELS:
        raise ValueError(f"log.level must be one of {sorted(_LOG_LEVELS)}")
    logger.log(_LOG_LEVELS[level], "flow log node: %s", message, extra={"payload_keys": sorted(payload)})
    return {"message": message, "level": level}


def register_builtin_nodes(registry: NodeRegistry) -> None:
    registry.register(
        NodeSpec(
            type_name="passthrough",
            description="Forwards its input payload unchanged.",
            handler=passthrough_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name="set_fields",
            description="Merges static fields into the input payload.",
            handler=set_fields_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name="template",
            description="Builds text output from a template and payload.",
            handler=template_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name="delay",
            description="Waits for a number of seconds before continuing.",
            handler=delay_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name="log",
            description="Writes a message to the application log.",
            handler=log_handler,
        )
    )
