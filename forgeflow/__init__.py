"""Local workflow automation core: flow engine, execution tracking and triggers."""

from .engine import FlowEngine
from .errors import (
    ExecutionTimeout,
    ForgeFlowError,
    HandlerFailure,
    InvalidFlow,
    InvalidTriggerConfig,
    NotFound,
    ResourceAcquisitionFailure,
)
from .models import Edge, Execution, Flow, Node, NodeResult, NodeStatus
from .tracker import CancelToken, ExecutionTracker

__version__ = "0.3.0"

__all__ = [
    "CancelToken",
    "Edge",
    "Execution",
    "ExecutionTimeout",
    "ExecutionTracker",
    "Flow",
    "FlowEngine",
    "ForgeFlowError",
    "HandlerFailure",
    "InvalidFlow",
    "InvalidTriggerConfig",
    "Node",
    "NodeResult",
    "NodeStatus",
    "NotFound",
    "ResourceAcquisitionFailure",
]
