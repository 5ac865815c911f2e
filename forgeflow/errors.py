from __future__ import annotations


class ForgeFlowError(Exception):
    """Base class for errors raised by the flow core."""


class InvalidFlow(ForgeFlowError):
    pass


class NotFound(ForgeFlowError, KeyError):
    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return str(self.args[0]) if self.args else ""


class HandlerFailure(ForgeFlowError):
    def __init__(self, node_id: str, node_type: str, cause: BaseException | str) -> None:
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        super().__init__(f"{node_type} node {node_id} failed: {cause}")


class ResourceAcquisitionFailure(ForgeFlowError):
    pass


class ExecutionTimeout(ForgeFlowError):
    pass


class InvalidTriggerConfig(ForgeFlowError, ValueError):
    pass
