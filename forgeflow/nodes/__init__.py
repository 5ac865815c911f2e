from .base import ActionHandler, NodeRegistry, NodeSpec
from .builtin import register_builtin_nodes

__all__ = ["ActionHandler", "NodeRegistry", "NodeSpec", "register_builtin_nodes"]
