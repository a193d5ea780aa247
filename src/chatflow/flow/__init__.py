"""Flow definition model, graph accessor and loader."""

from chatflow.flow.graph import FlowGraph, FlowIssue, ensure_valid, validate_flow
from chatflow.flow.loader import FlowLoader
from chatflow.flow.models import Container, Edge, FlowDefinition

__all__ = [
    "FlowGraph",
    "FlowIssue",
    "ensure_valid",
    "validate_flow",
    "FlowLoader",
    "Container",
    "Edge",
    "FlowDefinition",
]
