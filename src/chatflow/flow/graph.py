"""Read-only accessor over a flow definition, plus publish-time validation.

The engine resolves everything through FlowGraph. Unknown containers and
edges that point nowhere raise GraphIntegrityError; the graph never guesses
a fallback destination.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Literal

from chatflow.core.errors import FlowValidationError, GraphIntegrityError
from chatflow.flow.models import (
    BaseNode,
    Container,
    Edge,
    FlowDefinition,
    StartNode,
    node_handles,
)

logger = logging.getLogger(__name__)


class FlowGraph:
    """Index over a FlowDefinition for per-turn lookups."""

    def __init__(self, definition: FlowDefinition) -> None:
        self.definition = definition
        self._containers: dict[str, Container] = {c.id: c for c in definition.containers}
        self._edges: dict[tuple[str, str | None], Edge] = {}
        for edge in definition.edges:
            key = (edge.source, edge.source_handle or None)
            # First edge wins at runtime; duplicates are rejected by validate_flow
            self._edges.setdefault(key, edge)

    @property
    def flow_id(self) -> str:
        return self.definition.id

    @property
    def version(self) -> int:
        return self.definition.version

    def container(self, container_id: str) -> Container:
        """Resolve a container by id.

        Raises:
            GraphIntegrityError: If the container does not exist
        """
        container = self._containers.get(container_id)
        if container is None:
            raise GraphIntegrityError(
                f"Container '{container_id}' not found in flow '{self.flow_id}'",
                context={"container_id": container_id, "flow_id": self.flow_id},
            )
        return container

    def node_at(self, container_id: str, index: int) -> BaseNode | None:
        """Node at a cursor position; None once the cursor is past the last node."""
        container = self.container(container_id)
        if index < 0:
            raise GraphIntegrityError(f"Negative node index {index} in '{container_id}'")
        if index >= len(container.nodes):
            return None
        return container.nodes[index]

    def target_for(self, container_id: str, handle: str | None = None) -> str | None:
        """Target container of the edge leaving (container, handle).

        ``handle=None`` selects the container fall-through edge.

        Returns:
            Target container id, or None when no such edge exists.

        Raises:
            GraphIntegrityError: If the edge targets an unknown container
        """
        edge = self._edges.get((container_id, handle))
        if edge is None:
            return None
        if edge.target not in self._containers:
            raise GraphIntegrityError(
                f"Edge from '{container_id}' ({handle or 'fall-through'}) targets "
                f"unknown container '{edge.target}'",
                context={"source": container_id, "handle": handle, "target": edge.target},
            )
        return edge.target

    def find_node(self, node_type: str) -> tuple[str, int, BaseNode] | None:
        """First node of a type, in container list order: (container_id, index, node)."""
        for container in self.definition.containers:
            for index, node in enumerate(container.nodes):
                if node.type == node_type:  # type: ignore[attr-defined]
                    return container.id, index, node
        return None

    def start_container_id(self) -> str:
        """Container where new sessions begin.

        Precedence: explicit ``start_container_id``, the container holding a
        ``start`` node, then the first container with no incoming edges.

        Raises:
            GraphIntegrityError: If no start container can be determined
        """
        explicit = self.definition.start_container_id
        if explicit:
            self.container(explicit)
            return explicit

        for container in self.definition.containers:
            if any(isinstance(node, StartNode) for node in container.nodes):
                return container.id

        targets = {edge.target for edge in self.definition.edges}
        roots = [c.id for c in self.definition.containers if c.id not in targets]
        if not roots:
            raise GraphIntegrityError(f"Flow '{self.flow_id}' has no start container")
        if len(roots) > 1:
            logger.warning(
                f"Flow '{self.flow_id}' has {len(roots)} containers without incoming edges; "
                f"starting at '{roots[0]}'",
                extra={"flow_id": self.flow_id, "roots": roots},
            )
        return roots[0]


# === PUBLISH-TIME VALIDATION ===


@dataclass(frozen=True)
class FlowIssue:
    """A problem found in a flow definition."""

    code: str
    message: str
    severity: Literal["error", "warning"] = "error"


def validate_flow(definition: FlowDefinition) -> list[FlowIssue]:
    """Check a flow definition before it is published.

    Reports duplicate ids, dangling edges, handles that name no exit of the
    source container, more than one edge per (source, handle) pair, and a
    missing start container.
    """
    issues: list[FlowIssue] = []

    container_ids = Counter(c.id for c in definition.containers)
    for cid, count in container_ids.items():
        if count > 1:
            issues.append(
                FlowIssue("duplicate_container", f"Container id '{cid}' used {count} times")
            )

    node_ids = Counter(n.id for c in definition.containers for n in c.nodes)
    for nid, count in node_ids.items():
        if count > 1:
            issues.append(FlowIssue("duplicate_node", f"Node id '{nid}' used {count} times"))

    handles_by_container: dict[str, set[str]] = {}
    for container in definition.containers:
        handles: set[str] = set()
        for node in container.nodes:
            handles |= node_handles(node)
        handles_by_container[container.id] = handles

    edge_keys: Counter[tuple[str, str | None]] = Counter()
    for edge in definition.edges:
        handle = edge.source_handle or None
        edge_keys[(edge.source, handle)] += 1
        if edge.source not in container_ids:
            issues.append(
                FlowIssue("unknown_source", f"Edge source '{edge.source}' is not a container")
            )
        elif handle is not None and handle not in handles_by_container[edge.source]:
            issues.append(
                FlowIssue(
                    "unknown_handle",
                    f"Handle '{handle}' is not an exit of container '{edge.source}'",
                )
            )
        if edge.target not in container_ids:
            issues.append(
                FlowIssue("unknown_target", f"Edge target '{edge.target}' is not a container")
            )

    for (source, handle), count in edge_keys.items():
        if count > 1:
            issues.append(
                FlowIssue(
                    "ambiguous_edge",
                    f"{count} edges leave '{source}' through {handle or 'fall-through'}",
                )
            )

    if definition.containers:
        try:
            FlowGraph(definition).start_container_id()
        except GraphIntegrityError as e:
            issues.append(FlowIssue("no_start", str(e)))
    else:
        issues.append(FlowIssue("empty_flow", "Flow has no containers"))

    for container in definition.containers:
        if not container.nodes:
            issues.append(
                FlowIssue("empty_container", f"Container '{container.id}' has no nodes", "warning")
            )

    return issues


def ensure_valid(definition: FlowDefinition) -> None:
    """Raise FlowValidationError when validate_flow reports any error."""
    errors = [issue for issue in validate_flow(definition) if issue.severity == "error"]
    if errors:
        summary = "; ".join(issue.message for issue in errors)
        raise FlowValidationError(
            f"Flow '{definition.id}' v{definition.version} is invalid: {summary}", issues=errors
        )
