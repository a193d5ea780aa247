"""Unit tests for the flow graph accessor and publish-time validation."""

import logging

import pytest

from chatflow.core.errors import FlowValidationError, GraphIntegrityError
from chatflow.flow.graph import FlowGraph, ensure_valid, validate_flow
from tests.factories import (
    button,
    buttons,
    comparison,
    condition,
    container,
    edge,
    group,
    make_flow,
    text,
)


def _codes(flow) -> set[str]:
    return {issue.code for issue in validate_flow(flow)}


def test_container_lookup():
    """Test containers resolve by id and unknown ids raise"""
    # Arrange
    graph = FlowGraph(make_flow([container("a", text("t", "Hi"))]))

    # Act & Assert
    assert graph.container("a").id == "a"
    with pytest.raises(GraphIntegrityError, match="'zzz' not found"):
        graph.container("zzz")


def test_node_at_past_last_node_is_none():
    """Test the cursor may sit one past the last node"""
    graph = FlowGraph(make_flow([container("a", text("t", "Hi"))]))

    assert graph.node_at("a", 0).id == "t"
    assert graph.node_at("a", 1) is None


def test_target_for_fall_through_and_handles():
    """Test edges resolve by (container, handle), None meaning fall-through"""
    # Arrange
    flow = make_flow(
        [
            container("a", buttons("b", button("y", "Yes"))),
            container("b1", text("t1", "yes")),
            container("b2", text("t2", "default")),
            container("c", text("t3", "next")),
        ],
        [
            edge("a", "b1", "b-btn-y"),
            edge("a", "b2", "b-default"),
            edge("b1", "c"),
        ],
    )
    graph = FlowGraph(flow)

    # Act & Assert
    assert graph.target_for("a", "b-btn-y") == "b1"
    assert graph.target_for("a", "b-default") == "b2"
    assert graph.target_for("b1") == "c"
    assert graph.target_for("c") is None


def test_empty_source_handle_means_fall_through():
    """Test an edge with an empty string handle is a fall-through edge"""
    flow = make_flow(
        [container("a", text("t", "Hi")), container("b", text("u", "Bye"))],
        [edge("a", "b", "")],
    )

    assert FlowGraph(flow).target_for("a") == "b"


def test_edge_to_unknown_container_raises_at_lookup():
    """Test a dangling edge is a graph integrity error, not a silent end"""
    flow = make_flow([container("a", text("t", "Hi"))], [edge("a", "ghost")])

    with pytest.raises(GraphIntegrityError, match="unknown container 'ghost'"):
        FlowGraph(flow).target_for("a")


def test_first_duplicate_edge_wins():
    """Test the first of two edges for the same exit is used at runtime"""
    flow = make_flow(
        [
            container("a", text("t", "Hi")),
            container("b", text("u", "")),
            container("c", text("v", "")),
        ],
        [edge("a", "b"), edge("a", "c")],
    )

    assert FlowGraph(flow).target_for("a") == "b"


def test_start_container_explicit():
    """Test an explicit start container takes precedence"""
    flow = make_flow(
        [
            container("a", {"id": "s", "type": "start", "config": {}}),
            container("b", text("t", "Hi")),
        ],
        startContainerId="b",
    )

    assert FlowGraph(flow).start_container_id() == "b"


def test_start_container_explicit_unknown_raises():
    """Test an explicit start container that does not exist is an error"""
    flow = make_flow([container("a", text("t", "Hi"))], startContainerId="nope")

    with pytest.raises(GraphIntegrityError):
        FlowGraph(flow).start_container_id()


def test_start_container_holding_start_node():
    """Test the container with the start node is used when none is explicit"""
    flow = make_flow(
        [
            container("a", text("t", "Hi")),
            container("b", {"id": "s", "type": "start", "config": {}}),
        ],
        [edge("b", "a")],
    )

    assert FlowGraph(flow).start_container_id() == "b"


def test_start_container_first_root_with_warning(caplog):
    """Test the first container without incoming edges is used, warning on ambiguity"""
    # Arrange
    flow = make_flow(
        [
            container("a", text("t", "A")),
            container("b", text("u", "B")),
            container("c", text("v", "C")),
        ],
        [edge("a", "c")],
    )

    # Act
    with caplog.at_level(logging.WARNING, logger="chatflow"):
        start = FlowGraph(flow).start_container_id()

    # Assert
    assert start == "a"
    assert "without incoming edges" in caplog.text


def test_start_container_all_containers_in_cycle_raises():
    """Test a flow where every container has an incoming edge has no start"""
    flow = make_flow(
        [container("a", text("t", "A")), container("b", text("u", "B"))],
        [edge("a", "b"), edge("b", "a")],
    )

    with pytest.raises(GraphIntegrityError, match="no start container"):
        FlowGraph(flow).start_container_id()


def test_find_node_by_type():
    """Test the first node of a type is located with its position"""
    flow = make_flow(
        [
            container("a", text("t", "A")),
            container("b", text("u", "B"), {"id": "hook", "type": "webhook", "config": {}}),
        ]
    )

    container_id, index, node = FlowGraph(flow).find_node("webhook")

    assert (container_id, index, node.id) == ("b", 1, "hook")
    assert FlowGraph(flow).find_node("script") is None


# === VALIDATION ===


def test_valid_flow_has_no_issues():
    """Test a well-formed flow passes validation"""
    flow = make_flow(
        [
            container("a", condition("k", group("g1", comparison("x", "is_set")))),
            container("b", text("t", "B")),
        ],
        [edge("a", "b", "k-cond-g1")],
    )

    assert validate_flow(flow) == []
    ensure_valid(flow)


@pytest.mark.parametrize(
    "containers,edges,code",
    [
        (
            [container("a", text("t", "A")), container("a", text("u", "A2"))],
            [],
            "duplicate_container",
        ),
        (
            [container("a", text("t", "A")), container("b", text("t", "B"))],
            [edge("a", "b")],
            "duplicate_node",
        ),
        ([container("a", text("t", "A"))], [edge("a", "ghost")], "unknown_target"),
        ([container("a", text("t", "A"))], [edge("ghost", "a")], "unknown_source"),
        (
            [container("a", text("t", "A")), container("b", text("u", "B"))],
            [edge("a", "b", "t-btn-x")],
            "unknown_handle",
        ),
        (
            [
                container("a", text("t", "A")),
                container("b", text("u", "B")),
                container("c", text("v", "C")),
            ],
            [edge("a", "b"), edge("a", "c")],
            "ambiguous_edge",
        ),
        (
            [container("a", text("t", "A")), container("b", text("u", "B"))],
            [edge("a", "b"), edge("b", "a")],
            "no_start",
        ),
        ([], [], "empty_flow"),
    ],
)
def test_validation_issues(containers, edges, code):
    """Test each structural problem is reported with its code"""
    flow = make_flow(containers, edges)

    assert code in _codes(flow)
    with pytest.raises(FlowValidationError):
        ensure_valid(flow)


def test_empty_container_is_only_a_warning():
    """Test empty containers warn without failing publication"""
    # Arrange
    flow = make_flow([container("a", text("t", "A")), container("b")], [edge("a", "b")])

    # Act
    issues = validate_flow(flow)

    # Assert
    assert [(i.code, i.severity) for i in issues] == [("empty_container", "warning")]
    ensure_valid(flow)


def test_ensure_valid_lists_issues():
    """Test FlowValidationError carries every error found"""
    flow = make_flow([container("a", text("t", "A"))], [edge("a", "x"), edge("a", "y")])

    with pytest.raises(FlowValidationError) as exc_info:
        ensure_valid(flow)

    codes = {issue.code for issue in exc_info.value.issues}
    assert {"unknown_target", "ambiguous_edge"} <= codes
