"""Tests for the heuristic auto-layout."""

import pytest

from models.flow_model import FlowNode, InputSource, NodeData, NodeType
from models.recipe_model import FlowEdge, ProcessType, SubStep
from services.auto_layout import (
    AutoLayoutConfig,
    cluster_sizes,
    compute_auto_layout,
    estimate_node_height,
    estimate_text_lines,
    reverse_levels,
    tiered_width,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _summary(node_id: str) -> FlowNode:
    return FlowNode(id=node_id, data=NodeData(process_id=node_id, process_name=node_id))


def _sub_step(node_id: str, process_type: ProcessType, **kwargs) -> FlowNode:
    step = SubStep(id=node_id, process_type=process_type, **kwargs)
    return FlowNode(id=node_id, type=NodeType.SUB_STEP,
                    data=NodeData(process_id="P", is_expanded=True, sub_step=step))


def _edge(source: str, target: str, order: int = 1) -> FlowEdge:
    return FlowEdge(id=f"{source}-{target}", source=source, target=target, sequence_order=order)


CONFIG = AutoLayoutConfig()


# ---------------------------------------------------------------------------
# Size estimation
# ---------------------------------------------------------------------------

def test_tiered_width():
    """Width grows with the number of inputs."""
    assert [tiered_width(n, CONFIG) for n in (0, 2, 3, 4, 5, 9)] == [200, 200, 280, 280, 360, 360]


def test_estimate_text_lines():
    """Text wraps by characters per available width."""
    assert estimate_text_lines("", 100, 8) == 0
    assert estimate_text_lines("abcdefghij", 40, 8) == 2
    assert estimate_text_lines("abc", 4, 8) == 1


def test_summary_node_height():
    """Summary nodes have a fixed height."""
    assert estimate_node_height(_summary("A"), 200, CONFIG) == 90


def test_sub_step_heights_by_type():
    """Parameter lines depend on the process type."""
    dissolution = _sub_step("d", ProcessType.DISSOLUTION)
    compounding = _sub_step("c", ProcessType.COMPOUNDING)
    transfer = _sub_step("t", ProcessType.TRANSFER,
                         params={"transferParams": {"waterVolume": 100, "cleaning": True}})

    assert estimate_node_height(dissolution, 200, CONFIG) == 40 + 6 * 20 + 20
    assert estimate_node_height(compounding, 200, CONFIG) == 40 + 5 * 20 + 20
    assert estimate_node_height(transfer, 200, CONFIG) == 40 + 5 * 20 + 20


def test_compounding_height_grows_with_feeds():
    """Each feed adds a line to a compounding node."""
    node = _sub_step("c", ProcessType.COMPOUNDING)
    node.data.input_sources = [
        InputSource(node_id=i, name=i, process_id=i, process_name=i, sequence_order=n)
        for n, i in enumerate(["a", "b"], start=1)
    ]

    assert estimate_node_height(node, 200, CONFIG) == 40 + (2 + 3 + 1 + 2) * 20 + 20


def test_long_ingredients_wrap():
    """Long ingredient text makes a node taller."""
    short = _sub_step("s", ProcessType.FILTRATION, ingredients="糖")
    long = _sub_step("l", ProcessType.FILTRATION, ingredients="白砂糖、柠檬酸、维生素C" * 6)

    assert estimate_node_height(long, 200, CONFIG) > estimate_node_height(short, 200, CONFIG)


# ---------------------------------------------------------------------------
# Size clustering
# ---------------------------------------------------------------------------

def test_cluster_sizes_groups_close_values():
    """Close sizes share their cluster's maximum."""
    assert cluster_sizes({"a": 100, "b": 110, "c": 200}, 0.15) == {"a": 110, "b": 110, "c": 200}


def test_singleton_merges_with_relaxed_threshold():
    """A lone size joins its neighbour under the relaxed threshold."""
    assert cluster_sizes({"a": 100, "b": 120}, 0.15) == {"a": 120, "b": 120}
    assert cluster_sizes({"a": 100, "b": 120}, 0.15, merge_singletons=False) == {"a": 100, "b": 120}


def test_cluster_sizes_empty():
    """No sizes, no clusters."""
    assert cluster_sizes({}, 0.15) == {}


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------

def test_reverse_levels():
    """Levels count steps to the nearest terminal node."""
    nodes = [_summary(i) for i in "ABCDE"]
    edges = [_edge("A", "C"), _edge("B", "C"), _edge("C", "D")]

    assert reverse_levels(nodes, edges) == {"A": 2, "B": 2, "C": 1, "D": 0, "E": 0}


def test_reverse_levels_without_terminal_nodes():
    """A pure cycle puts every node on level 0."""
    nodes = [_summary("A"), _summary("B")]

    assert reverse_levels(nodes, [_edge("A", "B"), _edge("B", "A")]) == {"A": 0, "B": 0}


# ---------------------------------------------------------------------------
# Full layout
# ---------------------------------------------------------------------------

def _converging():
    nodes = [_summary(i) for i in "ABCD"]
    edges = [_edge("A", "C", 2), _edge("B", "C", 1), _edge("C", "D")]
    return nodes, edges


def test_levels_become_rows():
    """Each reverse level becomes one row with input-aware spacing."""
    nodes, edges = _converging()
    result = compute_auto_layout(nodes, edges)
    y = {k: p.y for k, p in result.positions.items()}

    assert y["A"] == y["B"] == 50 - 45
    # extra room for the second input of C
    assert y["C"] == 50 + 45 + 45 + 60 + 30 - 45
    assert y["D"] == y["C"] + 45 + 45 + 60


def test_branches_follow_sequence_order_and_center():
    """Branches follow sequence order and the merge node is centered."""
    nodes, edges = _converging()
    result = compute_auto_layout(nodes, edges)
    center = {k: p.x + result.sizes[k].width / 2 for k, p in result.positions.items()}

    assert center["B"] < center["A"]
    assert center["C"] == pytest.approx((center["A"] + center["B"]) / 2)
    assert center["D"] == pytest.approx(center["C"])


def test_sizes_are_reported():
    """Every node gets an estimated size."""
    nodes, edges = _converging()
    result = compute_auto_layout(nodes, edges)

    assert set(result.sizes) == {"A", "B", "C", "D"}
    assert result.sizes["C"].width == 200
    assert result.sizes["A"].height == 90


def test_cycle_still_lays_out():
    """A cyclic graph still gets positions."""
    nodes = [_summary("A"), _summary("B")]
    result = compute_auto_layout(nodes, [_edge("A", "B"), _edge("B", "A")])

    assert set(result.positions) == {"A", "B"}


def test_empty_input():
    """Empty input should return an empty layout."""
    assert compute_auto_layout([], []).positions == {}
