"""Tests for the self-correcting layout controller."""

import asyncio
import logging

import pytest

from models.flow_model import FlowNode, NodeData, NodePosition
from models.recipe_model import FlowEdge
from services.layout_controller import (
    LayoutConfig,
    LayoutController,
    LayoutOutcome,
    LayoutPhase,
    StaticRenderSurface,
    check_edge_gaps,
    plan_layout,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _node(node_id: str, display_order: int, width: float | None = 200,
          height: float | None = 100) -> FlowNode:
    return FlowNode(
        id=node_id,
        width=width,
        height=height,
        data=NodeData(process_id=node_id, process_type="dissolution", display_order=display_order),
    )


def _graph() -> tuple[list[FlowNode], list[FlowEdge]]:
    """A and B converge into C, which continues to D."""
    nodes = [_node("A", 1), _node("B", 2), _node("C", 3), _node("D", 3)]
    edges = [
        FlowEdge(id="e1", source="A", target="C", sequence_order=1),
        FlowEdge(id="e2", source="B", target="C", sequence_order=2),
        FlowEdge(id="e3", source="C", target="D"),
    ]
    return nodes, edges


class FakeSurface:
    """Surface whose sizes appear after some frames and may grow on every repaint."""

    def __init__(self, nodes, edges, measure_after_frames=0, growth=0.0, frame_delay=0.0,
                 broken=False):
        self.nodes = nodes
        self.edges = edges
        self.measure_after_frames = measure_after_frames
        self.growth = growth
        self.frame_delay = frame_delay
        self.broken = broken
        self.frames = 0
        self.applied: list[dict[str, NodePosition]] = []
        self.fit_calls: list[float] = []

    def get_nodes(self):
        if self.frames < self.measure_after_frames:
            return [n.model_copy(update={"width": None, "height": None}) for n in self.nodes]
        return self.nodes

    def get_edges(self):
        if self.broken:
            raise RuntimeError("surface gone")
        return self.edges

    def apply_positions(self, positions):
        self.applied.append(positions)
        self.nodes = [
            n.model_copy(update={
                "position": positions[n.id],
                "height": (n.height or 120) + self.growth,
            })
            for n in self.nodes
        ]

    async def next_frame(self):
        self.frames += 1
        await asyncio.sleep(self.frame_delay)

    def fit_view(self, padding):
        self.fit_calls.append(padding)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def test_plan_positions_top_left():
    """Positions are top-left, merge nodes centered under the branches."""
    nodes, edges = _graph()
    positions = plan_layout(nodes, edges).positions

    assert positions["A"] == NodePosition(x=150, y=30)
    assert positions["B"] == NodePosition(x=514, y=30)
    # convergence and serial nodes centered under the branches
    assert positions["C"].x == pytest.approx(332)
    assert positions["D"].x == pytest.approx(332)
    assert positions["C"].y == pytest.approx(250)
    assert positions["D"].y == pytest.approx(470)


def test_plan_unmeasured_nodes_use_defaults():
    """Unmeasured nodes are placed with default sizes."""
    nodes = [_node("A", 1, None, None)]
    positions = plan_layout(nodes, []).positions

    assert positions["A"] == NodePosition(x=150, y=80 - 60)


def test_plan_empty():
    """Empty graph should return an empty plan."""
    assert plan_layout([], []).positions == {}


def test_gap_check_skips_multi_input_targets():
    """Edges into merge nodes are not gap-checked."""
    nodes, edges = _graph()
    positions = plan_layout(nodes, edges).positions
    placed = [n.model_copy(update={"position": positions[n.id]}) for n in nodes]

    check = check_edge_gaps(placed, edges)

    assert check.total_edges == 1
    assert check.invalid_edges == 0


# ---------------------------------------------------------------------------
# Control loop
# ---------------------------------------------------------------------------

def test_converges_in_one_pass():
    """Stable sizes converge on the first pass."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges)
    updates, completed = [], []
    controller = LayoutController(surface, on_nodes_update=updates.append,
                                  on_complete=completed.append)

    report = asyncio.run(controller.run("t1"))

    assert report.outcome == LayoutOutcome.CONVERGED
    assert report.iterations == 0
    assert len(surface.applied) == 1
    assert updates == surface.applied
    assert surface.fit_calls == [0.2]
    assert completed == [report]
    assert controller.cycle.phase == LayoutPhase.DONE


def test_iteration_cap_when_sizes_keep_changing():
    """Growing nodes stop at the iteration cap."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, growth=40)
    controller = LayoutController(surface)

    report = asyncio.run(controller.run("t1"))

    assert report.outcome == LayoutOutcome.ITERATION_CAP
    assert report.iterations == 3
    assert len(surface.applied) == 4
    assert report.gap_check.invalid_edges > 0
    assert surface.fit_calls == [0.2]


def test_new_trigger_resets_counters():
    """A new trigger starts with fresh counters."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, growth=40)
    controller = LayoutController(surface)
    asyncio.run(controller.run("t1"))

    surface.growth = 0
    report = asyncio.run(controller.run("t2"))

    assert report.outcome == LayoutOutcome.CONVERGED
    assert report.iterations == 0
    assert report.generation == 2


def test_waits_for_measurement():
    """Layout waits for the surface to measure nodes."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, measure_after_frames=2)
    report = asyncio.run(LayoutController(surface).run("t1"))

    assert report.outcome == LayoutOutcome.CONVERGED
    assert not report.used_default_sizes


def test_measurement_stall_falls_back_to_defaults():
    """A stalled measurement falls back to default sizes."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, measure_after_frames=1000)
    controller = LayoutController(surface, LayoutConfig(measurement_retries=5))

    report = asyncio.run(controller.run("t1"))

    assert report.used_default_sizes
    assert controller.cycle.retries == 5
    assert report.outcome == LayoutOutcome.CONVERGED


def test_failure_still_completes():
    """A failing surface still signals completion."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, broken=True)
    completed = []
    controller = LayoutController(surface, on_complete=completed.append)

    report = asyncio.run(controller.run("t1"))

    assert report.outcome == LayoutOutcome.FAILED
    assert completed == [report]
    assert surface.applied == []
    assert surface.fit_calls == []


def test_newer_trigger_supersedes_running_cycle():
    """A newer trigger supersedes the running cycle."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, measure_after_frames=1)
    completed = []
    controller = LayoutController(surface, on_complete=completed.append)

    async def scenario():
        first = asyncio.ensure_future(controller.run("old"))
        await asyncio.sleep(0)
        second = await controller.run("new")
        return await first, second

    old, new = asyncio.run(scenario())

    assert old.outcome == LayoutOutcome.SUPERSEDED
    assert new.outcome == LayoutOutcome.CONVERGED
    assert [r.trigger for r in completed] == ["new"]


def test_caller_timeout_forces_ready():
    """A slow cycle is reported as timed out."""
    nodes, edges = _graph()
    surface = FakeSurface(nodes, edges, frame_delay=1.0)
    controller = LayoutController(surface)

    report = asyncio.run(controller.run_with_timeout("slow", timeout=0.05))

    assert report.outcome == LayoutOutcome.TIMED_OUT
    assert report.trigger == "slow"


def test_static_surface_round_trip():
    """The static surface keeps positions and leaves inputs alone."""
    nodes, edges = _graph()
    surface = StaticRenderSurface(nodes, edges)

    report = asyncio.run(LayoutController(surface).run_with_timeout("static"))

    assert report.outcome == LayoutOutcome.CONVERGED
    assert {n.id: n.position for n in surface.get_nodes()} == report.positions
    assert surface.fit_padding == 0.2
    # caller's nodes are untouched
    assert nodes[0].position == NodePosition(x=0, y=0)


# ---------------------------------------------------------------------------
# Compressed extraction chains
# ---------------------------------------------------------------------------

def _extraction_chain(count: int) -> tuple[list[FlowNode], list[FlowEdge]]:
    nodes = [
        FlowNode(id=f"X{i}", width=200, height=100,
                 data=NodeData(process_id=f"X{i}", process_type="extraction"))
        for i in range(count)
    ]
    edges = [
        FlowEdge(id=f"x{i}", source=f"X{i}", target=f"X{i + 1}")
        for i in range(count - 1)
    ]
    return nodes, edges


def test_plan_records_compressed_edge_length():
    """Edges inside an extraction chain are planned shorter than the target length."""
    nodes, edges = _extraction_chain(5)
    plan = plan_layout(nodes, edges)

    assert set(plan.edge_lengths) == {"x0", "x1", "x2", "x3"}
    assert all(length == pytest.approx(120 * (3 / 5) ** 0.5) for length in plan.edge_lengths.values())
    assert plan.positions["X1"].y - plan.positions["X0"].y == pytest.approx(100 + 120 * (3 / 5) ** 0.5)


def test_gap_check_uses_planned_lengths():
    """A compressed chain is valid against its plan but not against the bare target."""
    nodes, edges = _extraction_chain(5)
    plan = plan_layout(nodes, edges)
    placed = [n.model_copy(update={"position": plan.positions[n.id]}) for n in nodes]

    assert check_edge_gaps(placed, edges, edge_lengths=plan.edge_lengths).invalid_edges == 0
    assert check_edge_gaps(placed, edges).invalid_edges == 4


def test_extraction_chain_converges_without_relayout():
    """A long extraction chain laid out as intended converges on the first pass."""
    nodes, edges = _extraction_chain(5)
    surface = StaticRenderSurface(nodes, edges)

    report = asyncio.run(LayoutController(surface).run("extraction"))

    assert report.outcome == LayoutOutcome.CONVERGED
    assert report.iterations == 0
    assert report.gap_check.total_edges == 4


def test_segment_stats_logged_at_debug(caplog):
    """Each validating pass logs edge-length statistics per segment."""
    nodes, edges = _graph()
    surface = StaticRenderSurface(nodes, edges)

    with caplog.at_level(logging.DEBUG, logger="services.layout_controller"):
        asyncio.run(LayoutController(surface).run("stats"))

    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("Parallel edges: 0") and "serial edges: 1, avg 120.0" in m
               for m in messages)
