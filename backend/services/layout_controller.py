"""Self-correcting layout loop against a rendering surface that measures nodes.

Node sizes are only known after the surface has rendered them, so one layout
cycle runs as a small state machine:

AwaitingMeasurement: poll frames until every node reports a size, or the
    retry budget is spent (then default sizes are used).
Computing: segment identification, parallel layout, convergence placement,
    serial layout, lane X assignment, center -> top-left conversion; the
    positions are pushed to the caller and patched onto the surface.
Validating: after two frames, re-measure gaps along every edge. Out of
    tolerance and below the iteration cap -> back to Computing.
Done: fit the viewport and signal completion.

Each call to ``run`` starts a new generation. Work belonging to an older
generation is gated at every suspension point and ends as SUPERSEDED.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, Field

from config import settings
from models.flow_model import FlowNode, NodePosition, ProcessSegment
from models.recipe_model import FlowEdge
from services.segment_identifier import identify_process_segments
from services.segment_layout import (
    ConvergenceStrategy,
    ParallelLayoutConfig,
    SerialLayoutConfig,
    calculate_convergence_x,
    calculate_convergence_y,
    layout_parallel_segments,
    layout_serial_segments,
    segment_edge_length,
    validate_segment_layout,
)

logger = logging.getLogger(__name__)


class RenderSurface(Protocol):
    """What the controller needs from the thing that draws nodes."""

    def get_nodes(self) -> list[FlowNode]: ...

    def get_edges(self) -> list[FlowEdge]: ...

    def apply_positions(self, positions: dict[str, NodePosition]) -> None:
        """Patch positions only; node identity and content stay untouched."""

    async def next_frame(self) -> None: ...

    def fit_view(self, padding: float) -> None: ...


class LayoutPhase(str, Enum):
    AWAITING_MEASUREMENT = "awaitingMeasurement"
    COMPUTING = "computing"
    VALIDATING = "validating"
    DONE = "done"


class LayoutOutcome(str, Enum):
    CONVERGED = "converged"
    ITERATION_CAP = "iterationCap"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    TIMED_OUT = "timedOut"


class LayoutConfig(BaseModel):
    """Configuration options for the controlled layout."""
    target_edge_length: float = Field(default=settings.target_edge_length)
    initial_y: float = Field(default=settings.initial_y)
    lane_width: float = Field(default=settings.lane_width)
    lane_gap: float = Field(default=settings.lane_gap)
    start_x: float = Field(default=settings.start_x)
    default_node_width: float = Field(default=settings.default_node_width)
    default_node_height: float = Field(default=settings.default_node_height)
    extraction_min_edge_length: float = Field(default=settings.extraction_min_edge_length)
    extraction_scale: float = Field(default=settings.extraction_scale)
    convergence_strategy: ConvergenceStrategy = Field(default=settings.convergence_strategy)
    tolerance: float = Field(default=settings.layout_tolerance)
    max_iterations: int = Field(default=settings.layout_max_iterations)
    measurement_retries: int = Field(default=settings.measurement_retries)
    fit_view_padding: float = Field(default=settings.fit_view_padding)


class GapCheck(BaseModel):
    total_edges: int = 0
    invalid_edges: int = 0
    max_error: float = 0


class LayoutReport(BaseModel):
    trigger: str
    generation: int
    outcome: LayoutOutcome
    iterations: int = 0
    used_default_sizes: bool = False
    positions: dict[str, NodePosition] = Field(default_factory=dict)
    gap_check: GapCheck = Field(default_factory=GapCheck)


@dataclass
class LayoutCycle:
    """Bookkeeping for one layout trigger; replaced wholesale on every new trigger."""
    generation: int
    trigger: str
    phase: LayoutPhase = LayoutPhase.AWAITING_MEASUREMENT
    iteration: int = 0
    retries: int = 0


# ---------- Geometry ----------

class LayoutPlan(BaseModel):
    """Positions plus what Validating needs: the intended gap per edge and the segments."""
    positions: dict[str, NodePosition] = Field(default_factory=dict)
    edge_lengths: dict[str, float] = Field(default_factory=dict)
    parallel_segments: list[ProcessSegment] = Field(default_factory=list)
    serial_segments: list[ProcessSegment] = Field(default_factory=list)


def _node_sizes(nodes: list[FlowNode], config: LayoutConfig) -> tuple[dict[str, float], dict[str, float]]:
    widths = {n.id: n.width or config.default_node_width for n in nodes}
    heights = {n.id: n.height or config.default_node_height for n in nodes}
    return widths, heights


def _intended_edge_lengths(
    edges: list[FlowEdge], parallel: list[ProcessSegment], parallel_config: ParallelLayoutConfig
) -> dict[str, float]:
    # Edges inside a parallel segment use that segment's (possibly compressed) length
    segment_length: dict[str, tuple[str, float]] = {}
    for segment in parallel:
        length = segment_edge_length(segment, parallel_config)
        for node in segment.nodes:
            segment_length[node.id] = (segment.id, length)

    lengths: dict[str, float] = {}
    for edge in edges:
        source = segment_length.get(edge.source)
        target = segment_length.get(edge.target)
        if source is not None and target is not None and source[0] == target[0]:
            lengths[edge.id] = source[1]
        else:
            lengths[edge.id] = parallel_config.target_edge_length
    return lengths


def plan_layout(
    nodes: list[FlowNode], edges: list[FlowEdge], config: LayoutConfig | None = None
) -> LayoutPlan:
    """Compute top-left positions for every node. Pure; the surface is not touched."""
    if config is None:
        config = LayoutConfig()
    if not nodes:
        return LayoutPlan()

    widths, heights = _node_sizes(nodes, config)
    identification = identify_process_segments(nodes, edges)
    parallel = identification.parallel_segments
    serial = identification.serial_segments
    convergence = identification.convergence_node
    parallel_config = ParallelLayoutConfig(
        target_edge_length=config.target_edge_length,
        initial_y=config.initial_y,
        extraction_min_edge_length=config.extraction_min_edge_length,
        extraction_scale=config.extraction_scale,
        default_node_height=config.default_node_height,
    )

    # One lane per distinct display order
    orders = sorted({n.data.display_order for n in nodes})
    lane_index = {order: i for i, order in enumerate(orders)}
    center_x = {
        n.id: config.start_x
        + lane_index[n.data.display_order] * (config.lane_width + config.lane_gap)
        + widths[n.id] / 2
        for n in nodes
    }
    center_y: dict[str, float] = {}

    parallel_y = layout_parallel_segments(parallel, heights, parallel_config)
    center_y.update(parallel_y)

    convergence_center_y = config.initial_y
    if convergence is not None:
        top = calculate_convergence_y(
            parallel,
            parallel_y,
            heights,
            config.target_edge_length,
            config.convergence_strategy,
            config.default_node_height,
        )
        convergence_center_y = top + heights[convergence.id] / 2
        center_y[convergence.id] = convergence_center_y

        convergence_x = calculate_convergence_x(parallel, center_x)
        if convergence_x is not None:
            for segment in serial:
                for node in segment.nodes:
                    center_x[node.id] = convergence_x
            center_x[convergence.id] = convergence_x

    serial_y = layout_serial_segments(
        serial,
        convergence_center_y,
        heights,
        SerialLayoutConfig(
            target_edge_length=config.target_edge_length,
            default_node_height=config.default_node_height,
        ),
        fixed_positions={convergence.id: convergence_center_y} if convergence else None,
    )
    center_y.update(serial_y)

    unplaced = [n.id for n in nodes if n.id not in center_y]
    if unplaced:
        logger.warning("Nodes outside any segment, using default Y: %s", ", ".join(unplaced))

    return LayoutPlan(
        positions={
            n.id: NodePosition(
                x=center_x[n.id] - widths[n.id] / 2,
                y=center_y.get(n.id, config.initial_y) - heights[n.id] / 2,
            )
            for n in nodes
        },
        edge_lengths=_intended_edge_lengths(edges, parallel, parallel_config),
        parallel_segments=parallel,
        serial_segments=serial,
    )


def check_edge_gaps(
    nodes: list[FlowNode],
    edges: list[FlowEdge],
    config: LayoutConfig | None = None,
    edge_lengths: dict[str, float] | None = None,
) -> GapCheck:
    """Compare the vertical gap along each edge to its intended length.

    edge_lengths comes from the plan that placed the nodes; edges missing
    from it are held to the target length. Edges into multi-input nodes are
    routed through corridors and skipped.
    """
    if config is None:
        config = LayoutConfig()
    intended = edge_lengths or {}
    node_by_id = {n.id: n for n in nodes}
    in_degree: dict[str, int] = {}
    for edge in edges:
        in_degree[edge.target] = in_degree.get(edge.target, 0) + 1

    check = GapCheck()
    for edge in edges:
        source = node_by_id.get(edge.source)
        target = node_by_id.get(edge.target)
        if source is None or target is None or in_degree[edge.target] > 1:
            continue
        check.total_edges += 1
        source_bottom = source.position.y + (source.height or config.default_node_height)
        expected = intended.get(edge.id, config.target_edge_length)
        error = abs((target.position.y - source_bottom) - expected)
        if error > config.tolerance:
            check.invalid_edges += 1
            check.max_error = max(check.max_error, error)
    return check


def _log_segment_stats(plan: LayoutPlan, nodes: list[FlowNode], config: LayoutConfig) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    _, heights = _node_sizes(nodes, config)
    center_y = {n.id: n.position.y + heights[n.id] / 2 for n in nodes}
    stats = validate_segment_layout(
        plan.parallel_segments, plan.serial_segments, center_y, heights, config.default_node_height
    )
    logger.debug(
        "Parallel edges: %d, avg %.1f; serial edges: %d, avg %.1f",
        stats.total_parallel_edges, stats.avg_parallel_edge_length,
        stats.total_serial_edges, stats.avg_serial_edge_length,
    )
    for segment in stats.parallel_segment_stats:
        logger.debug(
            "  %s: avg %.1f, std %.1f, range %.1f..%.1f",
            segment.segment_id, segment.avg_edge_length, segment.std_deviation,
            segment.min_edge_length, segment.max_edge_length,
        )


# ---------- Controller ----------

class LayoutController:
    """Drives layout cycles against a RenderSurface.

    on_nodes_update receives every computed position map (the caller's
    controlled state); on_complete receives the final report of each cycle
    that was not superseded.
    """

    def __init__(
        self,
        surface: RenderSurface,
        config: LayoutConfig | None = None,
        on_nodes_update: Optional[Callable[[dict[str, NodePosition]], None]] = None,
        on_complete: Optional[Callable[[LayoutReport], None]] = None,
    ):
        self.surface = surface
        self.config = config or LayoutConfig()
        self.on_nodes_update = on_nodes_update
        self.on_complete = on_complete
        self._generation = 0
        self.cycle: Optional[LayoutCycle] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    def _start_cycle(self, trigger: str) -> LayoutCycle:
        self._generation += 1
        self.cycle = LayoutCycle(generation=self._generation, trigger=trigger)
        logger.debug("Layout cycle %d started for trigger %s", self._generation, trigger)
        return self.cycle

    def _is_stale(self, cycle: LayoutCycle) -> bool:
        return cycle.generation != self._generation

    def _enter(self, cycle: LayoutCycle, phase: LayoutPhase) -> None:
        logger.debug(
            "Layout cycle %d: %s -> %s (iteration %d)",
            cycle.generation, cycle.phase.value, phase.value, cycle.iteration,
        )
        cycle.phase = phase

    def _report(self, cycle: LayoutCycle, outcome: LayoutOutcome, **fields) -> LayoutReport:
        return LayoutReport(
            trigger=cycle.trigger,
            generation=cycle.generation,
            outcome=outcome,
            iterations=cycle.iteration,
            **fields,
        )

    async def _await_measurement(self, cycle: LayoutCycle) -> bool:
        """Return True when every node is measured, False when falling back to defaults."""
        while True:
            nodes = self.surface.get_nodes()
            if nodes and all(n.is_measured for n in nodes):
                return True
            if cycle.retries >= self.config.measurement_retries:
                unmeasured = [n.id for n in nodes if not n.is_measured]
                logger.warning(
                    "Measurement stalled after %d retries; using default sizes for %s",
                    cycle.retries, ", ".join(unmeasured) or "(no nodes)",
                )
                return False
            cycle.retries += 1
            await self.surface.next_frame()
            if self._is_stale(cycle):
                return False

    async def run(self, trigger: str) -> LayoutReport:
        """Run one full layout cycle for the given trigger."""
        cycle = self._start_cycle(trigger)
        positions: dict[str, NodePosition] = {}
        used_defaults = False
        check = GapCheck()

        try:
            measured = await self._await_measurement(cycle)
            if self._is_stale(cycle):
                return self._report(cycle, LayoutOutcome.SUPERSEDED)
            used_defaults = not measured

            while True:
                self._enter(cycle, LayoutPhase.COMPUTING)
                plan = plan_layout(
                    self.surface.get_nodes(), self.surface.get_edges(), self.config
                )
                positions = plan.positions
                if self.on_nodes_update is not None:
                    self.on_nodes_update(positions)
                self.surface.apply_positions(positions)

                self._enter(cycle, LayoutPhase.VALIDATING)
                await self.surface.next_frame()
                await self.surface.next_frame()
                if self._is_stale(cycle):
                    return self._report(cycle, LayoutOutcome.SUPERSEDED)

                measured_nodes = self.surface.get_nodes()
                check = check_edge_gaps(
                    measured_nodes, self.surface.get_edges(), self.config, plan.edge_lengths
                )
                _log_segment_stats(plan, measured_nodes, self.config)
                if check.invalid_edges and cycle.iteration < self.config.max_iterations:
                    cycle.iteration += 1
                    logger.debug(
                        "%d edges out of tolerance (max error %.1f); relayout %d",
                        check.invalid_edges, check.max_error, cycle.iteration,
                    )
                    continue
                break
        except Exception:
            logger.exception("Layout computation failed for trigger %s", trigger)
            self._enter(cycle, LayoutPhase.DONE)
            report = self._report(cycle, LayoutOutcome.FAILED, used_default_sizes=used_defaults)
            self._complete(report)
            return report

        if check.invalid_edges:
            outcome = LayoutOutcome.ITERATION_CAP
            logger.warning(
                "Iteration cap reached (%d); %d edges still off by up to %.1f",
                cycle.iteration, check.invalid_edges, check.max_error,
            )
        else:
            outcome = LayoutOutcome.CONVERGED
            logger.info("Layout converged after %d relayouts", cycle.iteration)

        self._enter(cycle, LayoutPhase.DONE)
        self.surface.fit_view(self.config.fit_view_padding)
        report = self._report(
            cycle, outcome,
            used_default_sizes=used_defaults,
            positions=positions,
            gap_check=check,
        )
        self._complete(report)
        return report

    def _complete(self, report: LayoutReport) -> None:
        if self.on_complete is not None:
            self.on_complete(report)

    async def run_with_timeout(self, trigger: str, timeout: float | None = None) -> LayoutReport:
        """Run a cycle, but report TIMED_OUT if it has not finished in time.

        The cycle itself keeps running; its eventual result still reaches
        on_complete.
        """
        if timeout is None:
            timeout = settings.layout_timeout_seconds
        task = asyncio.ensure_future(self.run(trigger))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()
        logger.warning("Layout for trigger %s not ready after %.1fs; forcing ready", trigger, timeout)
        self._pending = task
        return LayoutReport(
            trigger=trigger,
            generation=self._generation,
            outcome=LayoutOutcome.TIMED_OUT,
            iterations=self.cycle.iteration if self.cycle else 0,
        )


# ---------- In-memory surface ----------

class StaticRenderSurface:
    """A surface whose node sizes never change; frames are plain event-loop yields."""

    def __init__(self, nodes: list[FlowNode], edges: list[FlowEdge]):
        self.nodes = [n.model_copy(deep=True) for n in nodes]
        self.edges = list(edges)
        self.fit_padding: Optional[float] = None

    def get_nodes(self) -> list[FlowNode]:
        return self.nodes

    def get_edges(self) -> list[FlowEdge]:
        return self.edges

    def apply_positions(self, positions: dict[str, NodePosition]) -> None:
        self.nodes = [
            n.model_copy(update={"position": positions[n.id]}) if n.id in positions else n
            for n in self.nodes
        ]

    async def next_frame(self) -> None:
        await asyncio.sleep(0)

    def fit_view(self, padding: float) -> None:
        self.fit_padding = padding
