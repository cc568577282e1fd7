"""Y-coordinate calculators for parallel and serial process segments.

All Y values are node centers. X is never computed here except for the
convergence node, which sits at the weighted centroid of its branches.

Parallel segments are grouped by segment type (process type of their first
node). Each group is laid out relative to y=0, and shorter groups are pushed
down so that every group ends at the same Y. This keeps the tail edges into
the convergence node uniform even when branches differ in length.
"""

import math
import statistics
from typing import Literal

from pydantic import BaseModel, Field

from config import settings
from models.flow_model import ProcessSegment
from models.recipe_model import ProcessType

ConvergenceStrategy = Literal["max", "weighted", "median"]


class ParallelLayoutConfig(BaseModel):
    """Configuration for parallel segment layout."""
    target_edge_length: float = Field(default=settings.target_edge_length)
    initial_y: float = Field(default=settings.initial_y)
    extraction_min_edge_length: float = Field(default=settings.extraction_min_edge_length)
    extraction_scale: float = Field(default=settings.extraction_scale)
    default_node_height: float = Field(default=settings.default_node_height)


class SerialLayoutConfig(BaseModel):
    """Configuration for serial segment layout."""
    target_edge_length: float = Field(default=settings.target_edge_length)
    default_node_height: float = Field(default=settings.default_node_height)


# ---------- Edge lengths ----------

def extraction_edge_length(node_count: int, base: float, scale: float, min_edge: float) -> float:
    """Edge length for extraction chains: shrinks with sqrt(3/n), clamped to [min_edge, base]."""
    raw = base * scale * math.sqrt(3 / max(node_count, 3))
    return min(max(raw, min_edge), base)


def segment_type(segment: ProcessSegment) -> str:
    return segment.nodes[0].segment_type


def segment_edge_length(segment: ProcessSegment, config: ParallelLayoutConfig) -> float:
    if segment_type(segment) == ProcessType.EXTRACTION.value:
        return extraction_edge_length(
            len(segment.nodes),
            config.target_edge_length,
            config.extraction_scale,
            config.extraction_min_edge_length,
        )
    return config.target_edge_length


def _spacing(upper: float, edge_length: float, lower: float) -> float:
    # center-to-center: half of upper + edge + half of lower
    return upper / 2 + edge_length + lower / 2


# ---------- Parallel segments ----------

def _relative_layout(
    segment: ProcessSegment,
    node_heights: dict[str, float],
    edge_length: float,
    default_height: float,
) -> tuple[dict[str, float], float]:
    """Lay out a segment with its first node centered at y=0. Returns (ys, bottom)."""
    ys: dict[str, float] = {}
    current = 0.0
    for idx, node in enumerate(segment.nodes):
        ys[node.id] = current
        if idx < len(segment.nodes) - 1:
            nxt = segment.nodes[idx + 1]
            current += _spacing(
                node_heights.get(node.id) or default_height,
                edge_length,
                node_heights.get(nxt.id) or default_height,
            )
    last = segment.nodes[-1]
    bottom = current + (node_heights.get(last.id) or default_height) / 2
    return ys, bottom


def layout_parallel_segments(
    segments: list[ProcessSegment],
    node_heights: dict[str, float],
    config: ParallelLayoutConfig | None = None,
) -> dict[str, float]:
    """Compute center Y for every node in the parallel segments."""
    if config is None:
        config = ParallelLayoutConfig()

    groups: dict[str, list[ProcessSegment]] = {}
    for segment in segments:
        if segment.nodes:
            groups.setdefault(segment_type(segment), []).append(segment)

    relative: dict[str, tuple[dict[str, float], float]] = {}
    group_span: dict[str, float] = {}
    for key, members in groups.items():
        span = 0.0
        for segment in members:
            ys, bottom = _relative_layout(
                segment, node_heights, segment_edge_length(segment, config),
                config.default_node_height,
            )
            relative[segment.id] = (ys, bottom)
            span = max(span, bottom)
        group_span[key] = span

    global_max_span = max(group_span.values(), default=0.0)

    positions: dict[str, float] = {}
    for key, members in groups.items():
        group_start = config.initial_y + (global_max_span - group_span[key])
        for segment in members:
            ys, _ = relative[segment.id]
            for node_id, rel_y in ys.items():
                positions[node_id] = group_start + rel_y
    return positions


# ---------- Convergence node ----------

def calculate_convergence_y(
    segments: list[ProcessSegment],
    node_y_positions: dict[str, float],
    node_heights: dict[str, float],
    target_edge_length: float,
    strategy: ConvergenceStrategy = "max",
    default_height: float = settings.default_node_height,
) -> float:
    """Return the TOP Y of the convergence node.

    Strategies:
    - max: largest branch end (recommended); no incoming edge is shorter than the target
    - weighted: branch ends averaged by node count
    - median: median of branch ends
    """
    if not segments:
        return settings.initial_y

    end_ys = []
    for segment in segments:
        last = segment.nodes[-1]
        last_y = node_y_positions.get(last.id, settings.initial_y)
        end_ys.append(last_y + (node_heights.get(last.id) or default_height) / 2 + target_edge_length)

    if strategy == "weighted":
        total = sum(len(s.nodes) for s in segments)
        if total == 0:
            return max(end_ys)
        return sum(y * len(s.nodes) / total for y, s in zip(end_ys, segments))
    if strategy == "median":
        return statistics.median(end_ys)
    return max(end_ys)


def calculate_convergence_x(
    segments: list[ProcessSegment], node_x_positions: dict[str, float]
) -> float | None:
    """Weighted centroid of branch centroids, weight = sqrt(branch node count)."""
    weighted_sum = 0.0
    total_weight = 0.0
    for segment in segments:
        xs = [node_x_positions[n.id] for n in segment.nodes if n.id in node_x_positions]
        if not xs:
            continue
        weight = math.sqrt(len(xs))
        weighted_sum += (sum(xs) / len(xs)) * weight
        total_weight += weight
    if total_weight == 0:
        return None
    return weighted_sum / total_weight


# ---------- Serial segments ----------

def layout_serial_segments(
    segments: list[ProcessSegment],
    start_y: float,
    node_heights: dict[str, float],
    config: SerialLayoutConfig | None = None,
    fixed_positions: dict[str, float] | None = None,
) -> dict[str, float]:
    """Stack serial nodes downward from start_y.

    Nodes present in fixed_positions (typically the convergence node) keep
    their Y; stacking continues from there.
    """
    if config is None:
        config = SerialLayoutConfig()
    fixed = fixed_positions or {}

    positions: dict[str, float] = {}
    prev_id: str | None = None
    current = start_y
    for segment in segments:
        for node in segment.nodes:
            if node.id in positions:
                continue
            if node.id in fixed:
                current = fixed[node.id]
            elif prev_id is not None:
                current += _spacing(
                    node_heights.get(prev_id) or config.default_node_height,
                    config.target_edge_length,
                    node_heights.get(node.id) or config.default_node_height,
                )
            positions[node.id] = current
            prev_id = node.id
    return positions


# ---------- Statistics ----------

class EdgeLengthStats(BaseModel):
    segment_id: str = ""
    avg_edge_length: float = 0
    std_deviation: float = 0
    all_edge_lengths: list[float] = Field(default_factory=list)
    min_edge_length: float = 0
    max_edge_length: float = 0


class SegmentLayoutValidation(BaseModel):
    parallel_segment_stats: list[EdgeLengthStats] = Field(default_factory=list)
    serial_segment_stats: EdgeLengthStats = Field(default_factory=EdgeLengthStats)
    total_parallel_edges: int = 0
    total_serial_edges: int = 0
    avg_parallel_edge_length: float = 0
    avg_serial_edge_length: float = 0


def _stats(segment_id: str, lengths: list[float]) -> EdgeLengthStats:
    if not lengths:
        return EdgeLengthStats(segment_id=segment_id)
    return EdgeLengthStats(
        segment_id=segment_id,
        avg_edge_length=statistics.fmean(lengths),
        std_deviation=statistics.pstdev(lengths),
        all_edge_lengths=lengths,
        min_edge_length=min(lengths),
        max_edge_length=max(lengths),
    )


def validate_segment_layout(
    parallel_segments: list[ProcessSegment],
    serial_segments: list[ProcessSegment],
    center_y: dict[str, float],
    node_heights: dict[str, float],
    default_height: float = settings.default_node_height,
) -> SegmentLayoutValidation:
    """Edge-length statistics (target top minus source bottom) per segment."""

    def edge_lengths(segment: ProcessSegment) -> list[float]:
        lengths = []
        for source, target in zip(segment.nodes, segment.nodes[1:]):
            if source.id not in center_y or target.id not in center_y:
                continue
            source_bottom = center_y[source.id] + (node_heights.get(source.id) or default_height) / 2
            target_top = center_y[target.id] - (node_heights.get(target.id) or default_height) / 2
            lengths.append(target_top - source_bottom)
        return lengths

    parallel_stats = [_stats(s.id, edge_lengths(s)) for s in parallel_segments]
    serial_lengths = [length for s in serial_segments for length in edge_lengths(s)]
    all_parallel = [length for st in parallel_stats for length in st.all_edge_lengths]

    return SegmentLayoutValidation(
        parallel_segment_stats=parallel_stats,
        serial_segment_stats=_stats("serial", serial_lengths),
        total_parallel_edges=len(all_parallel),
        total_serial_edges=len(serial_lengths),
        avg_parallel_edge_length=statistics.fmean(all_parallel) if all_parallel else 0,
        avg_serial_edge_length=statistics.fmean(serial_lengths) if serial_lengths else 0,
    )
