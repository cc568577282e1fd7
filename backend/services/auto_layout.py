"""Heuristic auto-layout for the plain node view (no measured sizes).

Phase 1: Estimate node sizes (tiered width by input count, text-wrap height)
Phase 2: Unify similar sizes per process type (greedy clustering)
Phase 3: Layered X placement (networkx: longest-path layers, barycenter order)
Phase 4: Y from reverse levels (distance to the nearest terminal node)
Phase 5: Compress parallel branches
Phase 6: Reorder branches by sequence order (whole upstream subtree moves)
Phase 7: Weighted centering of convergence nodes + chain propagation
"""

import math
import statistics
from collections import deque
from dataclasses import dataclass, field
from itertools import chain

import networkx as nx
from pydantic import BaseModel, Field

from models.flow_model import FlowNode, NodePosition, NodeType
from models.recipe_model import FlowEdge, ProcessType


class AutoLayoutConfig(BaseModel):
    """Configuration options for the heuristic auto-layout."""
    base_node_width: float = Field(default=200)
    min_node_sep: float = Field(default=100, description="Lower bound for horizontal node gap")
    node_sep_ratio: float = Field(default=0.4, description="Node gap as a share of average width")
    extra_spacing_per_input: float = Field(default=30)
    level_gap: float = Field(default=60, description="Edge length between reverse levels")
    start_y: float = Field(default=50)
    margin_x: float = Field(default=100)
    width_tiers: list[tuple[int, float]] = Field(
        default=[(2, 200), (4, 280)], description="(max inputs, width); wider beyond the last tier"
    )
    max_tier_width: float = Field(default=360)
    char_width: float = Field(default=8)
    line_height: float = Field(default=20)
    width_cluster_threshold: float = Field(default=0.15)
    height_cluster_threshold: float = Field(default=0.20)
    compression_ratio: float = Field(default=0.65)
    enable_weighted_centering: bool = True
    crossing_passes: int = Field(default=8)


class NodeSize(BaseModel):
    width: float
    height: float


class AutoLayoutResult(BaseModel):
    positions: dict[str, NodePosition] = Field(default_factory=dict)
    sizes: dict[str, NodeSize] = Field(default_factory=dict)


# Node chrome used by the size estimate
HEADER_H = 40
BODY_MIN_H = 30
PADDING_V = 20
CONTENT_PADDING_H = 12


# ---------- Phase 1: Size estimation ----------

def tiered_width(input_count: int, config: AutoLayoutConfig) -> float:
    for max_inputs, width in config.width_tiers:
        if input_count <= max_inputs:
            return width
    return config.max_tier_width


def estimate_text_lines(text: str, available_width: float, char_width: float) -> int:
    if not text:
        return 0
    chars_per_line = math.floor(available_width / char_width)
    if chars_per_line <= 0:
        return 1
    return max(1, math.ceil(len(text) / chars_per_line))


def _param_lines(node: FlowNode) -> int:
    step = node.data.sub_step
    if step.process_type == ProcessType.DISSOLUTION:
        # water volume, temperature, stirring, flushing
        return 4
    if step.process_type == ProcessType.COMPOUNDING:
        lines = 3
        if node.data.input_sources:
            # heading plus one line per feed
            lines += 1 + len(node.data.input_sources)
        return lines
    if step.process_type == ProcessType.TRANSFER:
        transfer = step.params.get("transferParams")
        if isinstance(transfer, dict):
            return 1 + bool(transfer.get("waterVolume")) + bool(transfer.get("cleaning"))
        return 1
    return 1


def estimate_node_height(node: FlowNode, width: float, config: AutoLayoutConfig) -> float:
    if node.type != NodeType.SUB_STEP or node.data.sub_step is None:
        return HEADER_H + BODY_MIN_H + PADDING_V

    step = node.data.sub_step
    available = width - CONTENT_PADDING_H * 2
    content_lines = 0
    if step.device_code:
        content_lines += estimate_text_lines(f"位置: {step.device_code}", available, config.char_width)
    if step.ingredients:
        content_lines += estimate_text_lines(f"原料: {step.ingredients}", available, config.char_width)

    total_lines = max(content_lines, 2) + _param_lines(node)
    return HEADER_H + total_lines * config.line_height + PADDING_V


# ---------- Phase 2: Size unification ----------

@dataclass
class _Cluster:
    ids: list[str] = field(default_factory=list)
    min_value: float = 0
    max_value: float = 0


def _merge_singletons(clusters: list[_Cluster], threshold: float) -> None:
    relaxed = threshold * 1.5
    for i in range(len(clusters) - 1, -1, -1):
        if i >= len(clusters) or len(clusters[i].ids) != 1:
            continue
        value = clusters[i].min_value
        if i > 0:
            prev = clusters[i - 1]
            if (value - prev.min_value) / prev.min_value <= relaxed:
                prev.ids.extend(clusters[i].ids)
                prev.max_value = max(prev.max_value, value)
                del clusters[i]
                continue
        if i < len(clusters) - 1:
            nxt = clusters[i + 1]
            if (nxt.max_value - value) / value <= relaxed:
                nxt.ids.extend(clusters[i].ids)
                nxt.min_value = min(nxt.min_value, value)
                del clusters[i]


def cluster_sizes(
    sizes: dict[str, float], threshold: float, merge_singletons: bool = True
) -> dict[str, float]:
    """Greedy clustering on sorted sizes; every member takes its cluster's max.

    A value joins the current cluster while (value - cluster min) / cluster min
    stays within threshold.
    """
    if not sizes:
        return {}
    ordered = sorted(sizes.items(), key=lambda item: item[1])
    first_id, first_value = ordered[0]
    clusters: list[_Cluster] = []
    current = _Cluster([first_id], first_value, first_value)
    for node_id, value in ordered[1:]:
        if (value - current.min_value) / current.min_value <= threshold:
            current.ids.append(node_id)
            current.max_value = value
        else:
            clusters.append(current)
            current = _Cluster([node_id], value, value)
    clusters.append(current)

    if merge_singletons:
        _merge_singletons(clusters, threshold)

    return {node_id: c.max_value for c in clusters for node_id in c.ids}


def unify_sizes(
    nodes: list[FlowNode],
    widths: dict[str, float],
    heights: dict[str, float],
    config: AutoLayoutConfig,
) -> tuple[dict[str, float], dict[str, float]]:
    """Cluster sub-step sizes per process type; summary nodes keep their estimates."""
    by_type: dict[str, list[str]] = {}
    for node in nodes:
        if node.type == NodeType.SUB_STEP and node.data.sub_step is not None:
            by_type.setdefault(node.data.sub_step.type_key, []).append(node.id)

    unified_w = dict(widths)
    unified_h = dict(heights)
    for ids in by_type.values():
        unified_w.update(cluster_sizes({i: widths[i] for i in ids}, config.width_cluster_threshold))
        unified_h.update(cluster_sizes({i: heights[i] for i in ids}, config.height_cluster_threshold))
    return unified_w, unified_h


# ---------- Phase 3: Layered X placement ----------

def _break_cycles(graph: nx.DiGraph) -> None:
    for cycle in list(nx.simple_cycles(graph)):
        for u, v in zip(cycle, cycle[1:] + cycle[:1]):
            if graph.has_edge(u, v):
                graph.remove_edge(u, v)
                break


def _assign_layers(graph: nx.DiGraph) -> list[list[str]]:
    layer_of: dict[str, int] = {}
    for n in nx.topological_sort(graph):
        layer_of[n] = max((layer_of[p] + 1 for p in graph.predecessors(n)), default=0)
    layers: list[list[str]] = [[] for _ in range(max(layer_of.values(), default=-1) + 1)]
    for n in graph.nodes:
        layers[layer_of[n]].append(n)
    return layers


def _count_crossings(graph: nx.DiGraph, upper: list[str], lower: list[str]) -> int:
    lower_pos = {n: i for i, n in enumerate(lower)}
    pairs = [
        (i, lower_pos[v])
        for i, u in enumerate(upper)
        for v in graph.successors(u)
        if v in lower_pos
    ]
    crossings = 0
    for a in range(len(pairs)):
        for b in range(a + 1, len(pairs)):
            if (pairs[a][0] - pairs[b][0]) * (pairs[a][1] - pairs[b][1]) < 0:
                crossings += 1
    return crossings


def _total_crossings(graph: nx.DiGraph, layers: list[list[str]]) -> int:
    return sum(_count_crossings(graph, a, b) for a, b in zip(layers, layers[1:]))


def _barycenter_sort(
    graph: nx.DiGraph, fixed: list[str], free: list[str], downward: bool
) -> list[str]:
    fixed_pos = {n: i for i, n in enumerate(fixed)}

    def key(item: tuple[int, str]) -> float:
        index, n = item
        neighbors = graph.predecessors(n) if downward else graph.successors(n)
        anchors = [fixed_pos[m] for m in neighbors if m in fixed_pos]
        # unanchored nodes hold their current slot
        return sum(anchors) / len(anchors) if anchors else float(index)

    return [n for _, n in sorted(enumerate(free), key=key)]


def _order_layers(graph: nx.DiGraph, layers: list[list[str]], passes: int) -> list[list[str]]:
    best = [list(layer) for layer in layers]
    best_crossings = _total_crossings(graph, layers)
    for iteration in range(passes):
        if best_crossings == 0:
            break
        if iteration % 2 == 0:
            for i in range(1, len(layers)):
                layers[i] = _barycenter_sort(graph, layers[i - 1], layers[i], downward=True)
        else:
            for i in range(len(layers) - 2, -1, -1):
                layers[i] = _barycenter_sort(graph, layers[i + 1], layers[i], downward=False)
        crossings = _total_crossings(graph, layers)
        if crossings < best_crossings:
            best_crossings = crossings
            best = [list(layer) for layer in layers]
    return best


def _place_with_order(
    layer: list[str], ideal: dict[str, float], widths: dict[str, float], node_sep: float
) -> dict[str, float]:
    """Move centers toward their ideal X while keeping layer order and spacing."""
    placed = [ideal[n] for n in layer]
    for i in range(1, len(layer)):
        min_x = placed[i - 1] + widths[layer[i - 1]] / 2 + node_sep + widths[layer[i]] / 2
        if placed[i] < min_x:
            placed[i] = min_x
    for i in range(len(layer) - 2, -1, -1):
        max_x = placed[i + 1] - widths[layer[i + 1]] / 2 - node_sep - widths[layer[i]] / 2
        if placed[i] > max_x:
            placed[i] = max_x
    return dict(zip(layer, placed))


def _align_layer(
    graph: nx.DiGraph,
    layer: list[str],
    x: dict[str, float],
    widths: dict[str, float],
    node_sep: float,
) -> None:
    ideal: dict[str, float] = {}
    for n in layer:
        neighbor_x = [x[m] for m in chain(graph.predecessors(n), graph.successors(n))]
        ideal[n] = statistics.median(neighbor_x) if neighbor_x else x[n]
    x.update(_place_with_order(layer, ideal, widths, node_sep))


def layered_x(
    nodes: list[FlowNode],
    edges: list[FlowEdge],
    widths: dict[str, float],
    config: AutoLayoutConfig,
    rounds: int = 12,
) -> dict[str, float]:
    """Center X per node from a top-to-bottom layered layout."""
    graph = nx.DiGraph()
    graph.add_nodes_from(n.id for n in nodes)
    graph.add_edges_from((e.source, e.target) for e in edges)
    _break_cycles(graph)

    layers = _order_layers(graph, _assign_layers(graph), config.crossing_passes)
    avg_width = statistics.fmean(widths.values())
    node_sep = max(config.min_node_sep, avg_width * config.node_sep_ratio)

    x: dict[str, float] = {}
    for layer in layers:
        cursor = 0.0
        for n in layer:
            x[n] = cursor + widths[n] / 2
            cursor += widths[n] + node_sep

    for _ in range(rounds):
        for layer in layers[1:]:
            _align_layer(graph, layer, x, widths, node_sep)
        for layer in reversed(layers[:-1]):
            _align_layer(graph, layer, x, widths, node_sep)

    left = min(x[n] - widths[n] / 2 for n in x)
    return {n: v - left + config.margin_x for n, v in x.items()}


# ---------- Phase 4: Reverse-level Y ----------

def reverse_levels(nodes: list[FlowNode], edges: list[FlowEdge]) -> dict[str, int]:
    """Steps to the nearest terminal (no outgoing edge) node, by reverse BFS."""
    sources = {e.source for e in edges}
    end_nodes = [n.id for n in nodes if n.id not in sources]
    if not end_nodes:
        return {n.id: 0 for n in nodes}

    parents: dict[str, list[str]] = {}
    for e in edges:
        parents.setdefault(e.target, []).append(e.source)

    levels: dict[str, int] = {}
    queue = deque((node_id, 0) for node_id in end_nodes)
    while queue:
        node_id, level = queue.popleft()
        if node_id in levels:
            continue
        levels[node_id] = level
        for parent in parents.get(node_id, []):
            if parent not in levels:
                queue.append((parent, level + 1))

    for n in nodes:
        levels.setdefault(n.id, 0)
    return levels


def _group_by_level(nodes: list[FlowNode], levels: dict[str, int]) -> dict[int, list[str]]:
    groups: dict[int, list[str]] = {}
    for n in nodes:
        groups.setdefault(levels[n.id], []).append(n.id)
    return groups


def level_y(
    nodes: list[FlowNode],
    levels: dict[str, int],
    heights: dict[str, float],
    in_degree: dict[str, int],
    config: AutoLayoutConfig,
) -> dict[str, float]:
    """Center Y per node; higher reverse levels sit higher on the canvas."""
    groups = _group_by_level(nodes, levels)
    ordered = sorted(groups, reverse=True)
    y: dict[str, float] = {}
    current = config.start_y
    for index, level in enumerate(ordered):
        members = groups[level]
        if index > 0:
            prev_max = max(heights[n] for n in groups[ordered[index - 1]])
            cur_max = max(heights[n] for n in members)
            max_inputs = max(in_degree.get(n, 0) for n in members)
            current += (
                prev_max / 2 + cur_max / 2 + config.level_gap
                + max(0, (max_inputs - 1) * config.extra_spacing_per_input)
            )
        for n in members:
            y[n] = current
    return y


# ---------- Phase 5: Parallel branch compression ----------

def compress_parallel_branches(
    nodes: list[FlowNode],
    edges: list[FlowEdge],
    levels: dict[str, int],
    x: dict[str, float],
    widths: dict[str, float],
    config: AutoLayoutConfig,
) -> None:
    """Pull unconnected neighbours on the same level closer together (in place)."""
    linked = {(e.source, e.target) for e in edges}
    ratio = config.compression_ratio
    for members in _group_by_level(nodes, levels).values():
        if len(members) <= 1:
            continue
        row = sorted(members, key=lambda n: x[n])
        for i in range(len(row) - 1):
            a, b = row[i], row[i + 1]
            if (a, b) in linked or (b, a) in linked:
                continue
            spacing = x[b] - x[a] - widths[a] / 2 - widths[b] / 2
            min_spacing = max(config.min_node_sep * ratio, (widths[a] + widths[b]) / 2 * 0.2)
            if spacing > min_spacing:
                delta = spacing - spacing * ratio
                for right in row[i + 1:]:
                    x[right] -= delta


# ---------- Phase 6: Branch reordering ----------

def _upstream(graph: nx.DiGraph, node_id: str) -> set[str]:
    return {node_id} | nx.ancestors(graph, node_id)


def reorder_branches(graph: nx.DiGraph, edges: list[FlowEdge], x: dict[str, float]) -> None:
    """Line up the inputs of every multi-input node left to right by sequence order.

    Whole upstream subtrees are translated, not just the direct parents.
    """
    incoming: dict[str, list[FlowEdge]] = {}
    for e in edges:
        incoming.setdefault(e.target, []).append(e)

    for target in graph.nodes:
        target_edges = incoming.get(target, [])
        if len(target_edges) <= 1:
            continue
        branches = []
        for edge in sorted(target_edges, key=lambda e: e.sequence_order):
            upstream = _upstream(graph, edge.source)
            branches.append((upstream, statistics.fmean(x[n] for n in upstream)))
        slots = sorted(centroid for _, centroid in branches)
        for (upstream, centroid), slot in zip(branches, slots):
            delta = slot - centroid
            if abs(delta) > 1:
                for n in upstream:
                    x[n] += delta


# ---------- Phase 7: Convergence centering ----------

def convergence_x(graph: nx.DiGraph, node_id: str, x: dict[str, float]) -> float:
    """Centroid of the input subtrees, each weighted by its size."""
    weighted = 0.0
    total = 0
    for parent in graph.predecessors(node_id):
        subtree = _upstream(graph, parent)
        weighted += statistics.fmean(x[n] for n in subtree) * len(subtree)
        total += len(subtree)
    if total == 0:
        return x[node_id]
    return weighted / total


def _propagate_chain(graph: nx.DiGraph, start: str, value: float, x: dict[str, float]) -> None:
    stack = [start]
    seen = {start}
    while stack:
        for child in graph.successors(stack.pop()):
            if child in seen or graph.in_degree(child) != 1:
                continue
            x[child] = value
            seen.add(child)
            stack.append(child)


def center_convergence_nodes(nodes: list[FlowNode], graph: nx.DiGraph, x: dict[str, float]) -> None:
    for node in nodes:
        is_compounding = (
            node.data.sub_step is not None
            and node.data.sub_step.process_type == ProcessType.COMPOUNDING
        )
        if graph.in_degree(node.id) <= 1 and not is_compounding:
            continue
        value = convergence_x(graph, node.id, x)
        x[node.id] = value
        _propagate_chain(graph, node.id, value, x)


# ---------- Entry point ----------

def compute_auto_layout(
    nodes: list[FlowNode], edges: list[FlowEdge], config: AutoLayoutConfig | None = None
) -> AutoLayoutResult:
    """Return top-left positions and estimated sizes for every node."""
    if config is None:
        config = AutoLayoutConfig()
    if not nodes:
        return AutoLayoutResult()

    node_ids = {n.id for n in nodes}
    edges = [e for e in edges if e.source in node_ids and e.target in node_ids]
    graph = nx.DiGraph()
    graph.add_nodes_from(n.id for n in nodes)
    graph.add_edges_from((e.source, e.target) for e in edges)
    in_degree = {n.id: sum(1 for e in edges if e.target == n.id) for n in nodes}

    initial_w = {n.id: tiered_width(in_degree[n.id], config) for n in nodes}
    initial_h = {n.id: estimate_node_height(n, initial_w[n.id], config) for n in nodes}
    widths, heights = unify_sizes(nodes, initial_w, initial_h, config)

    levels = reverse_levels(nodes, edges)
    x = layered_x(nodes, edges, widths, config)
    y = level_y(nodes, levels, heights, in_degree, config)

    compress_parallel_branches(nodes, edges, levels, x, widths, config)
    reorder_branches(graph, edges, x)
    if config.enable_weighted_centering:
        center_convergence_nodes(nodes, graph, x)

    return AutoLayoutResult(
        positions={
            n.id: NodePosition(x=x[n.id] - widths[n.id] / 2, y=y[n.id] - heights[n.id] / 2)
            for n in nodes
        },
        sizes={n.id: NodeSize(width=widths[n.id], height=heights[n.id]) for n in nodes},
    )
