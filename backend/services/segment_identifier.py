"""Split a flow graph into parallel branches and serial continuation segments.

Strategy:
1. Start nodes are nodes without incoming edges.
2. The convergence node is the first node (in node order) with more than one
   incoming edge. Further convergence points are reported but not decomposed.
3. From each start node, walk forward depth-first until the convergence node
   or any other multi-input node; each walk is one parallel segment.
4. Everything reachable from the convergence node forms the serial part,
   split wherever two consecutive collected nodes lack a direct edge.
"""

import logging

from models.flow_model import FlowNode, ProcessSegment, SegmentIdentificationResult
from models.recipe_model import FlowEdge

logger = logging.getLogger(__name__)


def _make_segment(segment_id: str, nodes: list[FlowNode], is_parallel: bool) -> ProcessSegment:
    return ProcessSegment(
        id=segment_id,
        nodes=nodes,
        is_parallel=is_parallel,
        start_node_id=nodes[0].id,
        end_node_id=nodes[-1].id,
    )


def _build_adjacency(
    nodes: list[FlowNode], edges: list[FlowEdge]
) -> tuple[dict[str, list[FlowEdge]], dict[str, list[FlowEdge]]]:
    node_ids = {n.id for n in nodes}
    outgoing: dict[str, list[FlowEdge]] = {n.id: [] for n in nodes}
    incoming: dict[str, list[FlowEdge]] = {n.id: [] for n in nodes}
    for edge in edges:
        if edge.source in node_ids and edge.target in node_ids:
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
    return outgoing, incoming


def _walk_branch(
    start_id: str,
    node_by_id: dict[str, FlowNode],
    outgoing: dict[str, list[FlowEdge]],
    incoming: dict[str, list[FlowEdge]],
    convergence_id: str | None,
    visited: set[str],
) -> list[FlowNode]:
    collected: list[FlowNode] = []
    stack = [start_id]
    while stack:
        node_id = stack.pop()
        if node_id in visited or node_id == convergence_id:
            continue
        collected.append(node_by_id[node_id])
        visited.add(node_id)
        for edge in reversed(outgoing[node_id]):
            target = edge.target
            if target == convergence_id or len(incoming[target]) > 1:
                continue
            stack.append(target)
    return collected


def _collect_serial(
    convergence: FlowNode,
    node_by_id: dict[str, FlowNode],
    outgoing: dict[str, list[FlowEdge]],
    incoming: dict[str, list[FlowEdge]],
) -> list[FlowNode]:
    collected = [convergence]
    seen = {convergence.id}
    stack = [e.target for e in reversed(outgoing[convergence.id])]
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        # Another multi-input node: not part of this serial continuation
        if len(incoming[node_id]) > 1:
            continue
        collected.append(node_by_id[node_id])
        seen.add(node_id)
        stack.extend(e.target for e in reversed(outgoing[node_id]))
    return collected


def _split_serial(serial_nodes: list[FlowNode], edges: list[FlowEdge]) -> list[ProcessSegment]:
    direct = {(e.source, e.target) for e in edges}
    segments: list[ProcessSegment] = []
    current = [serial_nodes[0]]
    for prev, node in zip(serial_nodes, serial_nodes[1:]):
        if (prev.id, node.id) in direct:
            current.append(node)
        else:
            segments.append(_make_segment(f"serial-segment-{len(segments)}", current, False))
            current = [node]
    segments.append(_make_segment(f"serial-segment-{len(segments)}", current, False))
    return segments


def identify_process_segments(
    nodes: list[FlowNode], edges: list[FlowEdge]
) -> SegmentIdentificationResult:
    """Classify nodes into parallel branches, a convergence node and serial segments."""
    if not nodes:
        return SegmentIdentificationResult()

    node_by_id = {n.id: n for n in nodes}
    outgoing, incoming = _build_adjacency(nodes, edges)

    start_nodes = [n for n in nodes if not incoming[n.id]]
    convergence_nodes = [n for n in nodes if len(incoming[n.id]) > 1]

    if not start_nodes:
        # Pure cycle: no sensible branch structure, keep every node on one level
        logger.warning("No start nodes in flow graph (cycle?); placing all %d nodes flat", len(nodes))
        return SegmentIdentificationResult(
            parallel_segments=[
                _make_segment(f"parallel-segment-{i}", [n], True) for i, n in enumerate(nodes)
            ],
        )

    convergence = convergence_nodes[0] if convergence_nodes else None
    ignored = [n.id for n in convergence_nodes[1:]]
    if ignored:
        logger.warning(
            "Multiple convergence points; using %s, ignoring %s",
            convergence.id, ", ".join(ignored),
        )
    convergence_id = convergence.id if convergence else None

    parallel_segments: list[ProcessSegment] = []
    visited: set[str] = set()
    for index, start in enumerate(start_nodes):
        if start.id in visited:
            continue
        branch = _walk_branch(start.id, node_by_id, outgoing, incoming, convergence_id, visited)
        if branch:
            parallel_segments.append(_make_segment(f"parallel-segment-{index}", branch, True))

    serial_segments: list[ProcessSegment] = []
    if convergence is not None:
        serial_nodes = _collect_serial(convergence, node_by_id, outgoing, incoming)
        if len(serial_nodes) > 1:
            serial_segments = _split_serial(serial_nodes, edges)

    return SegmentIdentificationResult(
        parallel_segments=parallel_segments,
        convergence_node=convergence,
        serial_segments=serial_segments,
        ignored_convergence_node_ids=ignored,
    )
