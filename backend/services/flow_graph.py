"""Turn a recipe into the node/edge graph shown on the rendering surface.

Collapsed processes render as one summary node; expanded processes render one
node per sub-step, chained by internal edges. Edges between processes are
rewired to the last/first sub-step of expanded endpoints.
"""

import hashlib
import json
from typing import Iterable

from models.flow_model import FlowGraph, FlowNode, InputSource, NodeData, NodeType
from models.recipe_model import FlowEdge, Process, ProcessType


def _ordered(process: Process):
    return sorted(process.sub_steps, key=lambda s: s.order)


def _is_expanded(process: Process, expanded: set[str]) -> bool:
    return process.id in expanded and bool(process.sub_steps)


def layout_fingerprint(
    processes: list[Process], edges: list[FlowEdge], expanded: Iterable[str] = ()
) -> str:
    """Stable content hash; changes whenever the layout must be recomputed."""
    payload = {
        "processes": [
            {
                "id": p.id,
                "steps": [[s.id, s.order, s.type_key] for s in _ordered(p)],
            }
            for p in processes
        ],
        "edges": sorted([e.source, e.target, e.sequence_order] for e in edges),
        "expanded": sorted(set(expanded)),
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _build_nodes(processes: list[Process], expanded: set[str]) -> list[FlowNode]:
    nodes: list[FlowNode] = []
    for index, process in enumerate(processes):
        display_order = index + 1
        steps = _ordered(process)
        if _is_expanded(process, expanded):
            for step in steps:
                nodes.append(FlowNode(
                    id=step.id,
                    type=NodeType.SUB_STEP,
                    data=NodeData(
                        process_id=process.id,
                        process_name=process.name,
                        is_expanded=True,
                        sub_step=step,
                        display_order=display_order,
                    ),
                ))
        else:
            nodes.append(FlowNode(
                id=process.id,
                type=NodeType.PROCESS_SUMMARY,
                data=NodeData(
                    process_id=process.id,
                    process_name=process.name,
                    process_type=steps[0].type_key if steps else None,
                    sub_step_count=len(steps),
                    display_order=display_order,
                ),
            ))
    return nodes


def _build_edges(
    processes: list[Process], edges: list[FlowEdge], expanded: set[str]
) -> list[FlowEdge]:
    by_id = {p.id: p for p in processes}
    flow_edges: list[FlowEdge] = []

    for edge in edges:
        source = by_id.get(edge.source)
        target = by_id.get(edge.target)
        if source is None or target is None:
            continue
        source_id = _ordered(source)[-1].id if _is_expanded(source, expanded) else source.id
        target_id = _ordered(target)[0].id if _is_expanded(target, expanded) else target.id
        flow_edges.append(edge.model_copy(update={"source": source_id, "target": target_id}))

    for process in processes:
        if not _is_expanded(process, expanded):
            continue
        steps = _ordered(process)
        for current, nxt in zip(steps, steps[1:]):
            flow_edges.append(FlowEdge(
                id=f"internal-{current.id}-{nxt.id}",
                source=current.id,
                target=nxt.id,
                sequence_order=1,
            ))

    incoming: dict[str, int] = {}
    for edge in flow_edges:
        incoming[edge.target] = incoming.get(edge.target, 0) + 1
    return [e.model_copy(update={"incoming_total": incoming[e.target]}) for e in flow_edges]


def _attach_input_sources(
    nodes: list[FlowNode], edges: list[FlowEdge], processes: list[Process]
) -> None:
    node_by_id = {n.id: n for n in nodes}
    for node in nodes:
        step = node.data.sub_step
        if step is None or step.process_type != ProcessType.COMPOUNDING:
            continue
        sources: list[InputSource] = []
        for edge in edges:
            if edge.target != node.id:
                continue
            source_node = node_by_id.get(edge.source)
            if source_node is None:
                continue
            if source_node.data.sub_step is not None:
                name = source_node.data.sub_step.label
            else:
                name = source_node.data.process_name or source_node.data.process_id or ""
            owner = next(
                (p for p in processes
                 if p.id == edge.source or any(s.id == edge.source for s in p.sub_steps)),
                None,
            )
            sources.append(InputSource(
                node_id=edge.source,
                name=name,
                process_id=owner.id if owner else "",
                process_name=owner.name if owner else "",
                sequence_order=edge.sequence_order,
            ))
        node.data.input_sources = sorted(sources, key=lambda s: s.sequence_order)


def build_flow_graph(
    processes: list[Process], edges: list[FlowEdge], expanded: Iterable[str] = ()
) -> FlowGraph:
    """Build the renderable graph for the given expansion state."""
    expanded_set = set(expanded)
    nodes = _build_nodes(processes, expanded_set)
    flow_edges = _build_edges(processes, edges, expanded_set)
    _attach_input_sources(nodes, flow_edges, processes)
    return FlowGraph(
        nodes=nodes,
        edges=flow_edges,
        layout_trigger=layout_fingerprint(processes, edges, expanded_set),
    )
