"""Target-handle assignment for nodes with several incoming edges."""

from models.recipe_model import FlowEdge


def assign_target_handles(
    edges: list[FlowEdge], x_positions: dict[str, float]
) -> list[FlowEdge]:
    """Bind each incoming edge of a multi-input node to a 'target-{i}' slot.

    Slots are ordered left to right by the source node's X, not by
    sequence_order, so edges never cross at the node. Ties fall back to
    sequence_order, then edge id. Single-input edges keep no handle.
    """
    incoming: dict[str, list[FlowEdge]] = {}
    for edge in edges:
        incoming.setdefault(edge.target, []).append(edge)

    handles: dict[str, str] = {}
    for target_edges in incoming.values():
        if len(target_edges) < 2:
            continue
        ordered = sorted(
            target_edges,
            key=lambda e: (x_positions.get(e.source, 0.0), e.sequence_order, e.id),
        )
        for index, edge in enumerate(ordered):
            handles[edge.id] = f"target-{index}"

    return [
        e.model_copy(update={
            "target_handle": handles.get(e.id),
            "incoming_total": len(incoming[e.target]),
        })
        for e in edges
    ]
