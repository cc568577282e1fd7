"""Derive implicit ordering constraints ("must after") between sub-steps.

Rules, applied in order:
1. Within a process, each sub-step follows the one before it.
2. A convergence-type sub-step (compounding) follows the last sub-step of
   every process feeding its process.
3. Processes whose first sub-step uses the same device run one after the
   other, in process-list order.

The synthesizer mutates ``must_after`` in place and never adds an entry twice,
so running it again on its own output is a no-op.
"""

from models.recipe_model import CONVERGENCE_TYPES, FlowEdge, Process, SubStep


def _ordered_steps(process: Process) -> list[SubStep]:
    return sorted(process.sub_steps, key=lambda s: s.order)


def _add_dependency(step: SubStep, dep_id: str) -> bool:
    """Append dep_id to step.must_after unless already present. Returns True if added."""
    if dep_id == step.id or dep_id in step.must_after:
        return False
    step.must_after.append(dep_id)
    return True


def _apply_intra_process_order(processes: list[Process]) -> int:
    added = 0
    for process in processes:
        steps = _ordered_steps(process)
        for prev, step in zip(steps, steps[1:]):
            added += _add_dependency(step, prev.id)
    return added


def _apply_convergence_flow(processes: list[Process], edges: list[FlowEdge]) -> int:
    by_id = {p.id: p for p in processes}
    added = 0
    for edge in edges:
        source = by_id.get(edge.source)
        target = by_id.get(edge.target)
        if source is None or target is None or not source.sub_steps:
            continue
        last_source_step = _ordered_steps(source)[-1]
        for step in target.sub_steps:
            if step.process_type in CONVERGENCE_TYPES:
                added += _add_dependency(step, last_source_step.id)
    return added


def _apply_device_serialization(processes: list[Process]) -> int:
    device_groups: dict[str, list[Process]] = {}
    for process in processes:
        if not process.sub_steps:
            continue
        code = _ordered_steps(process)[0].device_code
        if code:
            device_groups.setdefault(code, []).append(process)

    added = 0
    for group in device_groups.values():
        for earlier, later in zip(group, group[1:]):
            first_of_later = _ordered_steps(later)[0]
            last_of_earlier = _ordered_steps(earlier)[-1]
            added += _add_dependency(first_of_later, last_of_earlier.id)
    return added


def synthesize_dependencies(processes: list[Process], edges: list[FlowEdge]) -> int:
    """Add implicit dependencies to every sub-step. Returns the number of new entries."""
    added = _apply_intra_process_order(processes)
    added += _apply_convergence_flow(processes, edges)
    added += _apply_device_serialization(processes)
    return added
