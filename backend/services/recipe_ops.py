"""Structural edits on processes and sub-steps.

Every function returns new objects; inputs are left untouched. Sub-step
``order`` values are re-normalized to 1..n after each edit.
"""

from models.recipe_model import FlowEdge, Process, SubStep


class RecipeOperationError(LookupError):
    """Raised when an edit refers to an unknown process or sub-step."""


def normalize_sub_step_orders(sub_steps: list[SubStep]) -> list[SubStep]:
    """Renumber sub-steps 1..n in their current list order."""
    return [s.model_copy(update={"order": i + 1}) for i, s in enumerate(sub_steps)]


def generate_unique_sub_step_id(process_id: str, existing: list[SubStep]) -> str:
    """Return '{process_id}-substep-{n}' for the smallest unused n >= 1."""
    prefix = f"{process_id}-substep-"
    used: set[int] = set()
    for step in existing:
        if step.id.startswith(prefix):
            suffix = step.id[len(prefix):]
            if suffix.isdigit() and int(suffix) > 0:
                used.add(int(suffix))
    n = 1
    while n in used:
        n += 1
    return f"{prefix}{n}"


def _with_sub_steps(process: Process, sub_steps: list[SubStep]) -> Process:
    node = process.node.model_copy(update={"sub_steps": normalize_sub_step_orders(sub_steps)})
    return process.model_copy(update={"node": node})


def find_process(processes: list[Process], process_id: str) -> Process:
    for process in processes:
        if process.id == process_id:
            return process
    raise RecipeOperationError(f"Process '{process_id}' not found")


def _index_of(process: Process, sub_step_id: str) -> int:
    for i, step in enumerate(process.sub_steps):
        if step.id == sub_step_id:
            return i
    raise RecipeOperationError(f"Sub-step '{sub_step_id}' not found in process '{process.id}'")


def add_sub_step(process: Process, sub_step: SubStep, index: int | None = None) -> Process:
    """Insert a sub-step (at the end by default), assigning a fresh id if it collides."""
    steps = list(process.sub_steps)
    if any(s.id == sub_step.id for s in steps):
        sub_step = sub_step.model_copy(update={"id": generate_unique_sub_step_id(process.id, steps)})
    if index is None or index < 0 or index > len(steps):
        index = len(steps)
    steps.insert(index, sub_step)
    return _with_sub_steps(process, steps)


def remove_sub_step(process: Process, sub_step_id: str) -> Process:
    steps = list(process.sub_steps)
    del steps[_index_of(process, sub_step_id)]
    return _with_sub_steps(process, [
        s.model_copy(update={"must_after": [d for d in s.must_after if d != sub_step_id]})
        for s in steps
    ])


def duplicate_sub_step(process: Process, sub_step_id: str, insert_after: bool = True) -> Process:
    index = _index_of(process, sub_step_id)
    source = process.sub_steps[index]
    duplicate = source.model_copy(
        deep=True,
        update={"id": generate_unique_sub_step_id(process.id, process.sub_steps)},
    )
    steps = list(process.sub_steps)
    steps.insert(index + 1 if insert_after else index, duplicate)
    return _with_sub_steps(process, steps)


def move_sub_step(
    processes: list[Process],
    source_process_id: str,
    sub_step_id: str,
    target_process_id: str,
    target_index: int = -1,
) -> tuple[list[Process], str]:
    """Move a sub-step within or between processes.

    Returns the updated process list and the (possibly new) sub-step id; a
    sub-step moved to another process is re-identified under that process.
    """
    source = find_process(processes, source_process_id)
    target = find_process(processes, target_process_id)
    step = source.sub_steps[_index_of(source, sub_step_id)]

    if source.id == target.id:
        steps = [s for s in source.sub_steps if s.id != sub_step_id]
        if target_index < 0 or target_index > len(steps):
            target_index = len(steps)
        steps.insert(target_index, step)
        updated = {source.id: _with_sub_steps(source, steps)}
        new_id = sub_step_id
    else:
        remaining = [s for s in source.sub_steps if s.id != sub_step_id]
        new_id = generate_unique_sub_step_id(target.id, target.sub_steps)
        moved = step.model_copy(update={"id": new_id, "must_after": []})
        target_steps = list(target.sub_steps)
        if target_index < 0 or target_index > len(target_steps):
            target_index = len(target_steps)
        target_steps.insert(target_index, moved)
        updated = {
            source.id: _with_sub_steps(source, remaining),
            target.id: _with_sub_steps(target, target_steps),
        }

    return [updated.get(p.id, p) for p in processes], new_id


def remove_process(
    processes: list[Process], edges: list[FlowEdge], process_id: str
) -> tuple[list[Process], list[FlowEdge]]:
    """Remove a process and every edge touching it."""
    find_process(processes, process_id)
    kept = [p for p in processes if p.id != process_id]
    kept_edges = [e for e in edges if e.source != process_id and e.target != process_id]
    return kept, kept_edges
