"""Device-contention scheduler.

Assigns a start time and a device to every sub-step of a recipe:

Phase 0: Synthesize implicit dependencies (on a private copy of the input)
Phase 1: Schedule every sub-step without dependencies at t=0
Phase 2: Fixed-point relaxation: repeatedly schedule sub-steps whose
         dependencies are all scheduled, until no progress or the
         iteration cap (2 x sub-step count) is hit
Phase 3: Report unscheduled sub-steps (likely a dependency cycle)
Phase 4: Total duration and (simplified) critical path

Devices are a single FIFO slot each: a device becomes available when its
latest occupancy ends. Data problems never raise; they come back as warnings
next to a best-effort timeline.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import networkx as nx

from config import settings
from models.device_model import DeviceResource
from models.recipe_model import CONVERGENCE_TYPES, DeviceRequirement, FlowEdge, Process, SubStep
from models.schedule_model import (
    DeviceOccupancy,
    OccupancySegment,
    ScheduleResult,
    ScheduleWarning,
    SegmentKind,
    WarningSeverity,
    WarningType,
)
from services.dependencies import synthesize_dependencies
from services.device_pool import default_device_pool, find_device_by_code, find_devices_by_type

logger = logging.getLogger(__name__)

WAIT_SEGMENT_LABEL = "等待上游完成"


@dataclass
class _ScheduleState:
    """Bookkeeping owned by a single scheduling run."""

    device_pool: list[DeviceResource]
    timeline: list[DeviceOccupancy] = field(default_factory=list)
    start_times: dict[str, int] = field(default_factory=dict)
    occupancy_by_step: dict[str, DeviceOccupancy] = field(default_factory=dict)
    warnings: list[ScheduleWarning] = field(default_factory=list)

    def is_scheduled(self, step_id: str) -> bool:
        return step_id in self.start_times


def step_duration(step: SubStep) -> int:
    """Occupancy duration, then estimated duration, then the default of 1."""
    req = step.device_requirement
    if req is not None and req.occupy_duration:
        return req.occupy_duration
    if step.estimated_duration:
        return step.estimated_duration
    return settings.default_step_duration


# ---------- Device allocation ----------

def _device_available_time(code: str, earliest: int, state: _ScheduleState) -> int:
    """Time the device is free at or after `earliest` (end of its latest occupancy)."""
    ends = [o.end_time for o in state.timeline if o.device_code == code]
    if not ends:
        return earliest
    return max(earliest, max(ends))


def _allocate_device(
    requirement: DeviceRequirement, earliest: int, state: _ScheduleState
) -> Optional[DeviceResource]:
    if requirement.device_code:
        return find_device_by_code(state.device_pool, requirement.device_code)

    if requirement.device_type is not None:
        best: Optional[DeviceResource] = None
        best_time: Optional[int] = None
        for device in find_devices_by_type(state.device_pool, requirement.device_type):
            available = _device_available_time(device.device_code, earliest, state)
            if best_time is None or available < best_time:
                best, best_time = device, available
        return best

    return None


# ---------- Single step ----------

def _dependency_ready_time(step: SubStep, state: _ScheduleState) -> int:
    ready = 0
    for dep_id in step.must_after:
        occupancy = state.occupancy_by_step.get(dep_id)
        if occupancy is not None:
            ready = max(ready, occupancy.end_time)
        else:
            # Pure ordering dependency without a device: no natural end
            ready = max(ready, state.start_times.get(dep_id, 0) + settings.dependency_fallback_duration)
    return ready


def _schedule_step(step: SubStep, process_id: str, earliest: int, state: _ScheduleState) -> None:
    requirement = step.device_requirement
    if requirement is None:
        state.start_times[step.id] = earliest
        return

    device = _allocate_device(requirement, earliest, state)
    if device is None:
        target = requirement.device_code or (
            requirement.device_type.value if requirement.device_type else "unspecified"
        )
        message = f"步骤 {step.label or step.id} 无法分配设备 ({target})"
        logger.warning("DEVICE_CONFLICT: %s", message)
        state.warnings.append(ScheduleWarning(
            type=WarningType.DEVICE_CONFLICT,
            severity=WarningSeverity.ERROR,
            message=message,
            related_step_ids=[step.id],
            related_device_codes=[requirement.device_code] if requirement.device_code else [],
        ))
        state.start_times[step.id] = earliest
        return

    code = device.device_code
    actual_start = _device_available_time(code, earliest, state)
    duration = step_duration(step)
    end = actual_start + duration

    segments: list[OccupancySegment] = []
    if step.process_type in CONVERGENCE_TYPES:
        idle_from = _device_available_time(code, 0, state)
        if step.must_after and idle_from < actual_start:
            segments.append(OccupancySegment(
                kind=SegmentKind.WAIT, start=idle_from, end=actual_start, label=WAIT_SEGMENT_LABEL
            ))
        segments.append(OccupancySegment(kind=SegmentKind.MIX, start=actual_start, end=end))

    occupancy = DeviceOccupancy(
        device_code=code,
        step_id=step.id,
        step_label=step.label,
        process_id=process_id,
        start_time=actual_start,
        duration=duration,
        end_time=end,
        dependencies=list(step.must_after),
        segments=segments,
    )
    state.timeline.append(occupancy)
    state.occupancy_by_step[step.id] = occupancy
    state.start_times[step.id] = actual_start


# ---------- Unmet dependencies ----------

def _find_dependency_cycle(steps: list[SubStep], unscheduled: set[str]) -> list[str]:
    graph = nx.DiGraph()
    for step in steps:
        if step.id not in unscheduled:
            continue
        graph.add_node(step.id)
        for dep_id in step.must_after:
            if dep_id in unscheduled:
                graph.add_edge(dep_id, step.id)
    try:
        cycle_edges = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        return []
    return [u for u, _ in cycle_edges]


def _report_unmet(steps: list[SubStep], state: _ScheduleState) -> None:
    unscheduled = [s.id for s in steps if not state.is_scheduled(s.id)]
    if not unscheduled:
        return
    cycle = _find_dependency_cycle(steps, set(unscheduled))
    message = "Detected possible circular dependency or unresolvable dependencies in scheduling"
    if cycle:
        message += f": cycle {' -> '.join(cycle + cycle[:1])}"
    logger.warning("UNMET_DEPENDENCY: %s (unscheduled: %s)", message, ", ".join(unscheduled))
    state.warnings.append(ScheduleWarning(
        type=WarningType.UNMET_DEPENDENCY,
        severity=WarningSeverity.ERROR,
        message=message,
        related_step_ids=unscheduled,
    ))


# ---------- Summary ----------

def _total_duration(steps: list[SubStep], state: _ScheduleState) -> int:
    by_id = {s.id: s for s in steps}
    final_mix_ends = [
        o.end_time for o in state.timeline
        if by_id[o.step_id].process_type in CONVERGENCE_TYPES
    ]
    if final_mix_ends:
        return max(final_mix_ends)
    return max(
        (start + step_duration(by_id[sid]) for sid, start in state.start_times.items()),
        default=0,
    )


def _critical_path(steps: list[SubStep], state: _ScheduleState) -> list[str]:
    """Simplified: only the step that ends last."""
    last_id = None
    max_end = -1
    for step in steps:
        start = state.start_times.get(step.id)
        if start is None:
            continue
        end = start + step_duration(step)
        if end > max_end:
            max_end, last_id = end, step.id
    return [last_id] if last_id else []


# ---------- Main scheduling function ----------

def calculate_schedule(
    processes: list[Process],
    device_pool: list[DeviceResource] | None = None,
    edges: list[FlowEdge] | None = None,
) -> ScheduleResult:
    """Compute the device occupancy timeline for a recipe.

    The input processes are not modified; dependency synthesis runs on a
    copy. Identical input always yields an identical result.
    """
    if device_pool is None:
        device_pool = default_device_pool()
    working = [p.model_copy(deep=True) for p in processes]
    synthesize_dependencies(working, edges or [])

    state = _ScheduleState(device_pool=device_pool)
    entries: list[tuple[SubStep, str]] = [
        (step, process.id)
        for process in working
        for step in sorted(process.sub_steps, key=lambda s: s.order)
    ]
    steps = [step for step, _ in entries]

    # --- Phase 1 ---
    for step, process_id in entries:
        if not step.must_after:
            _schedule_step(step, process_id, 0, state)

    # --- Phase 2 ---
    max_iterations = len(entries) * settings.iteration_factor
    iterations = 0
    changed = True
    while changed and iterations < max_iterations:
        changed = False
        iterations += 1
        for step, process_id in entries:
            if state.is_scheduled(step.id):
                continue
            if all(state.is_scheduled(dep) for dep in step.must_after):
                earliest = _dependency_ready_time(step, state)
                _schedule_step(step, process_id, earliest, state)
                changed = True

    # --- Phase 3 ---
    _report_unmet(steps, state)

    # --- Phase 4 ---
    return ScheduleResult(
        timeline=state.timeline,
        device_states={d.device_code: d.current_state for d in device_pool},
        step_start_times=dict(state.start_times),
        total_duration=_total_duration(steps, state),
        critical_path=_critical_path(steps, state),
        warnings=state.warnings,
    )
