"""Tests for the device-contention scheduler."""

from models.device_model import DeviceResource, DeviceType
from models.recipe_model import (
    DeviceRequirement,
    FlowEdge,
    Process,
    ProcessNode,
    ProcessType,
    SubStep,
)
from models.schedule_model import SegmentKind, WarningType
from services.scheduler import WAIT_SEGMENT_LABEL, calculate_schedule, step_duration


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _step(step_id: str, order: int = 1, process_type: ProcessType = ProcessType.DISSOLUTION,
          device: str | None = None, device_type: DeviceType | None = None,
          duration: int | None = None, **kwargs) -> SubStep:
    requirement = None
    if device or device_type:
        requirement = DeviceRequirement(device_code=device, device_type=device_type)
    return SubStep(
        id=step_id,
        order=order,
        process_type=process_type,
        label=step_id,
        device_requirement=requirement,
        estimated_duration=duration,
        **kwargs,
    )


def _process(process_id: str, *steps: SubStep) -> Process:
    return Process(id=process_id, name=process_id,
                   node=ProcessNode(id=f"{process_id}-node", sub_steps=list(steps)))


def _edge(source: str, target: str, order: int = 1) -> FlowEdge:
    return FlowEdge(id=f"{source}->{target}", source=source, target=target, sequence_order=order)


def _scenario() -> tuple[list[Process], list[FlowEdge]]:
    processes = [
        _process("P1", _step("P1-s1", device="高搅桶1", duration=10)),
        _process("P2", _step("P2-s1", device="高搅桶2", duration=10)),
        _process("P3", _step("P3-s1", device="高搅桶1", duration=10)),
        _process("P4", _step("P4-s1", device="高搅桶2", duration=10)),
        _process("P5", _step("P5-s1", process_type=ProcessType.FLAVOR_ADDITION, duration=5)),
        _process("P6", _step("P6-s1", process_type=ProcessType.COMPOUNDING,
                             device="调配桶", duration=30)),
    ]
    edges = [_edge(f"P{i}", "P6", i) for i in range(1, 6)]
    return processes, edges


def _occupancy(result, step_id):
    return next(o for o in result.timeline if o.step_id == step_id)


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

def test_duration_precedence():
    """Occupy duration beats estimated duration beats the default."""
    step = SubStep(id="s", estimated_duration=7,
                   device_requirement=DeviceRequirement(device_code="x", occupy_duration=3))
    assert step_duration(step) == 3
    assert step_duration(SubStep(id="s", estimated_duration=7)) == 7
    assert step_duration(SubStep(id="s")) == 1


# ---------------------------------------------------------------------------
# Converging recipe
# ---------------------------------------------------------------------------

def test_scenario_timeline():
    """Reference recipe produces the expected timeline."""
    processes, edges = _scenario()
    result = calculate_schedule(processes, edges=edges)

    assert _occupancy(result, "P1-s1").start_time == 0
    assert _occupancy(result, "P2-s1").start_time == 0
    assert _occupancy(result, "P3-s1").start_time == 10
    assert _occupancy(result, "P4-s1").start_time == 10
    assert result.step_start_times["P5-s1"] == 0

    mix = _occupancy(result, "P6-s1")
    assert mix.start_time == 20
    assert mix.end_time == 50
    assert result.total_duration == mix.end_time
    assert result.critical_path == ["P6-s1"]
    assert result.warnings == []


def test_compounding_wait_and_mix_segments():
    """Compounding records a wait and a mix segment."""
    processes, edges = _scenario()
    mix = _occupancy(calculate_schedule(processes, edges=edges), "P6-s1")

    assert [s.kind for s in mix.segments] == [SegmentKind.WAIT, SegmentKind.MIX]
    wait, active = mix.segments
    assert (wait.start, wait.end, wait.label) == (0, 20, WAIT_SEGMENT_LABEL)
    assert (active.start, active.end) == (20, 50)


def test_compounding_without_dependencies_has_only_mix():
    """Without dependencies there is nothing to wait for."""
    processes = [_process("M", _step("M-1", process_type=ProcessType.COMPOUNDING,
                                     device="调配桶", duration=4))]
    mix = _occupancy(calculate_schedule(processes), "M-1")

    assert [(s.kind, s.start, s.end) for s in mix.segments] == [(SegmentKind.MIX, 0, 4)]


def test_dependencies_are_respected():
    """No step starts before its dependencies end."""
    processes, edges = _scenario()
    result = calculate_schedule(processes, edges=edges)
    ends = {o.step_id: o.end_time for o in result.timeline}

    for occupancy in result.timeline:
        for dep in occupancy.dependencies:
            if dep in ends:
                assert occupancy.start_time >= ends[dep]


def test_no_double_booking():
    """Occupancies on one device never overlap."""
    processes, edges = _scenario()
    result = calculate_schedule(processes, edges=edges)

    by_device: dict[str, list] = {}
    for occupancy in result.timeline:
        by_device.setdefault(occupancy.device_code, []).append(occupancy)
    for occupancies in by_device.values():
        occupancies.sort(key=lambda o: o.start_time)
        for earlier, later in zip(occupancies, occupancies[1:]):
            assert earlier.end_time <= later.start_time


def test_deterministic():
    """Same input, same schedule."""
    processes, edges = _scenario()
    first = calculate_schedule(processes, edges=edges)
    second = calculate_schedule(processes, edges=edges)

    assert first.model_dump_json() == second.model_dump_json()


def test_input_is_not_modified():
    """The caller's processes are left untouched."""
    processes, edges = _scenario()
    calculate_schedule(processes, edges=edges)

    assert all(s.must_after == [] for p in processes for s in p.sub_steps)


# ---------------------------------------------------------------------------
# Device allocation
# ---------------------------------------------------------------------------

def test_single_filter_is_shared_fifo():
    """A single filter serves requests in order."""
    pool = [DeviceResource(device_code="F1", device_type=DeviceType.FILTER, display_name="Filter")]
    processes = [
        _process("A", _step("A-1", process_type=ProcessType.FILTRATION,
                            device_type=DeviceType.FILTER, duration=6)),
        _process("B", _step("B-1", process_type=ProcessType.FILTRATION,
                            device_type=DeviceType.FILTER, duration=4)),
    ]
    result = calculate_schedule(processes, pool)
    first, second = _occupancy(result, "A-1"), _occupancy(result, "B-1")

    assert first.device_code == second.device_code == "F1"
    assert second.start_time >= first.end_time
    assert result.warnings == []


def test_type_requirement_picks_earliest_free_device():
    """Type requirements take the earliest free device."""
    processes = [
        _process("A", _step("A-1", device="高搅桶1", duration=10)),
        _process("B", _step("B-1", device_type=DeviceType.HIGH_SPEED_MIXER, duration=3)),
    ]
    result = calculate_schedule(processes)

    assert _occupancy(result, "B-1").device_code == "高搅桶2"
    assert _occupancy(result, "B-1").start_time == 0


def test_unknown_device_is_a_conflict_but_still_scheduled():
    """Unknown device is a conflict but the step is still placed."""
    processes = [
        _process("A", _step("A-1", device="不存在的设备", duration=5),
                 _step("A-2", order=2, device="高搅桶1", duration=5)),
    ]
    result = calculate_schedule(processes)

    conflicts = [w for w in result.warnings if w.type == WarningType.DEVICE_CONFLICT]
    assert len(conflicts) == 1
    assert conflicts[0].related_step_ids == ["A-1"]
    assert conflicts[0].related_device_codes == ["不存在的设备"]
    assert result.step_start_times["A-1"] == 0
    # dependent step still runs; A-1 has no occupancy so the fallback applies
    assert result.step_start_times["A-2"] == 10


def test_missing_device_type_is_a_conflict():
    """No device of the required type is a conflict."""
    processes = [_process("A", _step("A-1", device_type=DeviceType.UHT_MACHINE))]
    result = calculate_schedule(processes, device_pool=[])

    assert [w.type for w in result.warnings] == [WarningType.DEVICE_CONFLICT]
    assert "A-1" in result.step_start_times


# ---------------------------------------------------------------------------
# Unmet dependencies
# ---------------------------------------------------------------------------

def test_cycle_reports_unmet_dependency():
    """A dependency cycle is reported and named."""
    processes = [
        _process("A", _step("A-1", must_after=["B-1"])),
        _process("B", _step("B-1", must_after=["A-1"])),
        _process("C", _step("C-1", device="高搅桶1", duration=2)),
    ]
    result = calculate_schedule(processes)

    unmet = [w for w in result.warnings if w.type == WarningType.UNMET_DEPENDENCY]
    assert len(unmet) == 1
    assert set(unmet[0].related_step_ids) == {"A-1", "B-1"}
    assert "cycle" in unmet[0].message
    # best effort: the rest is still scheduled
    assert result.step_start_times == {"C-1": 0}


def test_unknown_dependency_reports_unmet_without_cycle():
    """A dangling dependency is unmet but not a cycle."""
    processes = [_process("A", _step("A-1", must_after=["ghost"]))]
    result = calculate_schedule(processes)

    assert [w.type for w in result.warnings] == [WarningType.UNMET_DEPENDENCY]
    assert "cycle" not in result.warnings[0].message


# ---------------------------------------------------------------------------
# Summary values
# ---------------------------------------------------------------------------

def test_total_duration_without_compounding():
    """Without compounding the total is the latest end."""
    processes = [
        _process("A", _step("A-1", device="高搅桶1", duration=4)),
        _process("B", _step("B-1", duration=9)),
    ]
    result = calculate_schedule(processes)

    assert result.total_duration == 9
    assert result.critical_path == ["B-1"]


def test_empty_recipe():
    """Empty recipe should return an empty schedule."""
    result = calculate_schedule([])

    assert result.timeline == []
    assert result.total_duration == 0
    assert result.critical_path == []
    assert result.warnings == []


def test_result_vocabulary_matches_what_is_produced():
    """Warning types and occupancy segment kinds are exactly the ones the scheduler emits."""
    assert {t.value for t in WarningType} == {"DEVICE_CONFLICT", "UNMET_DEPENDENCY"}
    assert {k.value for k in SegmentKind} == {"wait", "mix"}
