"""Pydantic data models for scheduler output."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .device_model import DeviceState


class WarningType(str, Enum):
    """Kinds of in-band scheduling warnings."""
    DEVICE_CONFLICT = "DEVICE_CONFLICT"
    UNMET_DEPENDENCY = "UNMET_DEPENDENCY"


class WarningSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SegmentKind(str, Enum):
    """Sub-segment of a compounding occupancy: reserved-but-idle vs. mixing."""
    WAIT = "wait"
    MIX = "mix"


class OccupancySegment(BaseModel):
    kind: SegmentKind
    start: int
    end: int
    label: Optional[str] = None


class DeviceOccupancy(BaseModel):
    """One sub-step's use of one device on the timeline."""
    device_code: str
    step_id: str
    step_label: str = ""
    process_id: str
    start_time: int
    duration: int
    end_time: int
    dependencies: list[str] = Field(default_factory=list)
    state: str = "planned"
    segments: list[OccupancySegment] = Field(default_factory=list)


class ScheduleWarning(BaseModel):
    type: WarningType
    severity: WarningSeverity
    message: str
    related_step_ids: list[str] = Field(default_factory=list)
    related_device_codes: list[str] = Field(default_factory=list)


class ScheduleResult(BaseModel):
    """Device timeline plus summary figures and warnings."""
    timeline: list[DeviceOccupancy] = Field(default_factory=list)
    device_states: dict[str, DeviceState] = Field(default_factory=dict)
    step_start_times: dict[str, int] = Field(default_factory=dict)
    total_duration: int = 0
    critical_path: list[str] = Field(default_factory=list)
    warnings: list[ScheduleWarning] = Field(default_factory=list)
