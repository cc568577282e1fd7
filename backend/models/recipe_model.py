"""Pydantic data models for recipes: processes, sub-steps and flow edges."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from .device_model import DeviceType


class ProcessType(str, Enum):
    """Well-known process types. CUSTOM requires a CustomProcessType payload."""
    DISSOLUTION = "dissolution"
    COMPOUNDING = "compounding"
    FILTRATION = "filtration"
    TRANSFER = "transfer"
    FLAVOR_ADDITION = "flavorAddition"
    EXTRACTION = "extraction"
    CENTRIFUGE = "centrifuge"
    COOLING = "cooling"
    HOLDING = "holding"
    MEMBRANE_FILTRATION = "membraneFiltration"
    OTHER = "other"
    CUSTOM = "custom"


# Sub-steps of these types wait for every upstream process to finish.
CONVERGENCE_TYPES = frozenset({ProcessType.COMPOUNDING})


class CustomProcessType(BaseModel):
    """A user-defined process type: opaque key plus free-form parameters."""
    key: str
    label: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)


class DeviceRequirement(BaseModel):
    """Either a specific device code or a device type for the scheduler to pick."""
    device_code: Optional[str] = None
    device_type: Optional[DeviceType] = None
    occupy_duration: Optional[int] = None


class SubStep(BaseModel):
    """Atomic unit of work inside a process."""
    id: str
    order: int = 1
    process_type: ProcessType = ProcessType.OTHER
    custom_type: Optional[CustomProcessType] = None
    label: str = ""
    ingredients: str = ""
    device_requirement: Optional[DeviceRequirement] = None
    estimated_duration: Optional[int] = None
    must_after: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_custom_type(self) -> "SubStep":
        if self.process_type == ProcessType.CUSTOM and self.custom_type is None:
            raise ValueError(f"Sub-step '{self.id}': custom process type requires 'custom_type'")
        if self.process_type != ProcessType.CUSTOM and self.custom_type is not None:
            raise ValueError(
                f"Sub-step '{self.id}': 'custom_type' is only allowed with process type 'custom'"
            )
        return self

    @property
    def type_key(self) -> str:
        """Grouping key: the enum value, or the custom key for custom types."""
        if self.custom_type is not None:
            return f"custom:{self.custom_type.key}"
        return self.process_type.value

    @property
    def device_code(self) -> Optional[str]:
        if self.device_requirement is None:
            return None
        return self.device_requirement.device_code


class ProcessNode(BaseModel):
    """The single composite node of a process, holding its ordered sub-steps."""
    id: str
    label: str = ""
    sub_steps: list[SubStep] = Field(default_factory=list)


class Process(BaseModel):
    """A process segment of a recipe (e.g. one dissolution line)."""
    id: str
    name: str
    description: Optional[str] = None
    node: ProcessNode

    @property
    def sub_steps(self) -> list[SubStep]:
        return self.node.sub_steps


class FlowEdge(BaseModel):
    """Directed edge between two processes (or two flow nodes once expanded)."""
    id: str
    source: str
    target: str
    sequence_order: int = 1
    incoming_total: Optional[int] = None
    target_handle: Optional[str] = None


class Recipe(BaseModel):
    """Complete recipe: processes plus the edges between them."""
    name: str = "Untitled Recipe"
    version: str = "1"
    processes: list[Process] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
