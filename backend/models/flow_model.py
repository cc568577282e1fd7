"""Pydantic data models for the rendered flow graph and layout results."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .recipe_model import FlowEdge, ProcessType, SubStep


class NodeType(str, Enum):
    """Collapsed process summary or one expanded sub-step."""
    PROCESS_SUMMARY = "processSummaryNode"
    SUB_STEP = "subStepNode"


class InputSource(BaseModel):
    """An upstream feed shown on a compounding node."""
    node_id: str
    name: str
    process_id: str
    process_name: str
    sequence_order: int


class NodeData(BaseModel):
    process_id: Optional[str] = None
    process_name: Optional[str] = None
    process_type: Optional[str] = None
    sub_step_count: Optional[int] = None
    is_expanded: bool = False
    sub_step: Optional[SubStep] = None
    display_order: int = 1
    input_sources: list[InputSource] = Field(default_factory=list)


class NodePosition(BaseModel):
    x: float
    y: float


class FlowNode(BaseModel):
    """A node on the rendering surface. width/height are None until measured."""
    id: str
    type: NodeType = NodeType.PROCESS_SUMMARY
    position: NodePosition = Field(default_factory=lambda: NodePosition(x=0, y=0))
    width: Optional[float] = None
    height: Optional[float] = None
    data: NodeData = Field(default_factory=NodeData)

    @property
    def is_measured(self) -> bool:
        return bool(self.width) and bool(self.height)

    @property
    def segment_type(self) -> str:
        """Process type used for segment grouping."""
        if self.data.sub_step is not None:
            return self.data.sub_step.type_key
        if self.data.process_type is not None:
            return self.data.process_type
        return ProcessType.OTHER.value


class FlowGraph(BaseModel):
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    layout_trigger: str = ""


class ProcessSegment(BaseModel):
    """Layout classification: a parallel branch or a serial continuation."""
    id: str
    nodes: list[FlowNode]
    is_parallel: bool
    start_node_id: str
    end_node_id: str


class SegmentIdentificationResult(BaseModel):
    parallel_segments: list[ProcessSegment] = Field(default_factory=list)
    convergence_node: Optional[FlowNode] = None
    serial_segments: list[ProcessSegment] = Field(default_factory=list)
    ignored_convergence_node_ids: list[str] = Field(default_factory=list)
