"""Layout router: segment layout and heuristic auto-layout."""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from config import settings
from models.flow_model import FlowNode, NodePosition
from models.recipe_model import FlowEdge
from services.auto_layout import AutoLayoutConfig, NodeSize, compute_auto_layout
from services.edge_handles import assign_target_handles
from services.layout_controller import (
    LayoutConfig,
    LayoutController,
    LayoutOutcome,
    StaticRenderSurface,
)

router = APIRouter()


class LayoutRequest(BaseModel):
    """Request body for layout endpoints."""

    nodes: list[FlowNode]
    edges: list[FlowEdge] = Field(default_factory=list)
    trigger: str = ""


class SegmentLayoutRequest(LayoutRequest):
    config: Optional[LayoutConfig] = None


class SegmentLayoutResponse(BaseModel):
    """Top-left positions plus edges bound to target handles."""

    positions: dict[str, NodePosition]
    edges: list[FlowEdge]
    outcome: LayoutOutcome
    iterations: int
    used_default_sizes: bool = False


class AutoLayoutRequest(LayoutRequest):
    config: Optional[AutoLayoutConfig] = None


class AutoLayoutResponse(BaseModel):
    positions: dict[str, NodePosition]
    sizes: dict[str, NodeSize]
    edges: list[FlowEdge]


def _center_x(positions: dict[str, NodePosition], widths: dict[str, float]) -> dict[str, float]:
    return {
        node_id: pos.x + widths.get(node_id, settings.default_node_width) / 2
        for node_id, pos in positions.items()
    }


@router.post("/layout/segments", response_model=SegmentLayoutResponse)
async def layout_segments(request: SegmentLayoutRequest) -> SegmentLayoutResponse:
    """Run the self-correcting segment layout against the submitted node sizes."""
    surface = StaticRenderSurface(request.nodes, request.edges)
    controller = LayoutController(surface, request.config)
    report = await controller.run_with_timeout(request.trigger or "request")

    positions = {n.id: n.position for n in surface.get_nodes()}
    widths = {n.id: n.width or controller.config.default_node_width for n in surface.get_nodes()}
    return SegmentLayoutResponse(
        positions=positions,
        edges=assign_target_handles(request.edges, _center_x(positions, widths)),
        outcome=report.outcome,
        iterations=report.iterations,
        used_default_sizes=report.used_default_sizes,
    )


@router.post("/layout/auto", response_model=AutoLayoutResponse)
async def layout_auto(request: AutoLayoutRequest) -> AutoLayoutResponse:
    """Heuristic layout from estimated node sizes."""
    result = compute_auto_layout(request.nodes, request.edges, request.config)
    widths = {node_id: size.width for node_id, size in result.sizes.items()}
    return AutoLayoutResponse(
        positions=result.positions,
        sizes=result.sizes,
        edges=assign_target_handles(request.edges, _center_x(result.positions, widths)),
    )
