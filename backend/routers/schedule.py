"""Schedule router: device occupancy timeline for a recipe."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from models.device_model import ConfigurationLevel, DeviceResource
from models.recipe_model import FlowEdge, Process, Recipe
from models.schedule_model import ScheduleResult
from services.device_pool import ConfigurationError, FactoryConfigService
from services.recipe_validator import find_connection_warnings, validate_connections
from services.scheduler import calculate_schedule

router = APIRouter()
factory_service = FactoryConfigService()


class ScheduleRequest(BaseModel):
    """Request body for the schedule endpoint.

    device_pool overrides the pool of production_line_id; the line's device
    code mapping is applied either way.
    """

    processes: list[Process]
    edges: list[FlowEdge] = Field(default_factory=list)
    device_pool: Optional[list[DeviceResource]] = None
    production_line_id: Optional[str] = None


class ScheduleResponse(BaseModel):
    """Response body for the schedule endpoint."""

    result: ScheduleResult
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


@router.post("/schedule", response_model=ScheduleResponse)
async def schedule_recipe(request: ScheduleRequest) -> ScheduleResponse:
    """Validate the recipe and compute its schedule."""
    processes = request.processes
    device_pool = request.device_pool

    if request.production_line_id:
        try:
            context = factory_service.create_device_context(
                ConfigurationLevel.PRODUCTION_LINE, request.production_line_id
            )
            processes = factory_service.apply_line_mapping(processes, request.production_line_id)
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if device_pool is None:
            device_pool = context.active_device_pool

    recipe = Recipe(processes=request.processes, edges=request.edges)
    result = calculate_schedule(processes, device_pool, request.edges)

    return ScheduleResponse(
        result=result,
        errors=validate_connections(recipe),
        warnings=find_connection_warnings(recipe),
    )
