"""Recipe router: flow graph construction, validation and structural edits."""

from typing import Callable, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from models.flow_model import FlowGraph
from models.recipe_model import FlowEdge, Process, Recipe, SubStep
from services.flow_graph import build_flow_graph
from services.recipe_ops import (
    RecipeOperationError,
    add_sub_step,
    duplicate_sub_step,
    find_process,
    move_sub_step,
    remove_process,
    remove_sub_step,
)
from services.recipe_validator import find_connection_warnings, validate_connections

router = APIRouter()


class FlowGraphRequest(BaseModel):
    """Request body for the flow-graph endpoint."""

    processes: list[Process]
    edges: list[FlowEdge] = Field(default_factory=list)
    expanded: list[str] = Field(default_factory=list)


class ValidationResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


@router.post("/recipe/flow-graph", response_model=FlowGraph)
async def flow_graph(request: FlowGraphRequest) -> FlowGraph:
    """Nodes and edges to render for the given expansion state."""
    return build_flow_graph(request.processes, request.edges, request.expanded)


@router.post("/recipe/validate", response_model=ValidationResponse)
async def validate_recipe(recipe: Recipe) -> ValidationResponse:
    """Structural validation: blocking errors plus non-blocking warnings."""
    errors = validate_connections(recipe)
    return ValidationResponse(
        valid=not errors,
        errors=errors,
        warnings=find_connection_warnings(recipe),
    )


# ---------- Structural edits ----------

class SubStepEditRequest(BaseModel):
    """A sub-step edit inside one process of the submitted recipe."""

    recipe: Recipe
    process_id: str
    sub_step_id: str


class AddSubStepRequest(BaseModel):
    recipe: Recipe
    process_id: str
    sub_step: SubStep
    index: Optional[int] = None


class DuplicateSubStepRequest(SubStepEditRequest):
    insert_after: bool = True


class MoveSubStepRequest(BaseModel):
    recipe: Recipe
    source_process_id: str
    sub_step_id: str
    target_process_id: str
    target_index: int = -1


class MoveSubStepResponse(BaseModel):
    recipe: Recipe
    sub_step_id: str


class RemoveProcessRequest(BaseModel):
    recipe: Recipe
    process_id: str


def _replace_process(recipe: Recipe, process: Process) -> Recipe:
    return recipe.model_copy(update={
        "processes": [process if p.id == process.id else p for p in recipe.processes],
    })


def _edit_process(recipe: Recipe, process_id: str, edit: Callable[[Process], Process]) -> Recipe:
    try:
        return _replace_process(recipe, edit(find_process(recipe.processes, process_id)))
    except RecipeOperationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/recipe/sub-steps/add", response_model=Recipe)
async def add_step(request: AddSubStepRequest) -> Recipe:
    """Insert a sub-step; orders are renumbered 1..n."""
    return _edit_process(
        request.recipe, request.process_id,
        lambda p: add_sub_step(p, request.sub_step, request.index),
    )


@router.post("/recipe/sub-steps/remove", response_model=Recipe)
async def remove_step(request: SubStepEditRequest) -> Recipe:
    return _edit_process(
        request.recipe, request.process_id,
        lambda p: remove_sub_step(p, request.sub_step_id),
    )


@router.post("/recipe/sub-steps/duplicate", response_model=Recipe)
async def duplicate_step(request: DuplicateSubStepRequest) -> Recipe:
    return _edit_process(
        request.recipe, request.process_id,
        lambda p: duplicate_sub_step(p, request.sub_step_id, request.insert_after),
    )


@router.post("/recipe/sub-steps/move", response_model=MoveSubStepResponse)
async def move_step(request: MoveSubStepRequest) -> MoveSubStepResponse:
    """Move a sub-step within or across processes; cross-process moves get a new id."""
    try:
        processes, new_id = move_sub_step(
            request.recipe.processes,
            request.source_process_id,
            request.sub_step_id,
            request.target_process_id,
            request.target_index,
        )
    except RecipeOperationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return MoveSubStepResponse(
        recipe=request.recipe.model_copy(update={"processes": processes}),
        sub_step_id=new_id,
    )


@router.post("/recipe/processes/remove", response_model=Recipe)
async def remove_recipe_process(request: RemoveProcessRequest) -> Recipe:
    """Remove a process together with every edge touching it."""
    try:
        processes, edges = remove_process(
            request.recipe.processes, request.recipe.edges, request.process_id
        )
    except RecipeOperationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return request.recipe.model_copy(update={"processes": processes, "edges": edges})
