"""HTTP routes: health, diagnostics, operation status and SSE operation streams."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from dockpilot.errors import EngineError
from dockpilot.server.auth import verify_api_key
from dockpilot.server.models import BatchUpdateRequest, HealthResponse
from dockpilot.server.services import get_services
from dockpilot.server.sse import operation_response
from dockpilot.streaming.operations import OperationKind

router = APIRouter()

_STACK_ACTIONS: dict[str, OperationKind] = {
    "start": OperationKind.STACK_START,
    "restart": OperationKind.STACK_RESTART,
    "down": OperationKind.STACK_DOWN,
    "update": OperationKind.STACK_UPDATE,
}


# --- Health & diagnostics ---


@router.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint; reports whether the engine answers."""
    try:
        await get_services().engine.ping()
    except EngineError:
        return HealthResponse(engine="unavailable")
    return HealthResponse()


@router.get("/api/streams", dependencies=[Depends(verify_api_key)])
async def streams() -> dict[str, Any]:
    """Live tails, shell sessions, running operations and open connections."""
    services = get_services()
    return {
        "tails": services.hub.snapshot(),
        "shells": services.bridge.snapshot(),
        "operations": [
            op.to_status() for op in services.operations.list_all() if not op.finished
        ],
        "connections": services.arena.snapshot(),
    }


# --- Operation status ---


@router.get("/api/operations", dependencies=[Depends(verify_api_key)])
async def list_operations() -> list[dict[str, Any]]:
    return [op.to_status() for op in get_services().operations.list_all()]


@router.get("/api/operations/{operation_id}", dependencies=[Depends(verify_api_key)])
async def get_operation(operation_id: str) -> dict[str, Any]:
    op = get_services().operations.get(operation_id)
    if op is None:
        raise HTTPException(status_code=404, detail="Operation not found")
    return op.to_status()


@router.get("/api/updates/history", dependencies=[Depends(verify_api_key)])
async def update_history() -> list[dict[str, Any]]:
    """Recent image update records, newest first."""
    return get_services().operations.update_history()


# --- Operation streams ---


@router.get("/api/stacks/{name}/stream-{action}", dependencies=[Depends(verify_api_key)])
async def stream_stack_action(name: str, action: str) -> EventSourceResponse:
    """Run a compose action on a stack and stream its output."""
    kind = _STACK_ACTIONS.get(action)
    if kind is None:
        raise HTTPException(status_code=404, detail=f"Unknown stack action: {action}")
    operations = get_services().operations
    return operation_response(operations, operations.start(kind, name))


@router.get("/api/containers/{container_id}/stream-update", dependencies=[Depends(verify_api_key)])
async def stream_container_update(container_id: str) -> EventSourceResponse:
    """Pull the container's image and restart it when a newer one arrived."""
    operations = get_services().operations
    return operation_response(
        operations, operations.start(OperationKind.CONTAINER_UPDATE, container_id)
    )


@router.post("/api/updates/execute/stream", dependencies=[Depends(verify_api_key)])
async def stream_batch_update(request: BatchUpdateRequest) -> EventSourceResponse:
    """Update several images in sequence, streaming per-image progress."""
    operations = get_services().operations
    refs = [image.ref for image in request.images]
    try:
        stream = operations.start(
            OperationKind.IMAGES_UPDATE,
            ", ".join(refs),
            {"images": refs, "restart_containers": request.restart_containers},
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return operation_response(operations, stream)
