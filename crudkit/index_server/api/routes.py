"""
HTTP routes for the crudkit index server.

Read and operate materialized indexes:
- GET    /indexes                 list snapshots
- POST   /indexes                 register from a declarative spec
- GET    /indexes/{name}          current snapshot
- GET    /indexes/{name}/watch    server-sent events of {value, sequence}
- POST   /indexes/{name}/pause    stop tailing (live only)
- POST   /indexes/{name}/resume   continue a paused or failed index
- DELETE /indexes/{name}          unregister
"""

import json
import logging
from contextlib import aclosing
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..engine.context import EngineContext
from ..engine.registry import IndexRegistry
from ..index.declarative import IndexSpec
from ..state.store import IndexSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Indexes"])


# --- Request/Response Models ---


class IndexResponse(BaseModel):
    """Snapshot of one index."""

    name: str
    value: Any
    sequence: int
    status: str
    asOf: int = Field(..., description="Publish time of the snapshot (Unix ms)")
    stale: bool
    partial: bool
    gaps: list[list[int]] = Field(default_factory=list)
    error: str | None = None
    failedSequence: int | None = None


class IndexListResponse(BaseModel):
    """All registered indexes."""

    indexes: list[IndexResponse]


class ResumeRequest(BaseModel):
    """Request to resume a paused or failed index."""

    policy: Literal["retry", "skip"] = Field("retry", description="How to continue")


class DeletedResponse(BaseModel):
    name: str
    deleted: bool = True


def _response(snapshot: IndexSnapshot) -> IndexResponse:
    return IndexResponse(**snapshot.to_dict())


# --- Dependencies ---


def get_context(request: Request) -> EngineContext:
    """Get the engine context from app state."""
    return request.app.state.context


def get_registry(context: EngineContext = Depends(get_context)) -> IndexRegistry:
    return context.registry


# --- Index Routes ---


@router.get("/indexes", response_model=IndexListResponse)
async def list_indexes(registry: IndexRegistry = Depends(get_registry)):
    """List every registered index with its current snapshot."""
    return IndexListResponse(indexes=[_response(s) for s in registry.snapshots()])


@router.post("/indexes", response_model=IndexResponse, status_code=status.HTTP_201_CREATED)
async def register_index(
    spec: IndexSpec,
    context: EngineContext = Depends(get_context),
):
    """Register an index from a declarative spec."""
    snapshots = await context.register_specs([spec])
    return _response(snapshots[0])


@router.get("/indexes/{name}", response_model=IndexResponse)
async def get_index(name: str, registry: IndexRegistry = Depends(get_registry)):
    """Current snapshot of an index. Never waits for an in-flight fold."""
    return _response(registry.get(name))


@router.get("/indexes/{name}/watch")
async def watch_index(
    name: str,
    limit: int | None = Query(None, gt=0, description="Close after this many events"),
    registry: IndexRegistry = Depends(get_registry),
):
    """Stream {value, sequence} updates as server-sent events.

    The first event is the current snapshot. The stream ends when the
    index is unregistered, the client disconnects, or limit is reached.
    """
    # opened here so an unknown index is a 404, not a broken stream
    updates = registry.watch(name)
    first = await anext(updates)

    async def events():
        sent = 0
        async with aclosing(updates):
            update = first
            while True:
                value, sequence = update
                payload = json.dumps({"value": value, "sequence": sequence}, default=str)
                yield f"data: {payload}\n\n"
                sent += 1
                if limit is not None and sent >= limit:
                    return
                try:
                    update = await anext(updates)
                except StopAsyncIteration:
                    return

    return StreamingResponse(events(), media_type="text/event-stream")


@router.post("/indexes/{name}/pause", response_model=IndexResponse)
async def pause_index(name: str, registry: IndexRegistry = Depends(get_registry)):
    return _response(await registry.pause(name))


@router.post("/indexes/{name}/resume", response_model=IndexResponse)
async def resume_index(
    name: str,
    body: ResumeRequest | None = None,
    registry: IndexRegistry = Depends(get_registry),
):
    policy = body.policy if body else "retry"
    return _response(await registry.resume(name, policy))


@router.delete("/indexes/{name}", response_model=DeletedResponse)
async def delete_index(name: str, registry: IndexRegistry = Depends(get_registry)):
    await registry.unregister(name)
    return DeletedResponse(name=name)
