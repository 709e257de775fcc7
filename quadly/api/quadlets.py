"""
Quadlet API endpoints for Quadly.

This module implements FastAPI endpoints for per-(type, name) quadlet CRUD,
lifecycle actions, journal logs, batch status queries and the server-sent
event stream of status changes.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from quadly.core.parser import serialize_quadlet
from quadly.core.quadlet_manager import QuadletManager
from quadly.shared.exceptions import BroadcasterStateError, QueryError
from quadly.shared.models import QuadletDocument, QuadletInfo, UnitType

logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 15.0


# Request/Response Models
class SectionModel(BaseModel):
    """One section of a submitted quadlet."""
    name: str = Field(..., min_length=1, max_length=255)
    entries: List[Tuple[str, str]] = Field(default_factory=list)


class QuadletRequest(BaseModel):
    """Quadlet content, either raw unit-file text or structured sections."""
    content: Optional[str] = None
    sections: Optional[List[SectionModel]] = None

    @model_validator(mode="after")
    def exactly_one_source(self):
        if (self.content is None) == (self.sections is None):
            raise ValueError("Provide exactly one of 'content' or 'sections'")
        return self

    def to_content(self):
        if self.content is not None:
            return self.content
        return [(s.name, s.entries) for s in self.sections]


class QuadletResponse(BaseModel):
    """Response model for a quadlet document."""
    name: str
    unit_type: str
    service_ref: str
    content: str
    sections: List[SectionModel]

    @classmethod
    def from_document(cls, doc: QuadletDocument) -> "QuadletResponse":
        return cls(
            name=doc.name,
            unit_type=doc.unit_type.value,
            service_ref=doc.service_ref,
            content=serialize_quadlet(doc),
            sections=[SectionModel(name=s.name, entries=list(s.entries)) for s in doc.sections]
        )


class QuadletSummary(BaseModel):
    name: str
    unit_type: str
    service_ref: str
    description: Optional[str] = None
    content: Optional[str] = None


class ActionRequest(BaseModel):
    """Request model for a lifecycle action."""
    action: str = Field(..., pattern="^(start|stop|restart)$")


class ActionResponse(BaseModel):
    service_ref: str
    action: str
    job_mode: str = "replace"


class StatusRequest(BaseModel):
    """Request model for a batch status query."""
    refs: List[str] = Field(..., min_length=1, max_length=1000)

    @field_validator('refs')
    @classmethod
    def validate_refs(cls, v):
        refs = [ref.strip() for ref in v if ref.strip()]
        if not refs:
            raise ValueError('refs cannot be empty')
        return refs


class StatusResponse(BaseModel):
    statuses: Dict[str, str]
    errors: Dict[str, dict]


# Dependencies
async def get_quadlet_manager(request: Request) -> QuadletManager:
    """Get quadlet manager from app state."""
    return request.app.state.quadlet_manager


async def tracked_operation(request: Request):
    """Register a mutating request with the shutdown handler."""
    handler = request.app.state.shutdown_handler
    if handler.is_shutdown_requested():
        raise HTTPException(status_code=503, detail="Service is shutting down")
    async with handler.operation_context(f"{request.method} {request.url.path}"):
        yield


def _parse_type(unit_type: str, allow_any: bool = False) -> UnitType:
    try:
        parsed = UnitType.from_suffix(unit_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported quadlet type: {unit_type}")
    if parsed is UnitType.ANY and not allow_any:
        raise HTTPException(status_code=400, detail="A concrete quadlet type is required")
    return parsed


# Quadlet CRUD Endpoints
@router.get("/quadlets/{unit_type}", response_model=List[QuadletSummary])
async def list_quadlets(unit_type: str, include_content: bool = Query(False),
                        manager: QuadletManager = Depends(get_quadlet_manager)):
    """
    List stored quadlets of one type, or of every type with ``any``.

    With ``include_content=true`` each entry also carries its unit-file text.
    """
    parsed = _parse_type(unit_type, allow_any=True)
    if not include_content:
        return [QuadletSummary(**info.to_dict()) for info in await manager.list(parsed)]
    return [
        QuadletSummary(**QuadletInfo.from_document(doc).to_dict(), content=serialize_quadlet(doc))
        for doc in await manager.list_documents(parsed)
    ]


@router.get("/quadlets/{unit_type}/{name}", response_model=QuadletResponse)
async def read_quadlet(unit_type: str, name: str,
                       manager: QuadletManager = Depends(get_quadlet_manager)):
    doc = await manager.read(_parse_type(unit_type), name)
    return QuadletResponse.from_document(doc)


@router.post("/quadlets/{unit_type}/{name}", response_model=QuadletResponse, status_code=201,
             dependencies=[Depends(tracked_operation)])
async def create_quadlet(unit_type: str, name: str, body: QuadletRequest,
                         manager: QuadletManager = Depends(get_quadlet_manager)):
    """
    Create a quadlet and reload the service manager.

    The response is only sent once systemd has re-read its unit files.
    """
    doc = await manager.create(_parse_type(unit_type), name, body.to_content())
    return QuadletResponse.from_document(doc)


@router.put("/quadlets/{unit_type}/{name}", response_model=QuadletResponse,
            dependencies=[Depends(tracked_operation)])
async def update_quadlet(unit_type: str, name: str, body: QuadletRequest,
                         manager: QuadletManager = Depends(get_quadlet_manager)):
    doc = await manager.update(_parse_type(unit_type), name, body.to_content())
    return QuadletResponse.from_document(doc)


@router.delete("/quadlets/{unit_type}/{name}", status_code=204,
               dependencies=[Depends(tracked_operation)])
async def delete_quadlet(unit_type: str, name: str,
                         manager: QuadletManager = Depends(get_quadlet_manager)):
    await manager.delete(_parse_type(unit_type), name)


# Lifecycle Endpoints
@router.post("/quadlets/{unit_type}/{name}/action", response_model=ActionResponse,
             dependencies=[Depends(tracked_operation)])
async def run_action(unit_type: str, name: str, body: ActionRequest,
                     manager: QuadletManager = Depends(get_quadlet_manager)):
    """Submit start/stop/restart in replace mode."""
    ref = await manager.run_action(_parse_type(unit_type), name, body.action)
    return ActionResponse(service_ref=ref, action=body.action)


@router.get("/quadlets/{unit_type}/{name}/logs", response_class=PlainTextResponse)
async def get_quadlet_logs(unit_type: str, name: str,
                           lines: int = Query(50, ge=1, le=10000),
                           manager: QuadletManager = Depends(get_quadlet_manager)):
    return await manager.logs(_parse_type(unit_type), name, lines)


# Status Endpoints
@router.post("/status", response_model=StatusResponse)
async def batch_status(body: StatusRequest, manager: QuadletManager = Depends(get_quadlet_manager)):
    """Query many units at once; one failing unit does not fail the batch."""
    results = await manager.status(body.refs)
    statuses = {}
    errors = {}
    for ref, result in results.items():
        if isinstance(result, QueryError):
            errors[ref] = result.to_dict()["error"]
        else:
            statuses[ref] = result.value
    return StatusResponse(statuses=statuses, errors=errors)


async def _event_stream(source, capacity: Optional[int] = None):
    """
    Yield SSE chunks for changes seen by a subscription opened on ``source``.

    The subscription is opened on first iteration, so a stream that is closed
    or dropped before it starts never holds a buffer.
    """
    async with source.subscribe(capacity) as subscription:
        while True:
            try:
                change = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            except StopAsyncIteration:
                break
            yield f"event: status\ndata: {json.dumps(change.to_dict())}\n\n"


@router.get("/events")
async def stream_events(manager: QuadletManager = Depends(get_quadlet_manager)):
    """
    Server-sent events of status changes.

    Only changes that happen after the stream starts are sent.
    """
    if not manager.broadcaster.accepting_subscribers:
        raise BroadcasterStateError("Broadcaster has been stopped")
    return StreamingResponse(
        _event_stream(manager),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"}
    )
