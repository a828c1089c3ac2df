"""Trigger API Routes - Trigger management and execution history"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_user_id_dep, get_correlation_id_dep, get_trigger_service
from ...domain.enums import EventSource, ExecutionStatus, TriggerStatus
from ...domain.errors import DomainError
from ...services.trigger_service import TriggerService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateTriggerRequest(BaseModel):
    """Request to create a trigger"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    event_source: EventSource
    event_type: Optional[str] = None
    condition_group: Dict[str, Any] = Field(default_factory=dict)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    schedule: Optional[Dict[str, Any]] = None
    throttle: Optional[Dict[str, Any]] = None
    priority: int = 0
    tags: List[str] = Field(default_factory=list)
    status: TriggerStatus = TriggerStatus.DRAFT


class UpdateTriggerRequest(BaseModel):
    """Partial trigger update; omitted fields are left alone"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    event_source: Optional[EventSource] = None
    event_type: Optional[str] = None
    condition_group: Optional[Dict[str, Any]] = None
    actions: Optional[List[Dict[str, Any]]] = None
    schedule: Optional[Dict[str, Any]] = None
    throttle: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None
    tags: Optional[List[str]] = None


class PaginatedResponse(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_trigger(
    request: CreateTriggerRequest,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Create a trigger"""
    try:
        trigger = service.create_trigger(user_id, request.model_dump())
        logger.info(
            f"Created trigger: {trigger.trigger_id}",
            extra={"trigger_id": trigger.trigger_id, "user_id": user_id}
        )
        return trigger.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=PaginatedResponse)
async def list_triggers(
    status: Optional[TriggerStatus] = Query(None),
    event_source: Optional[EventSource] = Query(None),
    q: Optional[str] = Query(None, description="Search by name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List the tenant's triggers, newest first"""
    try:
        skip = (page - 1) * page_size
        source = event_source.value if event_source else None
        triggers = service.list_triggers(user_id, status, source, q, skip, page_size)
        total = service.count_triggers(user_id, status, source, q)
        return PaginatedResponse(
            items=[t.model_dump(mode="json") for t in triggers],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/stats")
async def get_trigger_stats(
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service)
):
    """Dashboard totals"""
    return service.get_trigger_stats(user_id)


@router.get("/executions", response_model=PaginatedResponse)
async def list_executions(
    trigger_id: Optional[str] = Query(None),
    status: Optional[ExecutionStatus] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service)
):
    """Execution history, newest first"""
    try:
        skip = (page - 1) * page_size
        executions = service.list_executions(user_id, trigger_id, status, start_date, end_date, skip, page_size)
        total = service.count_executions(user_id, trigger_id, status, start_date, end_date)
        return PaginatedResponse(
            items=[e.model_dump(mode="json") for e in executions],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service)
):
    try:
        return service.get_execution(user_id, execution_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{trigger_id}")
async def get_trigger(
    trigger_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service)
):
    try:
        return service.get_trigger(user_id, trigger_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{trigger_id}")
async def update_trigger(
    trigger_id: str,
    request: UpdateTriggerRequest,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Update editable fields"""
    try:
        trigger = service.update_trigger(user_id, trigger_id, request.model_dump(exclude_unset=True))
        return trigger.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{trigger_id}")
async def delete_trigger(
    trigger_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        service.delete_trigger(user_id, trigger_id)
        return {"deleted": True, "trigger_id": trigger_id}
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{trigger_id}/activate")
async def activate_trigger(
    trigger_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.activate_trigger(user_id, trigger_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{trigger_id}/pause")
async def pause_trigger(
    trigger_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.pause_trigger(user_id, trigger_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{trigger_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_trigger(
    trigger_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.duplicate_trigger(user_id, trigger_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
