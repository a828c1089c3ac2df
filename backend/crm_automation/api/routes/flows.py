"""Flow API Routes - Flow designer, publishing and instances"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_user_id_dep, get_correlation_id_dep, get_flow_service
from ...domain.enums import EntryType, FlowStatus, InstanceStatus
from ...domain.errors import DomainError
from ...services.flow_service import FlowService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateFlowRequest(BaseModel):
    """Request to create a flow"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    variables: List[Dict[str, Any]] = Field(default_factory=list)
    entry_points: List[Dict[str, Any]] = Field(default_factory=list)
    settings: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)


class UpdateFlowRequest(BaseModel):
    """Save the draft graph or metadata; omitted fields are left alone"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    variables: Optional[List[Dict[str, Any]]] = None
    entry_points: Optional[List[Dict[str, Any]]] = None
    settings: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


class StartInstanceRequest(BaseModel):
    contact_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    entry_type: EntryType = EntryType.API


class ResumeInstanceRequest(BaseModel):
    """Inbound reply for an instance parked on wait_for_reply"""
    reply: Optional[Any] = None


class PaginatedResponse(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Flow definitions
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_flow(
    request: CreateFlowRequest,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Create a draft flow"""
    try:
        flow = service.create_flow(user_id, request.model_dump(exclude_none=True))
        logger.info(f"Created flow: {flow.flow_id}", extra={"flow_id": flow.flow_id, "user_id": user_id})
        return flow.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=PaginatedResponse)
async def list_flows(
    status: Optional[FlowStatus] = Query(None),
    q: Optional[str] = Query(None, description="Search by name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        skip = (page - 1) * page_size
        flows = service.list_flows(user_id, status, q, skip, page_size)
        total = service.count_flows(user_id, status, q)
        return PaginatedResponse(
            items=[f.model_dump(mode="json") for f in flows],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/stats")
async def get_flow_stats(
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    """Dashboard totals"""
    return service.get_flow_stats(user_id)


@router.get("/instances", response_model=PaginatedResponse)
async def list_instances(
    flow_id: Optional[str] = Query(None),
    status: Optional[InstanceStatus] = Query(None),
    contact_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    """Instances across the tenant's flows, newest first"""
    try:
        skip = (page - 1) * page_size
        instances = service.list_instances(user_id, flow_id, status, contact_id, skip, page_size)
        total = service.count_instances(user_id, flow_id, status, contact_id)
        return PaginatedResponse(
            items=[i.model_dump(mode="json") for i in instances],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/instances/{instance_id}")
async def get_instance(
    instance_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    try:
        return service.get_instance(user_id, instance_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/instances/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Cancel a running or waiting instance; the walk stops at its next step"""
    try:
        return service.cancel_instance(user_id, instance_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/instances/{instance_id}/resume")
async def resume_instance(
    instance_id: str,
    request: ResumeInstanceRequest,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        instance = await service.resume_instance(user_id, instance_id, reply=request.reply)
        return instance.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/instances/{instance_id}/retry")
async def retry_instance(
    instance_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        instance = await service.retry_instance(user_id, instance_id)
        return instance.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{flow_id}")
async def get_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    try:
        return service.get_flow(user_id, flow_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{flow_id}")
async def update_flow(
    flow_id: str,
    request: UpdateFlowRequest,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        flow = service.update_flow(user_id, flow_id, request.model_dump(exclude_unset=True))
        return flow.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{flow_id}")
async def delete_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.delete_flow(user_id, flow_id)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{flow_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.duplicate_flow(user_id, flow_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Publishing
# ============================================================================

@router.post("/{flow_id}/validate", response_model=ValidationResult)
async def validate_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    """Check the draft graph without publishing it"""
    try:
        return ValidationResult(**service.validate_flow(user_id, flow_id))
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{flow_id}/publish")
async def publish_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Publish the current draft

    Validation problems come back as a 400 listing every error found.
    """
    try:
        return service.publish_flow(user_id, flow_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{flow_id}/unpublish")
async def unpublish_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.unpublish_flow(user_id, flow_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{flow_id}/archive")
async def archive_flow(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.archive_flow(user_id, flow_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{flow_id}/versions")
async def list_versions(
    flow_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service)
):
    try:
        return [v.model_dump(mode="json") for v in service.list_versions(user_id, flow_id)]
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Instances
# ============================================================================

@router.post("/{flow_id}/instances", status_code=status.HTTP_201_CREATED)
async def start_instance(
    flow_id: str,
    request: StartInstanceRequest,
    user_id: str = Depends(get_user_id_dep),
    service: FlowService = Depends(get_flow_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Start an instance of the published version; the walk runs in the background"""
    try:
        instance = await service.start_instance(
            user_id,
            flow_id,
            contact_id=request.contact_id,
            variables=request.variables,
            context=request.context,
            entry_type=request.entry_type
        )
        return instance.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
