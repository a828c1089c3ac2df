"""Drip API Routes - Campaigns, steps and enrollments"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_user_id_dep, get_correlation_id_dep, get_drip_service
from ...domain.enums import CampaignStatus, ExitReason, RunStatus, StepHistoryStatus, TargetType
from ...domain.errors import DomainError
from ...services.drip_service import DripService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateCampaignRequest(BaseModel):
    """Request to create a drip campaign"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    target_type: TargetType = TargetType.MANUAL
    target_segment_ids: List[str] = Field(default_factory=list)
    target_tags: List[str] = Field(default_factory=list)
    timezone: str = "UTC"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    schedule: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)


class UpdateCampaignRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    steps: Optional[List[Dict[str, Any]]] = None
    target_type: Optional[TargetType] = None
    target_segment_ids: Optional[List[str]] = None
    target_tags: Optional[List[str]] = None
    timezone: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    schedule: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


class ReorderStepsRequest(BaseModel):
    step_ids: List[str] = Field(..., min_length=1)


class EnrollRequest(BaseModel):
    contact_id: str = Field(..., min_length=1)
    contact_phone: str = ""
    variables: Dict[str, Any] = Field(default_factory=dict)


class UnenrollRequest(BaseModel):
    contact_id: str = Field(..., min_length=1)
    reason: ExitReason = ExitReason.MANUAL


class ConversionRequest(BaseModel):
    contact_id: str = Field(..., min_length=1)


class MessageStatusRequest(BaseModel):
    """Delivery receipt from the messaging channel"""
    status: StepHistoryStatus


class PaginatedResponse(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


# ============================================================================
# Campaigns
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_campaign(
    request: CreateCampaignRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Create a draft campaign"""
    try:
        campaign = service.create_campaign(user_id, request.model_dump(exclude_none=True))
        logger.info(
            f"Created campaign: {campaign.campaign_id}",
            extra={"campaign_id": campaign.campaign_id, "user_id": user_id}
        )
        return campaign.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=PaginatedResponse)
async def list_campaigns(
    status: Optional[CampaignStatus] = Query(None),
    q: Optional[str] = Query(None, description="Search by name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        skip = (page - 1) * page_size
        campaigns = service.list_campaigns(user_id, status, q, skip, page_size)
        total = service.count_campaigns(user_id, status, q)
        return PaginatedResponse(
            items=[c.model_dump(mode="json") for c in campaigns],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/stats")
async def get_campaign_stats(
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service)
):
    """Funnel rates (percent) across the tenant's campaigns"""
    return service.get_campaign_stats(user_id)


@router.post("/runs/{run_id}/status")
async def record_message_status(
    run_id: str,
    request: MessageStatusRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.record_message_status(user_id, run_id, request.status).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service)
):
    try:
        return service.get_run(user_id, run_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service)
):
    try:
        return service.get_campaign(user_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    request: UpdateCampaignRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        campaign = service.update_campaign(user_id, campaign_id, request.model_dump(exclude_unset=True))
        return campaign.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.delete_campaign(user_id, campaign_id)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.duplicate_campaign(user_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/launch")
async def launch_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.launch_campaign(user_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.pause_campaign(user_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.resume_campaign(user_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Steps
# ============================================================================

@router.post("/{campaign_id}/steps", status_code=status.HTTP_201_CREATED)
async def add_step(
    campaign_id: str,
    request: Dict[str, Any],
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.add_step(user_id, campaign_id, request).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/{campaign_id}/steps/order")
async def reorder_steps(
    campaign_id: str,
    request: ReorderStepsRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.reorder_steps(user_id, campaign_id, request.step_ids).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{campaign_id}/steps/{step_id}")
async def update_step(
    campaign_id: str,
    step_id: str,
    request: Dict[str, Any],
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.update_step(user_id, campaign_id, step_id, request).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{campaign_id}/steps/{step_id}")
async def remove_step(
    campaign_id: str,
    step_id: str,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.remove_step(user_id, campaign_id, step_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Enrollment
# ============================================================================

@router.post("/{campaign_id}/enroll", status_code=status.HTTP_201_CREATED)
async def enroll_contact(
    campaign_id: str,
    request: EnrollRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Enroll a contact; the first step goes out on the next scheduler cycle it is due"""
    try:
        run = service.enroll_contact(
            user_id, campaign_id, request.contact_id, request.contact_phone, request.variables
        )
        return run.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/unenroll")
async def unenroll_contact(
    campaign_id: str,
    request: UnenrollRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        run = service.unenroll_contact(user_id, campaign_id, request.contact_id, request.reason)
        return run.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/conversions")
async def mark_conversion(
    campaign_id: str,
    request: ConversionRequest,
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        return service.mark_conversion(user_id, campaign_id, request.contact_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{campaign_id}/runs", response_model=PaginatedResponse)
async def list_runs(
    campaign_id: str,
    status: Optional[RunStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_user_id_dep),
    service: DripService = Depends(get_drip_service)
):
    try:
        skip = (page - 1) * page_size
        runs = service.list_runs(user_id, campaign_id, status, skip, page_size)
        total = service.count_runs(user_id, campaign_id, status)
        return PaginatedResponse(
            items=[r.model_dump(mode="json") for r in runs],
            page=page,
            page_size=page_size,
            total=total
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
