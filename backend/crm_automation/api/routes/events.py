"""Event API Routes - Inbound event ingestion"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_user_id_dep, get_correlation_id_dep, get_trigger_engine, get_trigger_service
from ...domain.enums import EventSource
from ...domain.errors import DomainError
from ...engine.trigger_engine import TriggerEngine, EventProcessingResult
from ...services.trigger_service import TriggerService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class InboundEventRequest(BaseModel):
    """An event from a webhook, channel or internal CRM hook"""
    source_type: EventSource
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    contact_id: Optional[str] = None
    source_id: Optional[str] = None


@router.post("", response_model=EventProcessingResult, status_code=status.HTTP_202_ACCEPTED)
async def process_event(
    request: InboundEventRequest,
    user_id: str = Depends(get_user_id_dep),
    engine: TriggerEngine = Depends(get_trigger_engine),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Ingest an event

    Responds once matching is done; matched action pipelines continue in
    the background.
    """
    try:
        return await engine.process_event(user_id, request.model_dump())
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/recent")
async def list_recent_events(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id_dep),
    service: TriggerService = Depends(get_trigger_service)
) -> List[Dict[str, Any]]:
    return [event.model_dump(mode="json") for event in service.list_recent_events(user_id, limit)]
