"""Segment API Routes - Rule-based contact previews"""
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError as PydanticValidationError

from ..deps import get_user_id_dep, get_contact_repo
from ...domain.models import ConditionGroup
from ...repositories.contact_repo import ContactRepository

router = APIRouter()


@router.post("/preview")
async def preview_segment(
    group: Dict[str, Any],
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id_dep),
    contacts: ContactRepository = Depends(get_contact_repo)
):
    """Contacts a rule group selects, plus the total match count"""
    try:
        rules = ConditionGroup.model_validate(group)
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid condition group",
                "details": {"errors": e.errors(include_url=False, include_context=False, include_input=False)}
            }}
        )
    return {
        "items": contacts.find_contacts(user_id, rules, limit),
        "total": contacts.count_contacts(user_id, rules),
    }
