"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Depends, Header, HTTPException, Request, status

from ..engine.trigger_engine import TriggerEngine
from ..repositories.contact_repo import ContactRepository
from ..services.runtime import AutomationRuntime, get_runtime
from ..services.trigger_service import TriggerService
from ..services.flow_service import FlowService
from ..services.drip_service import DripService
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(request: Request) -> str:
    """
    Correlation ID assigned by CorrelationIdMiddleware

    Falls back to a fresh id when the app is mounted without the middleware.
    """
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
    return correlation_id


async def get_user_id_dep(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    """
    Tenant id for the request

    Authentication happens upstream (API gateway); the gateway forwards
    the resolved tenant in X-User-Id.

    Raises:
        HTTPException: 401 if the header is missing
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTHENTICATION_ERROR", "message": "X-User-Id header is missing"}}
        )
    return x_user_id.strip()


def get_runtime_dep() -> AutomationRuntime:
    return get_runtime()


def get_trigger_service(runtime: AutomationRuntime = Depends(get_runtime_dep)) -> TriggerService:
    return runtime.trigger_service


def get_trigger_engine(runtime: AutomationRuntime = Depends(get_runtime_dep)) -> TriggerEngine:
    return runtime.trigger_engine


def get_flow_service(runtime: AutomationRuntime = Depends(get_runtime_dep)) -> FlowService:
    return runtime.flow_service


def get_drip_service(runtime: AutomationRuntime = Depends(get_runtime_dep)) -> DripService:
    return runtime.drip_service


def get_contact_repo(runtime: AutomationRuntime = Depends(get_runtime_dep)) -> ContactRepository:
    return runtime.contact_repo
