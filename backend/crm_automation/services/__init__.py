"""Service modules - Business logic layer"""
from .trigger_service import TriggerService
from .flow_service import FlowService
from .drip_service import DripService
from .runtime import AutomationRuntime, get_runtime, set_runtime

__all__ = [
    "TriggerService",
    "FlowService",
    "DripService",
    "AutomationRuntime",
    "get_runtime",
    "set_runtime",
]
