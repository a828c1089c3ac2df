"""Automation engines - Conditions, triggers, flows and drips"""
from .condition_evaluator import ConditionEvaluator, parse_condition, resolve_field
from .segment_query import build_mongo_query
from .tasks import TaskSupervisor
from .flow_validator import validate_flow
from .trigger_engine import TriggerEngine
from .flow_engine import FlowEngine
from .drip_engine import DripEngine

__all__ = [
    "ConditionEvaluator",
    "parse_condition",
    "resolve_field",
    "build_mongo_query",
    "TaskSupervisor",
    "validate_flow",
    "TriggerEngine",
    "FlowEngine",
    "DripEngine",
]
