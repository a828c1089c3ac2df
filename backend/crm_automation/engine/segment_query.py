"""Segment Query Builder - Translate condition groups into MongoDB filters"""
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionLogic, ConditionOperator
from ..utils.logger import get_logger
from ..utils.time import coerce_datetime, to_storage, utc_now

logger = get_logger(__name__)


def build_mongo_query(group: ConditionGroup, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Build a MongoDB filter equivalent to a condition group

    Conditions that cannot be expressed (bad regex, malformed ``between``)
    are dropped rather than failing the whole query. An empty group
    yields ``{}``, which matches everything.
    """
    if now is None:
        now = utc_now()

    clauses: List[Dict[str, Any]] = []
    for item in group.items:
        if isinstance(item, ConditionGroup):
            clause = build_mongo_query(item, now)
        else:
            clause = build_condition_query(item, now)
        if clause:
            clauses.append(clause)

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses} if group.logic == ConditionLogic.AND else {"$or": clauses}


def build_condition_query(condition: Condition, now: datetime) -> Dict[str, Any]:
    """Build the filter clause for a single condition"""
    field = condition.field
    value = condition.value
    operator = condition.operator

    if operator == ConditionOperator.EQUALS:
        return {field: value}
    if operator == ConditionOperator.NOT_EQUALS:
        return {field: {"$ne": value}}
    if operator == ConditionOperator.CONTAINS:
        return {field: {"$regex": re.escape(str(value)), "$options": "i"}}
    if operator == ConditionOperator.NOT_CONTAINS:
        return {field: {"$not": re.compile(re.escape(str(value)), re.IGNORECASE)}}
    if operator == ConditionOperator.GREATER_THAN:
        return {field: {"$gt": value}}
    if operator == ConditionOperator.LESS_THAN:
        return {field: {"$lt": value}}
    if operator == ConditionOperator.IN:
        return {field: {"$in": value if isinstance(value, list) else [value]}}
    if operator == ConditionOperator.NOT_IN:
        return {field: {"$nin": value if isinstance(value, list) else [value]}}
    if operator == ConditionOperator.EXISTS:
        return {field: {"$exists": True, "$ne": None}}
    if operator == ConditionOperator.NOT_EXISTS:
        return {"$or": [{field: {"$exists": False}}, {field: None}]}
    if operator == ConditionOperator.BETWEEN:
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return {field: {"$gte": _bound(value[0]), "$lte": _bound(value[1])}}
        return {}
    if operator in (ConditionOperator.BEFORE, ConditionOperator.AFTER):
        moment = coerce_datetime(value)
        if moment is None:
            return {}
        op = "$lt" if operator == ConditionOperator.BEFORE else "$gt"
        return {field: {op: to_storage(moment)}}
    if operator == ConditionOperator.WITHIN_DAYS:
        try:
            days = float(value)
        except (TypeError, ValueError):
            return {}
        return {field: {"$gte": to_storage(now - timedelta(days=days))}}
    if operator == ConditionOperator.REGEX:
        try:
            re.compile(str(value))
        except re.error:
            logger.warning(f"Dropping invalid regex condition on '{field}'")
            return {}
        return {field: {"$regex": str(value), "$options": "i"}}
    return {}


def _bound(value: Any) -> Any:
    """Numbers stay numbers; date-like strings become storage datetimes"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    moment = coerce_datetime(value) if isinstance(value, (str, datetime)) else None
    return to_storage(moment) if moment is not None else value
