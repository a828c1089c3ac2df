"""Condition Evaluator - Safe evaluation of nested rule groups"""
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Union

from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionLogic, ConditionOperator, ConditionDataType
from ..utils.logger import get_logger
from ..utils.time import coerce_datetime, utc_now

logger = get_logger(__name__)

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluate condition groups against semi-structured records

    Uses a fixed operator set - no eval() or exec(). Evaluation is pure:
    the record is never mutated and the same inputs always give the same
    answer (date operators take ``now`` explicitly for that reason).
    """

    def evaluate(
        self,
        group: Union[ConditionGroup, Condition, Dict[str, Any], None],
        record: Mapping[str, Any],
        now: Optional[datetime] = None
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            group: Group (or single condition) with AND/OR logic; dicts are parsed
            record: Flat or nested data record
            now: Reference time for date operators, defaults to current UTC

        Returns:
            True if the conditions are met
        """
        if group is None:
            return True
        if isinstance(group, dict):
            group = parse_condition(group)
        if now is None:
            now = utc_now()

        if isinstance(group, Condition):
            return self._evaluate_single(group, record, now)
        return self._evaluate_group(group, record, now)

    def _evaluate_group(self, group: ConditionGroup, record: Mapping[str, Any], now: datetime) -> bool:
        if not group.items:
            return True  # vacuous match

        results = (
            self._evaluate_group(item, record, now) if isinstance(item, ConditionGroup)
            else self._evaluate_single(item, record, now)
            for item in group.items
        )
        if group.logic == ConditionLogic.OR:
            return any(results)
        return all(results)

    def _evaluate_single(self, condition: Condition, record: Mapping[str, Any], now: datetime) -> bool:
        try:
            field_value = resolve_field(record, condition.field)
            compare_value = condition.value
            if condition.data_type is not None:
                field_value = _coerce(field_value, condition.data_type)
                compare_value = _coerce(compare_value, condition.data_type)
            return self._compare(field_value, condition.operator, compare_value, now)
        except Exception as e:
            logger.warning(f"Condition evaluation failed on field '{condition.field}': {e}")
            return False  # Fail closed

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any,
        now: datetime
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQUALS:
            return field_value == compare_value

        elif operator == ConditionOperator.NOT_EQUALS:
            return field_value != compare_value

        elif operator == ConditionOperator.CONTAINS:
            return _as_text(compare_value) in _as_text(field_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            return _as_text(compare_value) not in _as_text(field_value)

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.IN:
            return _is_member(field_value, compare_value)

        elif operator == ConditionOperator.NOT_IN:
            return not _is_member(field_value, compare_value)

        elif operator == ConditionOperator.EXISTS:
            return field_value is not None

        elif operator == ConditionOperator.NOT_EXISTS:
            return field_value is None

        elif operator == ConditionOperator.REGEX:
            try:
                return re.search(str(compare_value), _as_raw_text(field_value), re.IGNORECASE) is not None
            except (re.error, TypeError):
                return False

        elif operator == ConditionOperator.BEFORE:
            return self._compare_dates(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.AFTER:
            return self._compare_dates(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.WITHIN_DAYS:
            days = _to_number(compare_value)
            moment = coerce_datetime(field_value)
            if days is None or moment is None:
                return False
            return now - timedelta(days=days) <= moment <= now

        elif operator == ConditionOperator.BETWEEN:
            if not isinstance(compare_value, (list, tuple)) or len(compare_value) != 2:
                return False
            low, high = compare_value
            a, lo, hi = _to_number(field_value), _to_number(low), _to_number(high)
            if a is not None and lo is not None and hi is not None:
                return lo <= a <= hi
            moment, start, end = coerce_datetime(field_value), coerce_datetime(low), coerce_datetime(high)
            if moment is None or start is None or end is None:
                return False
            return start <= moment <= end

        return False

    def _compare_numeric(self, field_value: Any, compare_value: Any, comparator) -> bool:
        """Compare numeric values; anything non-numeric compares false"""
        a = _to_number(field_value)
        b = _to_number(compare_value)
        if a is None or b is None:
            return False
        return comparator(a, b)

    def _compare_dates(self, field_value: Any, compare_value: Any, comparator) -> bool:
        a = coerce_datetime(field_value)
        b = coerce_datetime(compare_value)
        if a is None or b is None:
            return False
        return comparator(a, b)


def parse_condition(data: Dict[str, Any]) -> Union[Condition, ConditionGroup]:
    """Parse a raw dict into a single condition or a group"""
    if "field" in data and "operator" in data:
        return Condition.model_validate(data)
    return ConditionGroup.model_validate(data)


def resolve_field(record: Any, path: str) -> Any:
    """
    Resolve a dotted path against nested dicts (and list indexes)

    Example: "contact.tags.0" -> record["contact"]["tags"][0]
    Missing segments resolve to None.
    """
    value = record
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part, _MISSING)
        elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else _MISSING
        else:
            return None
        if value is _MISSING:
            return None
    return value


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _as_raw_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_text(value: Any) -> str:
    return _as_raw_text(value).lower()


def _is_member(field_value: Any, compare_value: Any) -> bool:
    members = compare_value if isinstance(compare_value, (list, tuple, set)) else [compare_value]
    if isinstance(field_value, (list, tuple, set)):
        return any(item in members for item in field_value)
    return field_value in members


def _coerce(value: Any, data_type: ConditionDataType) -> Any:
    """Apply a data type hint; values that cannot be coerced pass through"""
    if value is None:
        return None
    if data_type == ConditionDataType.STRING:
        return _as_raw_text(value)
    if data_type == ConditionDataType.NUMBER:
        number = _to_number(value)
        return value if number is None else number
    if data_type == ConditionDataType.BOOLEAN:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no", ""):
                return False
            return value
        return bool(value)
    if data_type == ConditionDataType.DATE:
        moment = coerce_datetime(value)
        return value if moment is None else moment
    if data_type == ConditionDataType.ARRAY:
        return list(value) if isinstance(value, (list, tuple, set)) else [value]
    return value
