"""
Permission matching and condition evaluation.

Everything here is a pure function of its arguments (plus "now" for time
conditions), so it can be called from any number of concurrent callers.
Missing context paths resolve to ``MISSING`` and make conditions fail
gracefully instead of raising.
"""

import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.errors import ValidationError
from shared.logging import get_logger
from .models import (
    ACTION_WILDCARD, RESOURCE_WILDCARD,
    AuthorizationContext, Condition, ConditionOperator, ContextRef,
    Permission, PolicyStatement, TimeCondition,
)

logger = get_logger("rbac.matcher")


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

# Context roots addressable from condition paths, camelCase or snake_case
_CONTEXT_ROOTS = {
    "userId": "user_id",
    "tenantId": "tenant_id",
    "resourceId": "resource_id",
    "resourceAttributes": "resource_attributes",
    "userAttributes": "user_attributes",
    "requestContext": "request_context",
    "user_id": "user_id",
    "tenant_id": "tenant_id",
    "resource": "resource",
    "action": "action",
    "resource_id": "resource_id",
    "resource_attributes": "resource_attributes",
    "user_attributes": "user_attributes",
    "request_context": "request_context",
    "environment": "environment",
}


# ---------------------------------------------------------------------------
# Resource / action matching
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1024)
def _compile_pattern(pattern: str) -> "re.Pattern[str]":
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")), re.DOTALL)


def matches_glob(pattern: str, value: str) -> bool:
    """Anchored match where each ``*`` stands for any run of characters."""
    if "*" not in pattern:
        return pattern == value
    return _compile_pattern(pattern).fullmatch(value) is not None


def matches_resource(pattern: str, resource: str) -> bool:
    """Check a permission resource pattern against a requested resource."""
    if pattern == RESOURCE_WILDCARD:
        return True
    return matches_glob(pattern, resource)


def matches_action(actions: Iterable[str], action: str) -> bool:
    """Check whether ``actions`` covers ``action``."""
    actions = list(actions)
    return ACTION_WILDCARD in actions or action in actions


def matches_context(permission: Permission, context: AuthorizationContext) -> bool:
    """Resource, action and tenant match (conditions are not considered)."""
    if not matches_resource(permission.resource, context.resource):
        return False
    if not matches_action(permission.actions, context.action):
        return False
    if permission.tenant_id and permission.tenant_id != context.tenant_id:
        return False
    return True


def matches_permission(permission: Permission, context: AuthorizationContext,
                       now: Optional[datetime] = None) -> bool:
    """Full match of a permission: context, attribute and time conditions."""
    if not matches_context(permission, context):
        return False
    if permission.conditions and not evaluate_conditions(permission.conditions, context):
        return False
    if permission.time_conditions and not evaluate_time_condition(permission.time_conditions, now):
        return False
    return True


# ---------------------------------------------------------------------------
# Policy statements
# ---------------------------------------------------------------------------


def _matches_any_action(patterns: Iterable[str], action: str) -> bool:
    return any(p == ACTION_WILDCARD or matches_glob(p, action) for p in patterns)


def _matches_any_resource(patterns: Iterable[str], context: AuthorizationContext) -> bool:
    qualified = f"{context.resource}:{context.resource_id}" if context.resource_id else context.resource
    for pattern in patterns:
        if pattern == RESOURCE_WILDCARD or pattern == context.resource:
            return True
        if matches_glob(pattern, qualified):
            return True
    return False


def _matches_principal(patterns: Iterable[str], principals: Iterable[str]) -> bool:
    principals = set(principals)
    return any(p == "*" or p in principals for p in patterns)


def matches_statement(statement: PolicyStatement, context: AuthorizationContext,
                      principals: Sequence[str] = ()) -> bool:
    """Check a policy statement against the context.

    ``principals`` are the identities of the caller a statement may name:
    the user ID, the IDs of the roles the user holds and the user's
    effective permission IDs.
    """
    if statement.principals and not _matches_principal(statement.principals, principals):
        return False
    if statement.not_principals and _matches_principal(statement.not_principals, principals):
        return False

    if statement.not_actions and _matches_any_action(statement.not_actions, context.action):
        return False
    if not _matches_any_action(statement.actions, context.action):
        return False

    if statement.not_resources and _matches_any_resource(statement.not_resources, context):
        return False
    if not _matches_any_resource(statement.resources, context):
        return False

    if statement.conditions and not evaluate_conditions(statement.conditions, context):
        return False
    return True


# ---------------------------------------------------------------------------
# Attribute conditions
# ---------------------------------------------------------------------------


def resolve_field(path: str, context: AuthorizationContext) -> Any:
    """Walk a dot-path into the context, returning ``MISSING`` when absent."""
    if not path:
        return MISSING
    root, *rest = path.split(".")
    attribute = _CONTEXT_ROOTS.get(root)
    if attribute is None:
        return MISSING
    value: Any = getattr(context, attribute, MISSING)
    for part in rest:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return MISSING
    return value


def evaluate_conditions(conditions: Sequence[Condition], context: AuthorizationContext) -> bool:
    """All conditions must hold; an empty list always holds."""
    return all(evaluate_condition(condition, context) for condition in conditions)


def evaluate_condition(condition: Condition, context: AuthorizationContext) -> bool:
    """Evaluate a single condition. Never raises."""
    field_value = resolve_field(condition.field, context)
    operand = condition.operand
    if isinstance(operand, ContextRef):
        compare_value = resolve_field(operand.path, context)
    else:
        compare_value = operand.value

    try:
        return _apply_operator(condition.operator, field_value, compare_value)
    except Exception as e:
        logger.warning("Condition evaluation failed", field=condition.field,
                       operator=str(condition.operator), error=str(e))
        return False


def _is_absent(value: Any) -> bool:
    return value is MISSING or value is None


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return False
    # bools are not numbers here: True must not equal 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _contains(container: Any, item: Any) -> Optional[bool]:
    """Substring or membership test; ``None`` when not applicable."""
    if isinstance(container, str) and isinstance(item, str):
        return item in container
    if isinstance(container, (list, tuple, set, frozenset)):
        return any(_strict_equals(element, item) for element in container)
    return None


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return None
    return None


def _compare(left: Any, right: Any, op) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return op(left, right)
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is None or right_num is None:
        return False
    return op(left_num, right_num)


def _apply_operator(operator: Any, field_value: Any, compare_value: Any) -> bool:
    if operator == ConditionOperator.EQUALS:
        return _strict_equals(field_value, compare_value)

    if operator == ConditionOperator.NOT_EQUALS:
        return not _strict_equals(field_value, compare_value)

    if operator == ConditionOperator.CONTAINS:
        return _contains(field_value, compare_value) is True

    if operator == ConditionOperator.NOT_CONTAINS:
        return _contains(field_value, compare_value) is not True

    if operator == ConditionOperator.STARTS_WITH:
        return isinstance(field_value, str) and isinstance(compare_value, str) \
            and field_value.startswith(compare_value)

    if operator == ConditionOperator.ENDS_WITH:
        return isinstance(field_value, str) and isinstance(compare_value, str) \
            and field_value.endswith(compare_value)

    if operator == ConditionOperator.REGEX:
        if not (isinstance(field_value, str) and isinstance(compare_value, str)):
            return False
        try:
            return re.search(compare_value, field_value) is not None
        except re.error:
            return False

    if operator == ConditionOperator.GREATER_THAN:
        return _compare(field_value, compare_value, lambda a, b: a > b)

    if operator == ConditionOperator.GREATER_THAN_OR_EQUAL:
        return _compare(field_value, compare_value, lambda a, b: a >= b)

    if operator == ConditionOperator.LESS_THAN:
        return _compare(field_value, compare_value, lambda a, b: a < b)

    if operator == ConditionOperator.LESS_THAN_OR_EQUAL:
        return _compare(field_value, compare_value, lambda a, b: a <= b)

    if operator == ConditionOperator.BETWEEN:
        if not isinstance(compare_value, (list, tuple)) or len(compare_value) != 2:
            return False
        low, high = compare_value
        return _compare(field_value, low, lambda a, b: a >= b) \
            and _compare(field_value, high, lambda a, b: a <= b)

    if operator == ConditionOperator.IN:
        if not isinstance(compare_value, (list, tuple)):
            return False
        return any(_strict_equals(field_value, item) for item in compare_value)

    if operator == ConditionOperator.NOT_IN:
        if not isinstance(compare_value, (list, tuple)):
            return True
        return not any(_strict_equals(field_value, item) for item in compare_value)

    if operator == ConditionOperator.EXISTS:
        return not _is_absent(field_value)

    if operator == ConditionOperator.NOT_EXISTS:
        return _is_absent(field_value)

    logger.warning("Unknown condition operator", operator=str(operator))
    return False


# ---------------------------------------------------------------------------
# Time conditions
# ---------------------------------------------------------------------------


def _resolve_timezone(name: Optional[str]):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown timezone, falling back to UTC", timezone=name)
        return timezone.utc


def _parse_time(value: str) -> datetime:
    # fromisoformat only learned the trailing "Z" in 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _current_for(boundary: datetime, now_utc: datetime, local: datetime) -> datetime:
    return local.replace(tzinfo=None) if boundary.tzinfo is None else now_utc


def evaluate_time_condition(condition: TimeCondition, now: Optional[datetime] = None) -> bool:
    """Check every present constraint against ``now`` (default: current time).

    Naive ``start_time``/``end_time`` values are wall-clock times in the
    condition's timezone; aware values are absolute instants.
    """
    if condition.is_empty():
        return True

    now_utc = now or datetime.now(timezone.utc)
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    local = now_utc.astimezone(_resolve_timezone(condition.timezone))

    try:
        if condition.start_time:
            start = _parse_time(condition.start_time)
            if _current_for(start, now_utc, local) < start:
                return False
        if condition.end_time:
            end = _parse_time(condition.end_time)
            if _current_for(end, now_utc, local) > end:
                return False
    except ValueError:
        logger.warning("Unparseable time window", start_time=condition.start_time,
                       end_time=condition.end_time)
        return False

    if condition.days_of_week:
        # isoweekday: Monday=1 .. Sunday=7; stored as Sunday=0
        if local.isoweekday() % 7 not in condition.days_of_week:
            return False

    if condition.hours_of_day and local.hour not in condition.hours_of_day:
        return False

    return True


# ---------------------------------------------------------------------------
# Structural validation used by the stores
# ---------------------------------------------------------------------------


def validate_conditions(conditions: Sequence[Condition]) -> None:
    """Raise ``ValidationError`` for malformed conditions."""
    for index, condition in enumerate(conditions):
        if not condition.field or not str(condition.field).strip():
            raise ValidationError("Condition field is required", {"index": index})
        if not isinstance(condition.operator, ConditionOperator):
            raise ValidationError(
                f"Unknown condition operator '{condition.operator}'",
                {"index": index, "operator": str(condition.operator)}
            )


def validate_time_condition(condition: TimeCondition) -> None:
    """Raise ``ValidationError`` for malformed time conditions."""
    for name in ("start_time", "end_time"):
        value = getattr(condition, name)
        if value:
            try:
                _parse_time(value)
            except ValueError:
                raise ValidationError(f"Invalid {name} '{value}'", {name: value})
    if any(not 0 <= day <= 6 for day in condition.days_of_week):
        raise ValidationError("days_of_week entries must be between 0 and 6",
                              {"days_of_week": condition.days_of_week})
    if any(not 0 <= hour <= 23 for hour in condition.hours_of_day):
        raise ValidationError("hours_of_day entries must be between 0 and 23",
                              {"hours_of_day": condition.hours_of_day})


def validate_non_empty(values: List[str], message: str, details: Optional[dict] = None) -> None:
    """Raise ``ValidationError`` unless ``values`` holds a non-blank string."""
    if not values or not any(isinstance(v, str) and v.strip() for v in values):
        raise ValidationError(message, details)
