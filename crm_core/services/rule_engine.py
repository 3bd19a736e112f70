from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

RULE_FIELDS = (
    "totalSpend",
    "totalPurchases",
    "lastPurchase",
    "averageOrderValue",
    "orderFrequency",
    "paymentMethod",
    "orderStatus",
)
RULE_OPERATORS = (
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "contains",
    "notContains",
    "in",
    "notIn",
)


def evaluate_rule(rule: Mapping[str, Any], metrics: Mapping[str, Any]) -> bool:
    """Evaluate one ``{field, operator, value}`` rule against projected metrics.

    Unknown operators and type mismatches evaluate to ``False``; this function never raises
    for well-formed mappings.
    """
    operator = str(rule.get("operator") or "").strip()
    handler = _OPERATORS.get(operator)
    if handler is None:
        return False
    field = str(rule.get("field") or "").strip()
    return handler(metrics.get(field), rule.get("value"))


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, datetime):
        other = _to_datetime(expected)
        return other is not None and actual == other
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if isinstance(actual, str) and isinstance(expected, str):
        return actual == expected
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        return list(actual) == list(expected)
    return actual is None and expected is None


def _not_equals(actual: Any, expected: Any) -> bool:
    return not _equals(actual, expected)


def _greater_than(actual: Any, expected: Any) -> bool:
    pair = _comparable_pair(actual, expected)
    return pair is not None and pair[0] > pair[1]


def _less_than(actual: Any, expected: Any) -> bool:
    pair = _comparable_pair(actual, expected)
    return pair is not None and pair[0] < pair[1]


def _contains(actual: Any, expected: Any) -> bool | None:
    if isinstance(actual, str):
        if not isinstance(expected, str):
            return None
        return expected in actual
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    return None


def _contains_op(actual: Any, expected: Any) -> bool:
    return _contains(actual, expected) is True


def _not_contains_op(actual: Any, expected: Any) -> bool:
    return _contains(actual, expected) is False


def _member_of(actual: Any, expected: Any) -> bool | None:
    if not isinstance(expected, (list, tuple, set)):
        return None
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, candidate) for item in actual for candidate in expected)
    return any(_equals(actual, candidate) for candidate in expected)


def _in_op(actual: Any, expected: Any) -> bool:
    return _member_of(actual, expected) is True


def _not_in_op(actual: Any, expected: Any) -> bool:
    return _member_of(actual, expected) is False


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "notEquals": _not_equals,
    "greaterThan": _greater_than,
    "lessThan": _less_than,
    "contains": _contains_op,
    "notContains": _not_contains_op,
    "in": _in_op,
    "notIn": _not_in_op,
}


def _comparable_pair(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    if isinstance(actual, datetime):
        other = _to_datetime(expected)
        if other is None:
            return None
        return actual, other
    if _is_number(actual) and _is_number(expected):
        return actual, expected
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return as_utc(parsed)
    return None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
