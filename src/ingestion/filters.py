"""
Filter engine: decides whether an item passes a source's filter.

Conditions are AND-combined over ``item.fields``. An item that lacks a
referenced field never matches. Operator/type compatibility is checked by
``validate_filter`` when a source or plugin is loaded, so evaluation itself
never raises.
"""

import logging
import re
from collections.abc import Iterable, Sequence
from functools import lru_cache
from typing import Any

from src.ingestion.schemas import FilterCondition, IngestItem

logger = logging.getLogger(__name__)

STRING_OPERATORS = frozenset(
    {"equals", "not_equals", "contains", "starts_with", "ends_with", "regex"}
)
NUMBER_OPERATORS = frozenset({"equals", "not_equals", "gt", "gte", "lt", "lte"})
ENUM_OPERATORS = frozenset({"equals", "not_equals", "in", "not_in"})
BOOLEAN_OPERATORS = frozenset({"equals", "not_equals"})

OPERATORS_BY_TYPE: dict[str, frozenset[str]] = {
    "string": STRING_OPERATORS,
    "number": NUMBER_OPERATORS,
    "enum": ENUM_OPERATORS,
    "boolean": BOOLEAN_OPERATORS,
}

_MISSING = object()


def is_operator_valid_for_type(operator: str, field_type: str) -> bool:
    return operator in OPERATORS_BY_TYPE.get(field_type, frozenset())


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        logger.warning(f"Invalid filter regex: {pattern!r}")
        return None


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(field_value: Any, operator: str, expected: Any) -> bool:
    """Evaluate a single operator. Unknown operators never match."""
    if operator == "equals":
        return field_value == expected
    if operator == "not_equals":
        return field_value != expected
    if operator == "contains":
        return str(expected) in str(field_value)
    if operator == "starts_with":
        return str(field_value).startswith(str(expected))
    if operator == "ends_with":
        return str(field_value).endswith(str(expected))
    if operator == "regex":
        compiled = _compile(str(expected))
        return compiled is not None and compiled.search(str(field_value)) is not None
    if operator in ("gt", "gte", "lt", "lte"):
        left, right = _to_number(field_value), _to_number(expected)
        if left is None or right is None:
            return False
        if operator == "gt":
            return left > right
        if operator == "gte":
            return left >= right
        if operator == "lt":
            return left < right
        return left <= right
    if operator == "in":
        return isinstance(expected, (list, tuple, set)) and field_value in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple, set)) and field_value not in expected
    return False


def apply_filter(
    item: IngestItem,
    conditions: Sequence[FilterCondition] | None,
) -> bool:
    """
    Return True when the item passes every condition.

    An empty or missing filter passes everything.
    """
    if not conditions:
        return True

    for condition in conditions:
        value = item.fields.get(condition.field, _MISSING)
        if value is _MISSING:
            return False
        if not evaluate_condition(value, condition.operator, condition.value):
            return False

    return True


def resolve_filter(
    source_filter: Sequence[FilterCondition] | None,
    default_filter: Sequence[FilterCondition] | None,
) -> list[FilterCondition] | None:
    """Source filter wins, then the plugin default, then no filtering."""
    if source_filter:
        return list(source_filter)
    if default_filter:
        return list(default_filter)
    return None


def validate_filter(
    conditions: Iterable[FilterCondition] | None,
    item_fields: Iterable[Any],
    label: str = "filter",
) -> list[str]:
    """
    Check conditions against declared item fields.

    ``item_fields`` is any iterable of objects with ``key``, ``type`` and
    ``values`` attributes (see ``ItemField``).

    Returns:
        List of error strings, empty when the filter is valid
    """
    errors: list[str] = []
    if not conditions:
        return errors

    declared = {f.key: f for f in item_fields}

    for i, cond in enumerate(conditions):
        prefix = f"{label}[{i}]"
        field_def = declared.get(cond.field)
        if field_def is None:
            errors.append(
                f'{prefix}.field "{cond.field}" does not match any declared item field'
            )
            continue

        if not is_operator_valid_for_type(cond.operator, field_def.type):
            errors.append(
                f'{prefix}.operator "{cond.operator}" is not valid for field type '
                f'"{field_def.type}"'
            )
            continue

        if field_def.type == "enum" and field_def.values:
            allowed = field_def.values
            if cond.operator in ("equals", "not_equals") and cond.value not in allowed:
                errors.append(
                    f'{prefix}.value "{cond.value}" is not a valid enum value for '
                    f'"{cond.field}" (allowed: {", ".join(allowed)})'
                )
            if cond.operator in ("in", "not_in"):
                if not isinstance(cond.value, (list, tuple)):
                    errors.append(f"{prefix}.value must be a list for {cond.operator}")
                else:
                    for v in cond.value:
                        if v not in allowed:
                            errors.append(
                                f'{prefix}.value contains "{v}" which is not a valid '
                                f'enum value for "{cond.field}"'
                            )

        if cond.operator == "regex" and _compile(str(cond.value)) is None:
            errors.append(f"{prefix}.value is not a valid regular expression")

    return errors
