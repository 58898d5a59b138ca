"""
Segment filter expressions.

A filter is a tree of AND/OR groups over leaf conditions:

    {
        "logic": "AND",
        "conditions": [
            {"field": "totalSpent", "operator": "gte", "value": 500},
            {"field": "rfmSegment", "operator": "in", "value": ["AT_RISK", "CANNOT_LOSE"]},
            {
                "logic": "OR",
                "conditions": [
                    {"field": "tags", "operator": "contains", "value": "vip"},
                    {"field": "isHighValue", "operator": "eq", "value": true}
                ]
            }
        ]
    }

Raw expressions are validated in full before anything is turned into SQL.
Every problem is reported with its path, e.g.
``conditions[2].conditions[0].value: expected a number``.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Optional, Union

from sqlalchemy import String, and_, cast, or_, true
from sqlalchemy.sql.elements import ColumnElement

from segmentflow.exceptions import InvalidFilterError
from segmentflow.models.customer import Customer, RfmSegment
from segmentflow.schemas.segment import (
    FieldType,
    FilterCondition,
    FilterField,
    FilterGroup,
    FilterOperator,
    ValidationResult,
)
from segmentflow.utils.dates import parse_timestamp

MAX_DEPTH = 5
MAX_LIST_VALUES = 500

Op = FilterOperator


@dataclass(frozen=True)
class FieldDefinition:
    column: Any
    type: FieldType


FIELDS: Dict[FilterField, FieldDefinition] = {
    FilterField.TOTAL_SPENT: FieldDefinition(Customer.total_spent, FieldType.NUMBER),
    FilterField.ORDERS_COUNT: FieldDefinition(Customer.orders_count, FieldType.NUMBER),
    FilterField.AVG_ORDER_VALUE: FieldDefinition(Customer.avg_order_value, FieldType.NUMBER),
    FilterField.DAYS_SINCE_LAST_ORDER: FieldDefinition(Customer.days_since_last_order, FieldType.NUMBER),
    FilterField.RECENCY_SCORE: FieldDefinition(Customer.recency_score, FieldType.NUMBER),
    FilterField.FREQUENCY_SCORE: FieldDefinition(Customer.frequency_score, FieldType.NUMBER),
    FilterField.MONETARY_SCORE: FieldDefinition(Customer.monetary_score, FieldType.NUMBER),
    FilterField.RFM_SEGMENT: FieldDefinition(Customer.rfm_segment, FieldType.ENUM),
    FilterField.IS_HIGH_VALUE: FieldDefinition(Customer.is_high_value, FieldType.BOOLEAN),
    FilterField.IS_CHURN_RISK: FieldDefinition(Customer.is_churn_risk, FieldType.BOOLEAN),
    FilterField.EMAIL: FieldDefinition(Customer.email, FieldType.STRING),
    FilterField.FIRST_NAME: FieldDefinition(Customer.first_name, FieldType.STRING),
    FilterField.LAST_NAME: FieldDefinition(Customer.last_name, FieldType.STRING),
    FilterField.TAGS: FieldDefinition(Customer.tags, FieldType.LIST),
    FilterField.FIRST_ORDER_DATE: FieldDefinition(Customer.first_order_date, FieldType.DATE),
    FilterField.LAST_ORDER_DATE: FieldDefinition(Customer.last_order_date, FieldType.DATE),
}

_NULL_CHECKS = frozenset({Op.IS_NULL, Op.IS_NOT_NULL})

ALLOWED_OPERATORS: Dict[FieldType, FrozenSet[FilterOperator]] = {
    FieldType.NUMBER: frozenset({Op.EQ, Op.NEQ, Op.GT, Op.GTE, Op.LT, Op.LTE, Op.IN, Op.NOT_IN, Op.BETWEEN}) | _NULL_CHECKS,
    FieldType.DATE: frozenset({Op.GT, Op.GTE, Op.LT, Op.LTE, Op.BETWEEN}) | _NULL_CHECKS,
    FieldType.STRING: frozenset({Op.EQ, Op.NEQ, Op.IN, Op.NOT_IN, Op.CONTAINS}) | _NULL_CHECKS,
    FieldType.ENUM: frozenset({Op.EQ, Op.NEQ, Op.IN, Op.NOT_IN}) | _NULL_CHECKS,
    FieldType.BOOLEAN: frozenset({Op.EQ, Op.NEQ}),
    FieldType.LIST: frozenset({Op.CONTAINS}),
}

FilterNode = Union[FilterCondition, FilterGroup]


# ============================================
# Validation
# ============================================


def _coerce_scalar(field_type: FieldType, value: Any) -> Any:
    """Coerce one value to the field's type. Raises ValueError with a readable message."""
    if field_type == FieldType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError("expected a number")
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            raise ValueError("expected a number") from None
        if not number.is_finite():
            raise ValueError("expected a finite number")
        return int(number) if number == number.to_integral_value() else float(number)

    if field_type == FieldType.DATE:
        if not isinstance(value, str):
            raise ValueError("expected an ISO-8601 date")
        try:
            return parse_timestamp(value)
        except ValueError:
            raise ValueError(f"invalid date {value!r}") from None

    if field_type == FieldType.BOOLEAN:
        if not isinstance(value, bool):
            raise ValueError("expected true or false")
        return value

    if field_type == FieldType.ENUM:
        try:
            return RfmSegment(value)
        except ValueError:
            raise ValueError(f"unknown segment {value!r}") from None

    # STRING and LIST (a single tag)
    if not isinstance(value, str) or not value:
        raise ValueError("expected a non-empty string")
    if field_type == FieldType.LIST and ('"' in value or "\\" in value):
        raise ValueError("tag may not contain quotes or backslashes")
    return value


def _coerce_value(field_type: FieldType, operator: FilterOperator, value: Any) -> Any:
    if operator in _NULL_CHECKS:
        return None

    if operator in (Op.IN, Op.NOT_IN):
        if not isinstance(value, list) or not value:
            raise ValueError("expected a non-empty list")
        if len(value) > MAX_LIST_VALUES:
            raise ValueError(f"at most {MAX_LIST_VALUES} values allowed")
        return [_coerce_scalar(field_type, v) for v in value]

    if operator == Op.BETWEEN:
        if not isinstance(value, list) or len(value) != 2:
            raise ValueError("expected [low, high]")
        low, high = (_coerce_scalar(field_type, v) for v in value)
        if low > high:
            raise ValueError("low bound is greater than high bound")
        return [low, high]

    if value is None:
        raise ValueError("value is required")
    return _coerce_scalar(field_type, value)


def _parse_condition(raw: dict, path: str, errors: List[str]) -> Optional[FilterCondition]:
    try:
        field = FilterField(raw.get("field"))
    except ValueError:
        errors.append(f"{path}.field: unknown field {raw.get('field')!r}")
        return None

    try:
        operator = FilterOperator(raw.get("operator"))
    except ValueError:
        errors.append(f"{path}.operator: unknown operator {raw.get('operator')!r}")
        return None

    field_type = FIELDS[field].type
    if operator not in ALLOWED_OPERATORS[field_type]:
        errors.append(f"{path}.operator: '{operator.value}' is not allowed for {field_type.value} field '{field.value}'")
        return None

    try:
        value = _coerce_value(field_type, operator, raw.get("value"))
    except ValueError as e:
        errors.append(f"{path}.value: {e}")
        return None

    return FilterCondition(field=field, operator=operator, value=value)


def _parse_group(raw: Any, path: str, depth: int, errors: List[str]) -> Optional[FilterGroup]:
    label = path or "filters"
    if not isinstance(raw, dict):
        errors.append(f"{label}: expected an object")
        return None
    if depth > MAX_DEPTH:
        errors.append(f"{label}: groups nested deeper than {MAX_DEPTH}")
        return None

    logic = str(raw.get("logic", "AND")).upper()
    if logic not in ("AND", "OR"):
        errors.append(f"{label}.logic: expected AND or OR")

    conditions = raw.get("conditions", [])
    if not isinstance(conditions, list):
        errors.append(f"{label}.conditions: expected a list")
        return None

    prefix = f"{path}." if path else ""
    parsed: List[FilterNode] = []
    for i, node in enumerate(conditions):
        node_path = f"{prefix}conditions[{i}]"
        if not isinstance(node, dict):
            errors.append(f"{node_path}: expected an object")
        elif "conditions" in node or "logic" in node:
            group = _parse_group(node, node_path, depth + 1, errors)
            if group is not None:
                parsed.append(group)
        else:
            condition = _parse_condition(node, node_path, errors)
            if condition is not None:
                parsed.append(condition)

    if logic not in ("AND", "OR"):
        return None
    return FilterGroup(logic=logic, conditions=parsed)


def validate_filters(raw: Any) -> ValidationResult:
    """Check a raw filter expression without raising."""
    errors: List[str] = []
    _parse_group(raw, "", 1, errors)
    return ValidationResult(valid=not errors, errors=errors)


def parse_filters(raw: Any) -> FilterGroup:
    """Validate and normalize a raw filter expression. Raises InvalidFilterError."""
    errors: List[str] = []
    group = _parse_group(raw, "", 1, errors)
    if errors or group is None:
        raise InvalidFilterError(errors or ["filters: invalid expression"])
    return group


# ============================================
# SQL
# ============================================


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_condition(condition: FilterCondition) -> ColumnElement:
    column = FIELDS[condition.field].column
    op = condition.operator
    value = condition.value

    if op == Op.IS_NULL:
        return column.is_(None)
    if op == Op.IS_NOT_NULL:
        return column.isnot(None)

    if FIELDS[condition.field].type == FieldType.LIST:
        # JSON arrays serialize their string elements quoted on every backend
        return cast(column, String).like(f'%"{_escape_like(value)}"%', escape="\\")

    if op == Op.EQ:
        return column == value
    if op == Op.NEQ:
        return column != value
    if op == Op.GT:
        return column > value
    if op == Op.GTE:
        return column >= value
    if op == Op.LT:
        return column < value
    if op == Op.LTE:
        return column <= value
    if op == Op.IN:
        return column.in_(value)
    if op == Op.NOT_IN:
        return column.notin_(value)
    if op == Op.BETWEEN:
        return column.between(value[0], value[1])
    if op == Op.CONTAINS:
        return column.ilike(f"%{_escape_like(value)}%", escape="\\")
    raise ValueError(f"Unsupported operator {op}")


def build_conditions(group: FilterGroup) -> ColumnElement:
    """
    SQL boolean expression for a parsed filter group.

    An empty group matches every customer.
    """
    clauses = []
    for node in group.conditions:
        if isinstance(node, FilterGroup):
            clauses.append(build_conditions(node))
        else:
            clauses.append(build_condition(node))

    if not clauses:
        return true()
    if group.logic == "OR":
        return or_(*clauses)
    return and_(*clauses)


def to_raw(group: FilterGroup) -> dict:
    """JSON-safe form of a parsed group for storage."""

    def _value(value):
        if isinstance(value, list):
            return [_value(v) for v in value]
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, RfmSegment):
            return value.value
        return value

    nodes = []
    for node in group.conditions:
        if isinstance(node, FilterGroup):
            nodes.append(to_raw(node))
        else:
            item = {"field": node.field.value, "operator": node.operator.value}
            if node.operator not in _NULL_CHECKS:
                item["value"] = _value(node.value)
            nodes.append(item)
    return {"logic": group.logic, "conditions": nodes}
