"""
Segment filter expression and segment CRUD schemas.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FilterField(str, Enum):
    """Customer attributes a segment may filter on."""

    TOTAL_SPENT = "totalSpent"
    ORDERS_COUNT = "ordersCount"
    AVG_ORDER_VALUE = "avgOrderValue"
    DAYS_SINCE_LAST_ORDER = "daysSinceLastOrder"
    RECENCY_SCORE = "recencyScore"
    FREQUENCY_SCORE = "frequencyScore"
    MONETARY_SCORE = "monetaryScore"
    RFM_SEGMENT = "rfmSegment"
    IS_HIGH_VALUE = "isHighValue"
    IS_CHURN_RISK = "isChurnRisk"
    EMAIL = "email"
    FIRST_NAME = "firstName"
    LAST_NAME = "lastName"
    TAGS = "tags"
    FIRST_ORDER_DATE = "firstOrderDate"
    LAST_ORDER_DATE = "lastOrderDate"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "notIn"
    BETWEEN = "between"
    CONTAINS = "contains"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"


class FieldType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ENUM = "enum"
    DATE = "date"
    LIST = "list"


class FilterCondition(BaseModel):
    """Leaf condition: ``{field, operator, value}``."""

    field: FilterField
    operator: FilterOperator
    value: Any = None


class FilterGroup(BaseModel):
    """AND/OR over conditions and nested groups."""

    logic: Literal["AND", "OR"] = "AND"
    conditions: List[Union[FilterCondition, FilterGroup]] = Field(default_factory=list)


# Enable self-referencing
FilterGroup.model_rebuild()


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class SegmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    filters: dict
    is_active: bool = True
    created_by: Optional[str] = None


class SegmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    filters: Optional[dict] = None
    is_active: Optional[bool] = None


class SegmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    filters: dict
    customer_count: int = 0
    estimated_revenue: Decimal = Decimal("0")
    last_computed_at: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
