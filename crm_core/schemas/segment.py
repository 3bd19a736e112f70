from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from crm_core.schemas.common import PaginationMeta

SegmentRuleField = Literal[
    "totalSpend",
    "totalPurchases",
    "lastPurchase",
    "averageOrderValue",
    "orderFrequency",
    "paymentMethod",
    "orderStatus",
]
SegmentRuleOperator = Literal[
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "contains",
    "notContains",
    "in",
    "notIn",
]
ConditionGroupOperator = Literal["AND", "OR"]


class SegmentRuleIn(BaseModel):
    field: SegmentRuleField
    operator: SegmentRuleOperator
    value: Any

    @model_validator(mode="after")
    def validate_value_shape(self) -> "SegmentRuleIn":
        if self.value is None:
            raise ValueError("value is required")
        if self.operator in {"in", "notIn"} and not isinstance(self.value, list):
            raise ValueError(f"{self.operator} requires a list value")
        if self.operator in {"greaterThan", "lessThan"} and isinstance(self.value, (bool, list, dict)):
            raise ValueError(f"{self.operator} requires a number or date value")
        return self


class ConditionGroupIn(BaseModel):
    operator: ConditionGroupOperator
    rules: list[SegmentRuleIn] = Field(default_factory=list)


class SegmentCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    conditions: list[ConditionGroupIn] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "High spenders",
                "description": "Customers who spent more than 1000",
                "conditions": [
                    {
                        "operator": "AND",
                        "rules": [{"field": "totalSpend", "operator": "greaterThan", "value": 1000}],
                    }
                ],
            }
        }
    )


class SegmentUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    conditions: list[ConditionGroupIn] | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "SegmentUpdateIn":
        if self.name is None and self.description is None and self.conditions is None and self.is_active is None:
            raise ValueError("At least one field must be provided")
        return self


class SegmentPreviewIn(BaseModel):
    conditions: list[ConditionGroupIn] = Field(default_factory=list)


class SegmentPreviewOut(BaseModel):
    audience_size: int


class SegmentRecomputeOut(BaseModel):
    segment_id: str
    audience_size: int
    last_evaluated_at: datetime | None = None


class SegmentOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    conditions: list[ConditionGroupIn]
    customer_ids: list[str]
    audience_size: int
    last_evaluated_at: datetime | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class SegmentListOut(BaseModel):
    items: list[SegmentOut]
    pagination: PaginationMeta
