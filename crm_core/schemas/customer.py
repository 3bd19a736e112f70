from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from crm_core.schemas.common import PaginationMeta
from crm_core.schemas.order import OrderOut


class CustomerCreateIn(BaseModel):
    name: str = Field(max_length=120)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    total_spend: Decimal = Field(default=Decimal("0"), ge=0)
    total_purchases: int = Field(default=0, ge=0)
    last_purchase: datetime | None = None
    last_visited: datetime | None = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("phone", "address")
    @classmethod
    def normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr) -> str:
        return str(value).strip().lower()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Priya Sharma",
                "email": "priya@example.com",
                "phone": "+919812345678",
                "address": "12 MG Road, Bengaluru",
            }
        }
    )


class CustomerUpdateIn(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    total_spend: Decimal | None = Field(default=None, ge=0)
    total_purchases: int | None = Field(default=None, ge=0)
    last_purchase: datetime | None = None
    last_visited: datetime | None = None
    is_active: bool | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr | None) -> str | None:
        if value is None:
            return None
        return str(value).strip().lower()

    @model_validator(mode="after")
    def validate_has_field(self) -> "CustomerUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class PurchaseHistoryEntryOut(BaseModel):
    product_name: str
    amount: float
    purchase_date: datetime


class CustomerOut(BaseModel):
    id: str
    name: str
    email: str
    phone: str | None = None
    address: str | None = None
    total_spend: float
    total_purchases: int
    last_purchase: datetime | None = None
    last_visited: datetime | None = None
    purchase_history: list[PurchaseHistoryEntryOut]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CustomerDetailOut(CustomerOut):
    orders: list[OrderOut]


class CustomerListOut(BaseModel):
    items: list[CustomerDetailOut]
    pagination: PaginationMeta
