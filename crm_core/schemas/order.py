from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crm_core.schemas.common import PaginationMeta

OrderStatus = Literal["pending", "processing", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed"]
PaymentMethod = Literal["cash", "card", "upi", "bank_transfer"]


class OrderItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned


class ShippingAddressIn(BaseModel):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=100)


class OrderCreateIn(BaseModel):
    customer_id: str = Field(min_length=1)
    items: list[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "customer-id-here",
                "items": [{"name": "Cotton Kurta", "quantity": 2, "price": 799.0}],
                "shipping_address": {
                    "street": "12 MG Road",
                    "city": "Bengaluru",
                    "state": "KA",
                    "zip_code": "560001",
                    "country": "India",
                },
                "payment_method": "upi",
            }
        }
    )


class OrderUpdateIn(BaseModel):
    customer_id: str = Field(min_length=1)
    items: list[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    total_amount: Decimal | None = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class OrderStatusUpdateIn(BaseModel):
    status: OrderStatus


class OrderPaymentUpdateIn(BaseModel):
    payment_status: PaymentStatus


class OrderItemOut(BaseModel):
    name: str
    quantity: int
    price: float
    line_total: float


class OrderOut(BaseModel):
    id: str
    order_number: str
    customer_id: str
    items: list[OrderItemOut]
    total_amount: float
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    shipping_address: dict
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class OrderListOut(BaseModel):
    items: list[OrderOut]
    pagination: PaginationMeta
    status: OrderStatus | None = None
    customer_id: str | None = None
