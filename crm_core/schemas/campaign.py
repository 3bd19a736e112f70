from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crm_core.schemas.common import PaginationMeta

CampaignStatus = Literal["draft", "scheduled", "running", "completed", "failed"]
CommunicationLogStatus = Literal["PENDING", "SENT", "FAILED"]


class CampaignCreateIn(BaseModel):
    segment_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    message_content: str = Field(min_length=1, max_length=2000)
    scheduled_at: datetime | None = None

    @field_validator("name", "message_content")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value cannot be blank")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "segment_id": "segment-id-here",
                "name": "Diwali win-back",
                "message_content": "Hi {{customerName}}, here is 10% off your next order!",
            }
        }
    )


class CampaignStatusUpdateIn(BaseModel):
    status: CampaignStatus


class CampaignStatsOut(BaseModel):
    audience_size: int
    sent: int
    failed: int
    last_updated: datetime | None = None
    progress: float


class CampaignOut(BaseModel):
    id: str
    segment_id: str | None = None
    name: str
    description: str | None = None
    message_content: str
    status: CampaignStatus
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    stats: CampaignStatsOut
    created_at: datetime
    updated_at: datetime


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta
    status: CampaignStatus | None = None


class CampaignDispatchOut(BaseModel):
    campaign_id: str
    campaign_status: CampaignStatus
    audience_size: int
    attempted: int
    skipped: int
    failed: int
    cancelled: bool


class CampaignCancelOut(BaseModel):
    campaign_id: str
    cancel_requested: bool


class DeliveryReceiptDetailOut(BaseModel):
    status: str
    timestamp: datetime | None = None
    error_message: str | None = None


class CommunicationLogOut(BaseModel):
    id: str
    campaign_id: str
    customer_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    message: str
    status: CommunicationLogStatus
    provider: str | None = None
    provider_reference: str | None = None
    delivery_receipt: DeliveryReceiptDetailOut | None = None
    created_at: datetime
    updated_at: datetime


class CampaignLogsOut(BaseModel):
    campaign_id: str
    campaign_status: CampaignStatus
    stats: CampaignStatsOut
    logs: list[CommunicationLogOut]


class DeliveryReceiptIn(BaseModel):
    tracking_ref: str = Field(min_length=1, max_length=36)
    outcome: str = Field(min_length=1, max_length=30)
    timestamp: datetime | None = None
    error_detail: str | None = Field(default=None, max_length=1000)

    @field_validator("outcome")
    @classmethod
    def normalize_outcome(cls, value: str) -> str:
        return value.strip().upper()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "tracking_ref": "tracking-record-id",
                "outcome": "DELIVERED",
                "timestamp": "2026-10-18T10:15:00Z",
            }
        }
    )


class DeliveryReceiptOut(BaseModel):
    tracking_ref: str
    applied: bool
    status: CommunicationLogStatus
    campaign_id: str
    campaign_status: CampaignStatus
