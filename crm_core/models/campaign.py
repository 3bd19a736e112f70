from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from crm_core.db.base import Base

LOG_STATUS_PENDING = "PENDING"
LOG_STATUS_SENT = "SENT"
LOG_STATUS_FAILED = "FAILED"

_ACTIVE_LOG_PREDICATE = text("status IN ('PENDING', 'SENT')")


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    segment_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("segments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message_content: Mapped[str] = mapped_column(String(2000), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", server_default="draft")
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set while a dispatch loop owns the campaign; cleared when the loop ends.
    dispatch_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatch_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    stats_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_campaigns_status_created_at", "status", "created_at"),
    )


class CommunicationLog(Base):
    __tablename__ = "communication_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    message: Mapped[str] = mapped_column(String(2000), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LOG_STATUS_PENDING, server_default=LOG_STATUS_PENDING)
    provider: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    receipt_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    receipt_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receipt_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_communication_logs_campaign_customer", "campaign_id", "customer_id"),
        Index("ix_communication_logs_campaign_status", "campaign_id", "status"),
        Index("ix_communication_logs_created_at", "created_at"),
        # At most one in-flight or delivered record per (campaign, customer).
        Index(
            "uq_communication_logs_campaign_customer_active",
            "campaign_id",
            "customer_id",
            unique=True,
            sqlite_where=_ACTIVE_LOG_PREDICATE,
            postgresql_where=_ACTIVE_LOG_PREDICATE,
        ),
    )
