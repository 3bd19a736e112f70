import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from crm_core.core.errors import NotFoundError, ValidationError
from crm_core.core.id_utils import generate_id
from crm_core.core.observability import log_event
from crm_core.models.campaign import (
    LOG_STATUS_FAILED,
    LOG_STATUS_PENDING,
    LOG_STATUS_SENT,
    Campaign,
    CommunicationLog,
)
from crm_core.models.customer import Customer
from crm_core.services.segment_service import segment_or_404

logger = logging.getLogger("crm.dispatch")

CAMPAIGN_STATUSES = ("draft", "scheduled", "running", "completed", "failed")


def campaign_or_404(db: Session, campaign_id: str) -> Campaign:
    campaign = db.get(Campaign, campaign_id)
    if not campaign:
        raise NotFoundError("Campaign not found")
    return campaign


def lock_campaign(db: Session, campaign_id: str) -> Campaign | None:
    """Load the campaign row for a read-modify-write of its aggregate."""
    return db.execute(
        select(Campaign)
        .where(Campaign.id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def log_status_counts(db: Session, campaign_id: str) -> dict[str, int]:
    rows = db.execute(
        select(CommunicationLog.status, func.count(CommunicationLog.id))
        .where(CommunicationLog.campaign_id == campaign_id)
        .group_by(CommunicationLog.status)
    ).all()
    return {status: int(count) for status, count in rows}


def sync_campaign_stats(
    db: Session,
    *,
    campaign: Campaign,
    complete_when_drained: bool,
) -> dict[str, int]:
    """Recompute sent/failed from the campaign's tracking records.

    With ``complete_when_drained`` a running campaign with no PENDING records left
    moves to ``completed``. The caller commits.
    """
    counts = log_status_counts(db, campaign.id)
    now = datetime.now(timezone.utc)
    campaign.sent_count = counts.get(LOG_STATUS_SENT, 0)
    campaign.failed_count = counts.get(LOG_STATUS_FAILED, 0)
    campaign.stats_updated_at = now
    if complete_when_drained and campaign.status == "running" and counts.get(LOG_STATUS_PENDING, 0) == 0:
        campaign.status = "completed"
        campaign.completed_at = now
        log_event(
            logger,
            "campaign.completed",
            campaign_id=campaign.id,
            sent=campaign.sent_count,
            failed=campaign.failed_count,
        )
    return counts


def campaign_progress(campaign: Campaign) -> float:
    if not campaign.audience_size:
        return 0.0
    processed = (campaign.sent_count or 0) + (campaign.failed_count or 0)
    return round(processed / campaign.audience_size * 100, 2)


def create_campaign(
    db: Session,
    *,
    segment_id: str,
    name: str,
    message_content: str,
    description: str | None = None,
    scheduled_at: datetime | None = None,
) -> Campaign:
    cleaned_name = (name or "").strip()
    cleaned_message = (message_content or "").strip()
    if not cleaned_name:
        raise ValidationError("Campaign name is required")
    if not cleaned_message:
        raise ValidationError("Campaign message content is required")
    segment = segment_or_404(db, segment_id)

    campaign = Campaign(
        id=generate_id(),
        segment_id=segment.id,
        name=cleaned_name,
        description=description,
        message_content=cleaned_message,
        status="draft",
        scheduled_at=scheduled_at,
        audience_size=segment.audience_size,
        sent_count=0,
        failed_count=0,
        stats_updated_at=datetime.now(timezone.utc),
        is_active=True,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    log_event(logger, "campaign.created", campaign_id=campaign.id, segment_id=segment.id)
    return campaign


def list_campaigns(
    db: Session,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Campaign], int]:
    count_stmt = select(func.count(Campaign.id))
    stmt = select(Campaign)
    if status:
        count_stmt = count_stmt.where(Campaign.status == status)
        stmt = stmt.where(Campaign.status == status)
    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total


def update_campaign_status(db: Session, campaign_id: str, *, status: str) -> Campaign:
    """Operator override of the campaign status. Only the value is validated."""
    if status not in CAMPAIGN_STATUSES:
        raise ValidationError(f"Unsupported campaign status '{status}'")
    campaign = campaign_or_404(db, campaign_id)
    previous = campaign.status
    campaign.status = status
    if status == "completed" and campaign.completed_at is None:
        campaign.completed_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(campaign)
    log_event(logger, "campaign.status_override", campaign_id=campaign.id, previous=previous, status=status)
    return campaign


def delete_campaign(db: Session, campaign_id: str) -> None:
    campaign = campaign_or_404(db, campaign_id)
    purged = db.execute(delete(CommunicationLog).where(CommunicationLog.campaign_id == campaign.id)).rowcount
    db.delete(campaign)
    db.commit()
    log_event(logger, "campaign.deleted", campaign_id=campaign_id, logs_removed=int(purged or 0))


def campaign_logs(
    db: Session,
    campaign_id: str,
) -> tuple[Campaign, list[tuple[CommunicationLog, str | None, str | None]]]:
    """Latest tracking record per customer, newest first, with the customer's name and email."""
    campaign = campaign_or_404(db, campaign_id)
    rows = db.execute(
        select(CommunicationLog, Customer.name, Customer.email)
        .outerjoin(Customer, Customer.id == CommunicationLog.customer_id)
        .where(CommunicationLog.campaign_id == campaign.id)
        .order_by(CommunicationLog.created_at.desc(), CommunicationLog.id.desc())
    ).all()

    seen: set[str] = set()
    latest = []
    for log, customer_name, customer_email in rows:
        if log.customer_id in seen:
            continue
        seen.add(log.customer_id)
        latest.append((log, customer_name, customer_email))
    return campaign, latest
