from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crm_core.core.api_docs import error_responses
from crm_core.core.deps import get_db, get_dispatcher
from crm_core.models.campaign import Campaign, CommunicationLog
from crm_core.models.segment import Segment
from crm_core.schemas.campaign import (
    CampaignCancelOut,
    CampaignCreateIn,
    CampaignDispatchOut,
    CampaignListOut,
    CampaignLogsOut,
    CampaignOut,
    CampaignStatsOut,
    CampaignStatus,
    CampaignStatusUpdateIn,
    CommunicationLogOut,
    DeliveryReceiptDetailOut,
)
from crm_core.schemas.common import PaginationMeta
from crm_core.schemas.segment import (
    SegmentCreateIn,
    SegmentListOut,
    SegmentOut,
    SegmentPreviewIn,
    SegmentPreviewOut,
    SegmentRecomputeOut,
    SegmentUpdateIn,
)
from crm_core.services import campaign_service, segment_service
from crm_core.services.dispatch_service import CampaignDispatcher

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _segment_out(db: Session, segment: Segment) -> SegmentOut:
    return SegmentOut(
        id=segment.id,
        name=segment.name,
        description=segment.description,
        conditions=segment.conditions_json or [],
        customer_ids=segment_service.segment_customer_ids(db, segment.id),
        audience_size=segment.audience_size,
        last_evaluated_at=segment.last_evaluated_at,
        is_active=segment.is_active,
        created_at=segment.created_at,
        updated_at=segment.updated_at,
    )


def _stats_out(campaign: Campaign) -> CampaignStatsOut:
    return CampaignStatsOut(
        audience_size=campaign.audience_size,
        sent=campaign.sent_count,
        failed=campaign.failed_count,
        last_updated=campaign.stats_updated_at,
        progress=campaign_service.campaign_progress(campaign),
    )


def _campaign_out(campaign: Campaign) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        segment_id=campaign.segment_id,
        name=campaign.name,
        description=campaign.description,
        message_content=campaign.message_content,
        status=campaign.status,
        scheduled_at=campaign.scheduled_at,
        started_at=campaign.started_at,
        completed_at=campaign.completed_at,
        stats=_stats_out(campaign),
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


def _log_out(log: CommunicationLog, customer_name: str | None, customer_email: str | None) -> CommunicationLogOut:
    receipt = None
    if log.receipt_status:
        receipt = DeliveryReceiptDetailOut(
            status=log.receipt_status,
            timestamp=log.receipt_timestamp,
            error_message=log.receipt_error,
        )
    return CommunicationLogOut(
        id=log.id,
        campaign_id=log.campaign_id,
        customer_id=log.customer_id,
        customer_name=customer_name,
        customer_email=customer_email,
        message=log.message,
        status=log.status,
        provider=log.provider,
        provider_reference=log.provider_reference,
        delivery_receipt=receipt,
        created_at=log.created_at,
        updated_at=log.updated_at,
    )


# Segment routes are registered before "/{campaign_id}" so "segments" is never read as an id.


@router.post(
    "/segments",
    response_model=SegmentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create segment and materialize its membership",
    responses=error_responses(400, 422, 500),
)
def create_segment(payload: SegmentCreateIn, db: Session = Depends(get_db)):
    segment = segment_service.create_segment(
        db,
        name=payload.name,
        description=payload.description,
        conditions=payload.conditions,
    )
    return _segment_out(db, segment)


@router.get(
    "/segments",
    response_model=SegmentListOut,
    summary="List segments",
    responses=error_responses(422, 500),
)
def list_segments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = segment_service.list_segments(db, limit=limit, offset=offset)
    items = [_segment_out(db, row) for row in rows]
    return SegmentListOut(
        items=items,
        pagination=PaginationMeta.build(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "/segments/preview",
    response_model=SegmentPreviewOut,
    summary="Count the customers matching a condition tree without saving it",
    responses=error_responses(400, 422, 500),
)
def preview_segment(payload: SegmentPreviewIn, db: Session = Depends(get_db)):
    return SegmentPreviewOut(audience_size=segment_service.preview_conditions(db, payload.conditions))


@router.get(
    "/segments/{segment_id}",
    response_model=SegmentOut,
    summary="Get segment",
    responses=error_responses(404, 500),
)
def get_segment(segment_id: str, db: Session = Depends(get_db)):
    return _segment_out(db, segment_service.segment_or_404(db, segment_id))


@router.put(
    "/segments/{segment_id}",
    response_model=SegmentOut,
    summary="Update segment and recompute its membership",
    responses=error_responses(400, 404, 422, 500),
)
def update_segment(segment_id: str, payload: SegmentUpdateIn, db: Session = Depends(get_db)):
    segment = segment_service.update_segment(
        db,
        segment_id,
        name=payload.name,
        description=payload.description,
        conditions=payload.conditions,
        is_active=payload.is_active,
    )
    return _segment_out(db, segment)


@router.post(
    "/segments/{segment_id}/recompute",
    response_model=SegmentRecomputeOut,
    summary="Recompute segment membership",
    responses=error_responses(404, 500),
)
def recompute_segment(segment_id: str, db: Session = Depends(get_db)):
    segment = segment_service.refresh_segment(db, segment_id)
    return SegmentRecomputeOut(
        segment_id=segment.id,
        audience_size=segment.audience_size,
        last_evaluated_at=segment.last_evaluated_at,
    )


@router.delete(
    "/segments/{segment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete segment",
    responses=error_responses(404, 500),
)
def delete_segment(segment_id: str, db: Session = Depends(get_db)):
    segment_service.delete_segment(db, segment_id)


@router.post(
    "/from-segment",
    response_model=CampaignOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft campaign targeting a segment",
    responses=error_responses(400, 404, 422, 500),
)
def create_campaign(payload: CampaignCreateIn, db: Session = Depends(get_db)):
    campaign = campaign_service.create_campaign(
        db,
        segment_id=payload.segment_id,
        name=payload.name,
        description=payload.description,
        message_content=payload.message_content,
        scheduled_at=payload.scheduled_at,
    )
    return _campaign_out(campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List campaigns",
    responses=error_responses(422, 500),
)
def list_campaigns(
    status_filter: CampaignStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = campaign_service.list_campaigns(db, status=status_filter, limit=limit, offset=offset)
    items = [_campaign_out(row) for row in rows]
    return CampaignListOut(
        items=items,
        pagination=PaginationMeta.build(total=total, limit=limit, offset=offset, count=len(items)),
        status=status_filter,
    )


@router.get(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Get campaign",
    responses=error_responses(404, 500),
)
def get_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _campaign_out(campaign_service.campaign_or_404(db, campaign_id))


@router.patch(
    "/{campaign_id}/status",
    response_model=CampaignOut,
    summary="Override campaign status",
    responses=error_responses(400, 404, 422, 500),
)
def update_campaign_status(campaign_id: str, payload: CampaignStatusUpdateIn, db: Session = Depends(get_db)):
    return _campaign_out(campaign_service.update_campaign_status(db, campaign_id, status=payload.status))


@router.post(
    "/{campaign_id}/send",
    response_model=CampaignDispatchOut,
    summary="Start (or resume) sending a campaign",
    responses=error_responses(404, 409, 500),
)
def send_campaign(campaign_id: str, dispatcher: CampaignDispatcher = Depends(get_dispatcher)):
    summary = dispatcher.start_campaign(campaign_id)
    return CampaignDispatchOut(
        campaign_id=summary.campaign_id,
        campaign_status=summary.status,
        audience_size=summary.audience_size,
        attempted=summary.attempted,
        skipped=summary.skipped,
        failed=summary.failed,
        cancelled=summary.cancelled,
    )


@router.post(
    "/{campaign_id}/cancel",
    response_model=CampaignCancelOut,
    summary="Ask a running dispatch to stop at the next batch boundary",
    responses=error_responses(404, 500),
)
def cancel_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    dispatcher: CampaignDispatcher = Depends(get_dispatcher),
):
    campaign = campaign_service.campaign_or_404(db, campaign_id)
    return CampaignCancelOut(campaign_id=campaign.id, cancel_requested=dispatcher.cancel(campaign.id))


@router.get(
    "/{campaign_id}/logs",
    response_model=CampaignLogsOut,
    summary="Campaign delivery logs and stats",
    responses=error_responses(404, 500),
)
def campaign_logs(campaign_id: str, db: Session = Depends(get_db)):
    campaign, rows = campaign_service.campaign_logs(db, campaign_id)
    return CampaignLogsOut(
        campaign_id=campaign.id,
        campaign_status=campaign.status,
        stats=_stats_out(campaign),
        logs=[_log_out(log, name, email) for log, name, email in rows],
    )


@router.delete(
    "/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete campaign and its delivery logs",
    responses=error_responses(404, 500),
)
def delete_campaign(campaign_id: str, db: Session = Depends(get_db)):
    campaign_service.delete_campaign(db, campaign_id)
