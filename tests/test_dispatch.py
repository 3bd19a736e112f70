import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import RecordingProvider
from crm_core.core.errors import FatalDispatchError, NotFoundError
from crm_core.core.id_utils import generate_id
from crm_core.models.campaign import (
    LOG_STATUS_FAILED,
    LOG_STATUS_PENDING,
    LOG_STATUS_SENT,
    Campaign,
    CommunicationLog,
)
from crm_core.services import campaign_service, segment_service
from crm_core.services.dispatch_service import CampaignDispatcher
from crm_core.services.messaging_provider import MessageSendResult
from crm_core.services.reconciliation_service import DeliveryReconciler


def _campaign_with_audience(db, make_customer, make_segment, count, *, message="Hi {{customerName}}!"):
    for _ in range(count):
        make_customer()
    segment = make_segment()
    campaign = campaign_service.create_campaign(
        db,
        segment_id=segment.id,
        name="Autumn promo",
        message_content=message,
    )
    return campaign, segment_service.segment_customer_ids(db, segment.id)


def _logs(session_local, campaign_id):
    with session_local() as check:
        return check.execute(
            select(CommunicationLog).where(CommunicationLog.campaign_id == campaign_id)
        ).scalars().all()


def _campaign(session_local, campaign_id):
    with session_local() as check:
        return check.get(Campaign, campaign_id)


def test_partial_failure_marks_only_the_failing_recipient(db, session_local, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 10)
    provider = RecordingProvider(fail_for={recipients[4]})
    dispatcher = CampaignDispatcher(session_local, provider=provider)

    summary = dispatcher.start_campaign(campaign.id)

    assert summary.attempted == 10
    assert summary.failed == 1
    assert summary.status == "running"
    assert provider.sent_to() == recipients

    logs = _logs(session_local, campaign.id)
    failed = [log for log in logs if log.status == LOG_STATUS_FAILED]
    assert len(logs) == 10
    assert len(failed) == 1
    assert failed[0].customer_id == recipients[4]
    assert failed[0].receipt_error == "Vendor unavailable"
    assert failed[0].receipt_timestamp is not None
    assert all(log.status == LOG_STATUS_PENDING for log in logs if log is not failed[0])

    stored = _campaign(session_local, campaign.id)
    assert stored.status == "running"
    assert stored.failed_count == 1
    assert stored.audience_size == 10
    assert stored.dispatch_completed_at is not None


def test_receipts_complete_the_campaign(db, session_local, inbox, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 4)
    provider = RecordingProvider(inbox=inbox, fail_for={recipients[0]})

    summary = CampaignDispatcher(session_local, provider=provider).start_campaign(campaign.id)
    assert summary.status == "running"

    applied = DeliveryReconciler(session_local).drain(inbox)

    assert applied == 3
    stored = _campaign(session_local, campaign.id)
    assert stored.status == "completed"
    assert stored.sent_count == 3
    assert stored.failed_count == 1
    assert stored.completed_at is not None
    assert campaign_service.campaign_progress(stored) == 100.0


def test_restart_after_everything_was_sent_sends_nothing(db, session_local, inbox, make_customer, make_segment):
    campaign, _ = _campaign_with_audience(db, make_customer, make_segment, 3)
    provider = RecordingProvider(inbox=inbox)
    dispatcher = CampaignDispatcher(session_local, provider=provider)
    dispatcher.start_campaign(campaign.id)
    DeliveryReconciler(session_local).drain(inbox)
    assert len(provider.requests) == 3

    summary = dispatcher.start_campaign(campaign.id)

    assert len(provider.requests) == 3
    assert summary.skipped == 3
    assert summary.attempted == 0
    assert summary.status == "completed"
    assert _campaign(session_local, campaign.id).sent_count == 3


def test_restart_purges_pending_records_and_resends(db, session_local, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 2)
    stale = CommunicationLog(
        id=generate_id(),
        campaign_id=campaign.id,
        customer_id=recipients[0],
        message="left over",
        status=LOG_STATUS_PENDING,
        created_at=datetime.now(timezone.utc),
    )
    db.add(stale)
    db.commit()
    provider = RecordingProvider()

    summary = CampaignDispatcher(session_local, provider=provider).start_campaign(campaign.id)

    logs = _logs(session_local, campaign.id)
    assert summary.attempted == 2
    assert stale.id not in {log.id for log in logs}
    assert sorted(log.customer_id for log in logs) == sorted(recipients)


def test_failed_recipients_are_retried_on_restart(db, session_local, inbox, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 3)
    flaky = RecordingProvider(inbox=inbox, fail_for={recipients[1]})
    CampaignDispatcher(session_local, provider=flaky).start_campaign(campaign.id)
    DeliveryReconciler(session_local).drain(inbox)
    assert _campaign(session_local, campaign.id).status == "completed"

    healthy = RecordingProvider(inbox=inbox)
    summary = CampaignDispatcher(session_local, provider=healthy).start_campaign(campaign.id)
    DeliveryReconciler(session_local).drain(inbox)

    assert healthy.sent_to() == [recipients[1]]
    assert summary.skipped == 2
    stored = _campaign(session_local, campaign.id)
    assert stored.status == "completed"
    assert stored.sent_count == 3
    # the earlier FAILED record is kept alongside the new SENT one
    assert stored.failed_count == 1


def test_rendered_message_uses_customer_name(db, session_local, make_customer, make_segment):
    make_customer("Meera")
    segment = make_segment()
    campaign = campaign_service.create_campaign(
        db,
        segment_id=segment.id,
        name="Hello",
        message_content="Hi {{ customerName }}, 10% off today",
    )
    provider = RecordingProvider()

    CampaignDispatcher(session_local, provider=provider).start_campaign(campaign.id)

    assert provider.requests[0].content == "Hi Meera, 10% off today"
    assert _logs(session_local, campaign.id)[0].message == "Hi Meera, 10% off today"


def test_provider_rejection_is_recorded_as_failure(db, session_local, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 2)
    provider = RecordingProvider(reject_for={recipients[1]})

    summary = CampaignDispatcher(session_local, provider=provider).start_campaign(campaign.id)

    assert summary.failed == 1
    failed = [log for log in _logs(session_local, campaign.id) if log.status == LOG_STATUS_FAILED]
    assert [log.customer_id for log in failed] == [recipients[1]]
    assert "rejected" in failed[0].receipt_error


def test_send_timeout_fails_the_recipient(db, session_local, make_customer, make_segment):
    campaign, _ = _campaign_with_audience(db, make_customer, make_segment, 1)
    release = threading.Event()

    class SlowProvider:
        name = "slow"

        def send_message(self, request):
            release.wait(timeout=2)
            return MessageSendResult(provider=self.name, reference="late", status="accepted", accepted_at=datetime.now(timezone.utc))

    try:
        summary = CampaignDispatcher(
            session_local,
            provider=SlowProvider(),
            send_timeout_seconds=0.05,
        ).start_campaign(campaign.id)
    finally:
        release.set()

    assert summary.failed == 1
    log = _logs(session_local, campaign.id)[0]
    assert log.status == LOG_STATUS_FAILED
    assert "timed out" in log.receipt_error


def test_empty_audience_completes_immediately(db, session_local, make_segment):
    segment = make_segment()
    campaign = campaign_service.create_campaign(db, segment_id=segment.id, name="Nobody", message_content="Hi")

    summary = CampaignDispatcher(session_local, provider=RecordingProvider()).start_campaign(campaign.id)

    assert summary.status == "completed"
    assert summary.audience_size == 0


def test_missing_segment_fails_the_campaign(db, session_local, make_customer, make_segment):
    campaign, _ = _campaign_with_audience(db, make_customer, make_segment, 2)
    segment_service.delete_segment(db, campaign.segment_id)
    provider = RecordingProvider()

    with pytest.raises(FatalDispatchError) as exc_info:
        CampaignDispatcher(session_local, provider=provider).start_campaign(campaign.id)

    assert exc_info.value.campaign_id == campaign.id
    assert provider.requests == []
    assert _campaign(session_local, campaign.id).status == "failed"


def test_unknown_campaign_is_not_found(session_local):
    with pytest.raises(NotFoundError):
        CampaignDispatcher(session_local, provider=RecordingProvider()).start_campaign("missing")


def test_cancel_stops_at_the_next_batch_boundary(db, session_local, inbox, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 5)
    cancel = threading.Event()
    provider = RecordingProvider(inbox=inbox, on_send=lambda request: cancel.set())
    dispatcher = CampaignDispatcher(session_local, provider=provider, batch_size=2)

    summary = dispatcher.start_campaign(campaign.id, cancel_event=cancel)

    assert summary.cancelled is True
    assert summary.attempted == 2
    assert provider.sent_to() == recipients[:2]
    stored = _campaign(session_local, campaign.id)
    assert stored.status == "running"
    assert stored.dispatch_completed_at is None
    assert stored.dispatch_claimed_at is None

    DeliveryReconciler(session_local).drain(inbox)
    assert _campaign(session_local, campaign.id).status == "running"

    resumed = RecordingProvider(inbox=inbox)
    summary = CampaignDispatcher(session_local, provider=resumed, batch_size=2).start_campaign(campaign.id)
    DeliveryReconciler(session_local).drain(inbox)

    assert summary.skipped == 2
    assert resumed.sent_to() == recipients[2:]
    assert _campaign(session_local, campaign.id).status == "completed"


def test_cancel_without_a_running_dispatch_is_a_no_op(session_local):
    dispatcher = CampaignDispatcher(session_local, provider=RecordingProvider())

    assert dispatcher.cancel("not-running") is False


def test_refresh_on_start_picks_up_new_members(db, session_local, make_customer, make_segment):
    make_customer()
    segment = make_segment()
    campaign = campaign_service.create_campaign(db, segment_id=segment.id, name="Fresh", message_content="Hi")
    make_customer()
    provider = RecordingProvider()

    summary = CampaignDispatcher(
        session_local,
        provider=provider,
        refresh_segment_on_start=True,
    ).start_campaign(campaign.id)

    assert summary.audience_size == 2
    assert len(provider.requests) == 2


def test_at_most_one_active_record_per_customer(db, make_customer, make_segment):
    campaign, recipients = _campaign_with_audience(db, make_customer, make_segment, 1)

    def _log(status):
        return CommunicationLog(
            id=generate_id(),
            campaign_id=campaign.id,
            customer_id=recipients[0],
            message="Hi",
            status=status,
            created_at=datetime.now(timezone.utc),
        )

    db.add_all([_log(LOG_STATUS_FAILED), _log(LOG_STATUS_FAILED), _log(LOG_STATUS_SENT)])
    db.commit()

    db.add(_log(LOG_STATUS_PENDING))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
