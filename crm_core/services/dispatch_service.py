import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from crm_core.core.errors import ConflictError, FatalDispatchError, NotFoundError, RecipientSendError
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
from crm_core.models.segment import Segment
from crm_core.services.campaign_service import lock_campaign, sync_campaign_stats
from crm_core.services.messaging_provider import (
    RECEIPT_FAILED,
    MessageSendRequest,
    MessageSendResult,
    MessagingProvider,
    render_message,
)
from crm_core.services.segment_service import recompute_membership, segment_customer_ids

logger = logging.getLogger("crm.dispatch")

OUTCOME_SENT = "sent"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

_ERROR_MAX_LENGTH = 255

# campaign id -> cancel event of the dispatch loop currently running it in this process
_active_runs: dict[str, threading.Event] = {}
_active_runs_lock = threading.Lock()


def request_cancel(campaign_id: str) -> bool:
    """Ask the running dispatch loop of ``campaign_id`` to stop at its next batch boundary."""
    with _active_runs_lock:
        event = _active_runs.get(campaign_id)
    if event is None:
        return False
    event.set()
    log_event(logger, "campaign.cancel_requested", campaign_id=campaign_id)
    return True


@dataclass
class DispatchSummary:
    campaign_id: str
    status: str
    audience_size: int = 0
    attempted: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class _Recipient:
    customer_id: str
    name: str
    address: str | None


class CampaignDispatcher:
    """Sends a campaign's message to every member of its segment.

    Every durable step runs in its own short transaction, so a crash leaves the
    campaign ``running`` with a resumable set of tracking records. Starting the
    campaign again purges PENDING records and skips customers that already have a
    SENT record.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        provider: MessagingProvider,
        batch_size: int = 10,
        max_workers: int = 1,
        send_timeout_seconds: float | None = 10.0,
        refresh_segment_on_start: bool = False,
        claim_ttl_seconds: float = 900,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.session_factory = session_factory
        self.provider = provider
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.send_timeout_seconds = send_timeout_seconds
        self.refresh_segment_on_start = refresh_segment_on_start
        self.claim_ttl_seconds = claim_ttl_seconds

    def start_campaign(self, campaign_id: str, *, cancel_event: threading.Event | None = None) -> DispatchSummary:
        """Run (or resume) the dispatch loop of ``campaign_id``.

        Raises ``ConflictError`` while another loop owns the campaign, in this process
        or, through the ``dispatch_claimed_at`` lease, in another one.
        """
        cancel_event = cancel_event or threading.Event()
        with _active_runs_lock:
            if campaign_id in _active_runs:
                raise ConflictError("Campaign is already dispatching")
            _active_runs[campaign_id] = cancel_event
        try:
            self._claim_run(campaign_id)
        except Exception:
            with _active_runs_lock:
                _active_runs.pop(campaign_id, None)
            raise
        log_event(logger, "campaign.started", campaign_id=campaign_id, provider=self.provider.name)

        try:
            return self._run(campaign_id, cancel_event)
        except Exception as exc:
            self._mark_campaign_failed(campaign_id)
            log_event(logger, "campaign.failed", level=logging.ERROR, campaign_id=campaign_id, error=str(exc))
            if isinstance(exc, FatalDispatchError):
                raise
            raise FatalDispatchError(f"Campaign dispatch failed: {exc}", campaign_id=campaign_id) from exc
        finally:
            with _active_runs_lock:
                if _active_runs.get(campaign_id) is cancel_event:
                    del _active_runs[campaign_id]

    def cancel(self, campaign_id: str) -> bool:
        return request_cancel(campaign_id)

    def _claim_run(self, campaign_id: str) -> None:
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.claim_ttl_seconds)
        with self.session_factory() as db:
            result = db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    or_(
                        Campaign.dispatch_claimed_at.is_(None),
                        Campaign.dispatch_claimed_at < stale_before,
                    ),
                )
                .values(
                    status="running",
                    started_at=now,
                    dispatch_claimed_at=now,
                    dispatch_completed_at=None,
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.commit()
                return
            db.rollback()
            if db.get(Campaign, campaign_id) is None:
                raise NotFoundError("Campaign not found")
        log_event(logger, "campaign.claim_rejected", level=logging.WARNING, campaign_id=campaign_id)
        raise ConflictError("Campaign is already dispatching")

    def _run(self, campaign_id: str, cancel_event: threading.Event) -> DispatchSummary:
        with self.session_factory() as db:
            campaign = db.get(Campaign, campaign_id)
            if campaign is None:
                raise FatalDispatchError("Campaign was removed during dispatch", campaign_id=campaign_id)
            recipients = self._resolve_recipients(db, campaign)
            campaign.audience_size = len(recipients)
            campaign.stats_updated_at = datetime.now(timezone.utc)
            template = campaign.message_content
            db.commit()

        self._purge_pending(campaign_id)

        summary = DispatchSummary(campaign_id=campaign_id, status="running", audience_size=len(recipients))
        for start in range(0, len(recipients), self.batch_size):
            if cancel_event.is_set():
                summary.cancelled = True
                log_event(logger, "campaign.cancelled", campaign_id=campaign_id, remaining=len(recipients) - start)
                break
            batch = recipients[start:start + self.batch_size]
            for outcome in self._process_batch(campaign_id, template, batch):
                if outcome == OUTCOME_SKIPPED:
                    summary.skipped += 1
                    continue
                summary.attempted += 1
                if outcome == OUTCOME_FAILED:
                    summary.failed += 1

        return self._finish(summary)

    def _resolve_recipients(self, db: Session, campaign: Campaign) -> list[_Recipient]:
        segment = db.get(Segment, campaign.segment_id) if campaign.segment_id else None
        if segment is None:
            raise FatalDispatchError("Campaign segment not found", campaign_id=campaign.id)
        if self.refresh_segment_on_start:
            customer_ids = recompute_membership(db, segment=segment)
        else:
            customer_ids = segment_customer_ids(db, segment.id)

        customers = {
            customer.id: customer
            for customer in db.execute(select(Customer).where(Customer.id.in_(customer_ids))).scalars().all()
        }
        recipients = []
        for customer_id in customer_ids:
            customer = customers.get(customer_id)
            if customer is None:
                log_event(logger, "recipient.missing", campaign_id=campaign.id, customer_id=customer_id)
                continue
            recipients.append(
                _Recipient(
                    customer_id=customer.id,
                    name=customer.name,
                    address=customer.phone or customer.email,
                )
            )
        return recipients

    def _purge_pending(self, campaign_id: str) -> int:
        with self.session_factory() as db:
            result = db.execute(
                delete(CommunicationLog).where(
                    CommunicationLog.campaign_id == campaign_id,
                    CommunicationLog.status == LOG_STATUS_PENDING,
                )
            )
            db.commit()
        purged = int(result.rowcount or 0)
        if purged:
            log_event(logger, "campaign.pending_purged", campaign_id=campaign_id, purged=purged)
        return purged

    def _process_batch(self, campaign_id: str, template: str, batch: list[_Recipient]) -> list[str]:
        if self.max_workers == 1 or len(batch) == 1:
            return [self._dispatch_one(campaign_id, template, recipient) for recipient in batch]
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(batch)),
            thread_name_prefix="crm-dispatch",
        ) as pool:
            return list(pool.map(lambda recipient: self._dispatch_one(campaign_id, template, recipient), batch))

    def _dispatch_one(self, campaign_id: str, template: str, recipient: _Recipient) -> str:
        message = render_message(template, customer_name=recipient.name)
        with self.session_factory() as db:
            already_sent = db.execute(
                select(CommunicationLog.id)
                .where(
                    CommunicationLog.campaign_id == campaign_id,
                    CommunicationLog.customer_id == recipient.customer_id,
                    CommunicationLog.status == LOG_STATUS_SENT,
                )
                .limit(1)
            ).scalar_one_or_none()
            if already_sent:
                log_event(logger, "recipient.skipped", campaign_id=campaign_id, customer_id=recipient.customer_id, reason="already_sent")
                return OUTCOME_SKIPPED

            tracking = CommunicationLog(
                id=generate_id(),
                campaign_id=campaign_id,
                customer_id=recipient.customer_id,
                message=message,
                status=LOG_STATUS_PENDING,
                created_at=datetime.now(timezone.utc),
            )
            db.add(tracking)
            try:
                db.commit()
            except IntegrityError:
                # Another run holds a PENDING or SENT record for this customer.
                db.rollback()
                log_event(logger, "recipient.skipped", campaign_id=campaign_id, customer_id=recipient.customer_id, reason="in_flight")
                return OUTCOME_SKIPPED
            tracking_ref = tracking.id

        request = MessageSendRequest(
            campaign_id=campaign_id,
            customer_id=recipient.customer_id,
            tracking_ref=tracking_ref,
            recipient=recipient.address or "",
            customer_name=recipient.name,
            content=message,
        )
        try:
            if not recipient.address:
                raise RecipientSendError("Customer has no phone number or email address")
            result = self._send(request)
            if not result.success:
                raise RecipientSendError(f"Provider '{result.provider}' rejected the message")
        except Exception as exc:
            self._mark_send_failed(tracking_ref, str(exc) or exc.__class__.__name__)
            log_event(
                logger,
                "recipient.failed",
                level=logging.WARNING,
                campaign_id=campaign_id,
                customer_id=recipient.customer_id,
                tracking_ref=tracking_ref,
                error=str(exc),
            )
            return OUTCOME_FAILED

        with self.session_factory() as db:
            db.execute(
                update(CommunicationLog)
                .where(CommunicationLog.id == tracking_ref)
                .values(provider=result.provider, provider_reference=result.reference)
            )
            db.commit()
        return OUTCOME_SENT

    def _send(self, request: MessageSendRequest) -> MessageSendResult:
        if self.send_timeout_seconds is None:
            return self.provider.send_message(request)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="crm-send")
        try:
            future = executor.submit(self.provider.send_message, request)
            return future.result(timeout=self.send_timeout_seconds)
        except FutureTimeoutError as exc:
            raise RecipientSendError(f"Send timed out after {self.send_timeout_seconds}s") from exc
        finally:
            executor.shutdown(wait=False)

    def _mark_send_failed(self, tracking_ref: str, error: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(CommunicationLog)
                .where(
                    CommunicationLog.id == tracking_ref,
                    CommunicationLog.status == LOG_STATUS_PENDING,
                )
                .values(
                    status=LOG_STATUS_FAILED,
                    receipt_status=RECEIPT_FAILED,
                    receipt_timestamp=datetime.now(timezone.utc),
                    receipt_error=error[:_ERROR_MAX_LENGTH],
                )
            )
            db.commit()

    def _finish(self, summary: DispatchSummary) -> DispatchSummary:
        with self.session_factory() as db:
            campaign = lock_campaign(db, summary.campaign_id)
            if campaign is None:
                raise FatalDispatchError("Campaign was removed during dispatch", campaign_id=summary.campaign_id)
            campaign.dispatch_claimed_at = None
            if not summary.cancelled:
                campaign.dispatch_completed_at = datetime.now(timezone.utc)
            counts = sync_campaign_stats(db, campaign=campaign, complete_when_drained=not summary.cancelled)
            db.commit()
            summary.status = campaign.status

        log_event(
            logger,
            "campaign.dispatched",
            campaign_id=summary.campaign_id,
            status=summary.status,
            attempted=summary.attempted,
            skipped=summary.skipped,
            failed=summary.failed,
            pending=counts.get(LOG_STATUS_PENDING, 0),
            cancelled=summary.cancelled,
        )
        return summary

    def _mark_campaign_failed(self, campaign_id: str) -> None:
        try:
            with self.session_factory() as db:
                campaign = db.get(Campaign, campaign_id)
                if campaign is None:
                    return
                campaign.status = "failed"
                campaign.dispatch_claimed_at = None
                sync_campaign_stats(db, campaign=campaign, complete_when_drained=False)
                db.commit()
        except SQLAlchemyError as exc:
            log_event(
                logger,
                "campaign.fail_mark_error",
                level=logging.ERROR,
                campaign_id=campaign_id,
                error=str(exc),
            )
