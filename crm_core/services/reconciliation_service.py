import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from crm_core.core.errors import NotFoundError, StaleReceiptError
from crm_core.core.observability import log_event
from crm_core.models.campaign import (
    LOG_STATUS_FAILED,
    LOG_STATUS_PENDING,
    LOG_STATUS_SENT,
    Campaign,
    CommunicationLog,
)
from crm_core.services.campaign_service import lock_campaign, sync_campaign_stats
from crm_core.services.messaging_provider import DeliveryReceipt, ReceiptInbox

logger = logging.getLogger("crm.receipts")

_ERROR_MAX_LENGTH = 255


@dataclass(frozen=True)
class ReceiptResult:
    tracking_ref: str
    applied: bool
    status: str
    campaign_id: str
    campaign_status: str


class DeliveryReconciler:
    """Applies delivery receipts to tracking records and refreshes the campaign aggregate.

    A receipt only resolves a PENDING record; replays and late receipts for an already
    resolved record are reported as not applied and change nothing.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def apply_receipt(self, receipt: DeliveryReceipt) -> ReceiptResult:
        with self.session_factory() as db:
            tracking = db.get(CommunicationLog, receipt.tracking_ref)
            if tracking is None:
                raise NotFoundError("Tracking record not found")
            campaign_id = tracking.campaign_id

            try:
                status = self._resolve(db, receipt)
            except StaleReceiptError as exc:
                db.rollback()
                log_event(
                    logger,
                    "receipt.stale",
                    level=logging.WARNING,
                    tracking_ref=exc.tracking_ref,
                    current_status=exc.current_status,
                    outcome=receipt.outcome,
                )
                campaign = db.get(Campaign, campaign_id)
                return ReceiptResult(
                    tracking_ref=receipt.tracking_ref,
                    applied=False,
                    status=exc.current_status,
                    campaign_id=campaign_id,
                    campaign_status=campaign.status if campaign else "failed",
                )

            campaign = lock_campaign(db, campaign_id)
            campaign_status = "failed"
            if campaign is not None:
                sync_campaign_stats(
                    db,
                    campaign=campaign,
                    complete_when_drained=campaign.dispatch_completed_at is not None,
                )
                campaign_status = campaign.status
            db.commit()

        log_event(
            logger,
            "receipt.applied",
            tracking_ref=receipt.tracking_ref,
            campaign_id=campaign_id,
            status=status,
            campaign_status=campaign_status,
        )
        return ReceiptResult(
            tracking_ref=receipt.tracking_ref,
            applied=True,
            status=status,
            campaign_id=campaign_id,
            campaign_status=campaign_status,
        )

    def _resolve(self, db: Session, receipt: DeliveryReceipt) -> str:
        status = LOG_STATUS_SENT if receipt.delivered else LOG_STATUS_FAILED
        outcome = receipt.outcome.strip().upper()
        result = db.execute(
            update(CommunicationLog)
            .where(
                CommunicationLog.id == receipt.tracking_ref,
                CommunicationLog.status == LOG_STATUS_PENDING,
            )
            .values(
                status=status,
                receipt_status=outcome,
                receipt_timestamp=receipt.timestamp or datetime.now(timezone.utc),
                receipt_error=receipt.error_detail[:_ERROR_MAX_LENGTH] if receipt.error_detail else None,
            )
        )
        if result.rowcount != 1:
            current = db.execute(
                select(CommunicationLog.status).where(CommunicationLog.id == receipt.tracking_ref)
            ).scalar_one()
            raise StaleReceiptError(
                "Tracking record is already resolved",
                tracking_ref=receipt.tracking_ref,
                current_status=current,
            )
        return status

    def drain(self, inbox: ReceiptInbox) -> int:
        """Apply every receipt currently queued in ``inbox``. Returns how many were applied."""
        applied = 0
        for receipt in inbox.drain():
            if self.apply_queued(receipt):
                applied += 1
        return applied

    def apply_queued(self, receipt: DeliveryReceipt) -> bool:
        try:
            return self.apply_receipt(receipt).applied
        except NotFoundError:
            # The record was purged by a restart of its campaign.
            log_event(logger, "receipt.orphaned", level=logging.WARNING, tracking_ref=receipt.tracking_ref)
            return False


class ReceiptConsumer:
    """Background thread feeding queued receipts to a reconciler."""

    def __init__(self, inbox: ReceiptInbox, reconciler: DeliveryReconciler, *, poll_seconds: float = 0.5):
        self.inbox = inbox
        self.reconciler = reconciler
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="crm-receipt-consumer", daemon=True)
        self._thread.start()
        log_event(logger, "receipt_consumer.started", poll_seconds=self.poll_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        log_event(logger, "receipt_consumer.stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            receipt = self.inbox.get(timeout=self.poll_seconds)
            if receipt is None:
                continue
            try:
                self.reconciler.apply_queued(receipt)
            except Exception as exc:
                log_event(
                    logger,
                    "receipt_consumer.error",
                    level=logging.ERROR,
                    tracking_ref=receipt.tracking_ref,
                    error=str(exc),
                )
