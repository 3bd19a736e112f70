import hashlib
import hmac
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from crm_core.core.api_docs import error_responses
from crm_core.core.config import settings
from crm_core.core.deps import get_reconciler
from crm_core.schemas.campaign import DeliveryReceiptIn, DeliveryReceiptOut
from crm_core.services.messaging_provider import DeliveryReceipt
from crm_core.services.reconciliation_service import DeliveryReconciler

router = APIRouter(prefix="/vendor", tags=["vendor"])

SIGNATURE_HEADER = "X-CRM-Signature"


def build_receipt_signature(payload_bytes: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _assert_receipt_signature(payload_bytes: bytes, signature_header: str | None) -> None:
    secret = settings.messaging_webhook_secret
    if not secret:
        return
    if not signature_header:
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    provided = signature_header.strip()
    if not provided.startswith("sha256="):
        provided = f"sha256={provided}"
    if not hmac.compare_digest(provided, build_receipt_signature(payload_bytes, secret)):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post(
    "/delivery-receipts",
    response_model=DeliveryReceiptOut,
    summary="Apply a delivery receipt reported by the messaging vendor",
    responses=error_responses(401, 404, 422, 500),
)
async def receive_delivery_receipt(
    payload: DeliveryReceiptIn,
    request: Request,
    reconciler: DeliveryReconciler = Depends(get_reconciler),
):
    _assert_receipt_signature(await request.body(), request.headers.get(SIGNATURE_HEADER))
    # apply_receipt does blocking database I/O.
    result = await run_in_threadpool(
        reconciler.apply_receipt,
        DeliveryReceipt(
            tracking_ref=payload.tracking_ref,
            outcome=payload.outcome,
            timestamp=payload.timestamp or datetime.now(timezone.utc),
            error_detail=payload.error_detail,
        ),
    )
    return DeliveryReceiptOut(
        tracking_ref=result.tracking_ref,
        applied=result.applied,
        status=result.status,
        campaign_id=result.campaign_id,
        campaign_status=result.campaign_status,
    )
