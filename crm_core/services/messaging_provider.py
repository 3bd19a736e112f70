import queue
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from crm_core.core.id_utils import generate_reference

RECEIPT_DELIVERED = "DELIVERED"
RECEIPT_FAILED = "FAILED"

_CUSTOMER_NAME_RE = re.compile(r"{{\s*customerName\s*}}")


@dataclass(frozen=True)
class MessageSendRequest:
    campaign_id: str
    customer_id: str
    tracking_ref: str
    recipient: str
    customer_name: str
    content: str


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    reference: str
    status: str
    accepted_at: datetime

    @property
    def success(self) -> bool:
        return self.status != "failed"


@dataclass(frozen=True)
class DeliveryReceipt:
    tracking_ref: str
    outcome: str
    timestamp: datetime
    error_detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome.strip().upper() == RECEIPT_DELIVERED


class ReceiptInbox:
    """Inbound receipt channel. Providers publish here; the receipt consumer drains it."""

    def __init__(self) -> None:
        self._queue: queue.Queue[DeliveryReceipt] = queue.Queue()

    def publish(self, receipt: DeliveryReceipt) -> None:
        self._queue.put(receipt)

    def get(self, timeout: float | None = None) -> DeliveryReceipt | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[DeliveryReceipt]:
        out: list[DeliveryReceipt] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def __len__(self) -> int:
        return self._queue.qsize()


class MessagingProvider(Protocol):
    name: str

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubSmsProvider:
    """Accepts every message and reports delivery through the receipt inbox, never inline."""

    name = "sms_stub"

    def __init__(self, inbox: ReceiptInbox | None = None):
        self.inbox = inbox

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        now = datetime.now(timezone.utc)
        if self.inbox is not None:
            self.inbox.publish(
                DeliveryReceipt(
                    tracking_ref=request.tracking_ref,
                    outcome=RECEIPT_DELIVERED,
                    timestamp=now,
                )
            )
        return MessageSendResult(
            provider=self.name,
            reference=generate_reference("msg"),
            status="accepted",
            accepted_at=now,
        )


default_receipt_inbox = ReceiptInbox()

_MESSAGING_PROVIDERS: dict[str, MessagingProvider] = {
    "sms_stub": StubSmsProvider(inbox=default_receipt_inbox),
}


def get_messaging_provider(name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = _MESSAGING_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider


def render_message(template: str, *, customer_name: str) -> str:
    return _CUSTOMER_NAME_RE.sub(lambda _match: customer_name or "", template)
