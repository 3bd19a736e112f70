from typing import Any


class CRMError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CRMError):
    """Malformed input, rejected before anything is persisted."""

    status_code = 400
    code = "bad_request"


class NotFoundError(CRMError):
    status_code = 404
    code = "not_found"


class ConflictError(CRMError):
    status_code = 409
    code = "conflict"


class RecipientSendError(CRMError):
    """One recipient could not be sent to. Recorded on its tracking record, never raised to callers."""

    code = "recipient_send_failed"


class FatalDispatchError(CRMError):
    """Campaign-level failure. The campaign has been marked ``failed``."""

    code = "dispatch_failed"

    def __init__(self, message: str, *, campaign_id: str):
        super().__init__(message)
        self.campaign_id = campaign_id


class StaleReceiptError(CRMError):
    """A receipt addressed a tracking record that is no longer PENDING."""

    status_code = 409
    code = "stale_receipt"

    def __init__(self, message: str, *, tracking_ref: str, current_status: str):
        super().__init__(message)
        self.tracking_ref = tracking_ref
        self.current_status = current_status


def validation_details(exc: Any) -> list[dict[str, Any]]:
    """Flatten a pydantic ``ValidationError`` into the envelope's ``details`` shape."""
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", [])]
        details.append(
            {
                "field": ".".join(location) if location else "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return details
