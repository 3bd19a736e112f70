from crm_core.core.errors import ConflictError, FatalDispatchError, NotFoundError, ValidationError
from crm_core.schemas.common import ErrorOut

_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    ValidationError.status_code: (ValidationError.code, "Invalid segment conditions"),
    401: ("unauthorized", "Invalid webhook signature"),
    NotFoundError.status_code: (NotFoundError.code, "Campaign not found"),
    ConflictError.status_code: (ConflictError.code, "A customer with this email already exists"),
    422: ("validation_error", "Validation failed"),
    FatalDispatchError.status_code: (FatalDispatchError.code, "Campaign dispatch failed"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI ``responses`` entries documenting the error envelope for each status code."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": "/campaigns/campaign-id/send",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
