"""
Error kinds raised by the gateway, the order store and the workflow.

Transient errors (``transient = True``) are safe for the caller to retry
after a backoff. Everything else is permanent and is shown to the user
as-is.
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for every error this service surfaces over HTTP."""

    error_code = "fulfillment_error"
    http_status = 500
    transient = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.error_code}


class UpstreamUnavailable(FulfillmentError):
    error_code = "upstream_unavailable"
    http_status = 503
    transient = True


class StoreUnavailable(UpstreamUnavailable):
    """The order database could not be reached."""

    error_code = "store_unavailable"


class GatewayError(FulfillmentError):
    """Payment processor rejected the call for a reason we cannot fix by retrying."""

    error_code = "gateway_error"
    http_status = 502


class NotCapturable(FulfillmentError):
    error_code = "not_capturable"
    http_status = 409


class InvalidState(FulfillmentError):
    error_code = "invalid_state"
    http_status = 409


class NotFound(FulfillmentError):
    error_code = "not_found"
    http_status = 404


class ReaderBusy(FulfillmentError):
    """Another capture or cancel is already in flight for the same reader or order."""

    error_code = "reader_busy"
    http_status = 409
    transient = True
    retry_after = 2


class NoActiveAction(FulfillmentError):
    """The reader had nothing in flight. Callers cancelling may treat this as success."""

    error_code = "no_active_action"
    http_status = 409

    def __init__(self, reader_id: str, message: Optional[str] = None):
        super().__init__(message or f"Reader {reader_id} has no action in progress", reader_id=reader_id)
        self.reader_id = reader_id
