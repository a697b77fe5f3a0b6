"""Billing exceptions

Every error raised by the billing services derives from ``BillingError`` and
carries the HTTP status the API layer should answer with.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for billing and entitlement failures"""

    status_code = 500
    error_code = "BILLING_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }


class Unauthorized(BillingError):
    """Bad webhook signature, or the caller is not the user the event names"""
    status_code = 401
    error_code = "UNAUTHORIZED"


class UserNotFound(BillingError):
    status_code = 404
    error_code = "USER_NOT_FOUND"


class ProductNotFound(BillingError):
    """Internal reference or processor product id absent from the catalog"""
    status_code = 404
    error_code = "PRODUCT_NOT_FOUND"


class PaymentNotSucceeded(BillingError):
    """The redirect reported a status other than success"""
    status_code = 400
    error_code = "PAYMENT_NOT_SUCCEEDED"


class InvalidPaymentEvent(BillingError):
    """Payload cannot be parsed into a payment event"""
    status_code = 400
    error_code = "INVALID_PAYMENT_EVENT"


class ProcessorError(BillingError):
    """Payment processor rejected the call or could not be reached"""
    status_code = 502
    error_code = "PROCESSOR_ERROR"


class RebillingNotAllowed(ProcessorError):
    """Processor refuses to charge the stored card without the buyer present"""
    error_code = "REBILLING_NOT_ALLOWED"


class LedgerWriteFailure(BillingError):
    """Ledger mutation failed and was rolled back; safe to retry"""
    status_code = 503
    error_code = "LEDGER_WRITE_FAILURE"
