from typing import Optional


class MarketplaceError(Exception):
    """Base class for every error the checkout and reconciliation paths raise."""

    code = "marketplace_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class PreconditionFailed(MarketplaceError):
    code = "precondition_failed"


class PaymentAlreadyInFlight(MarketplaceError):
    code = "payment_already_in_flight"


class InvalidTransition(MarketplaceError):
    code = "invalid_transition"


class PaymentNotConfirmed(InvalidTransition):
    code = "payment_not_confirmed"


class OrderNotFound(MarketplaceError):
    code = "order_not_found"


class Forbidden(MarketplaceError):
    code = "forbidden"


class GatewayError(MarketplaceError):
    """The payment gateway call failed. ``message`` is safe to show a user, ``detail`` is not."""

    code = "gateway_error"


class InvalidSignature(MarketplaceError):
    code = "invalid_signature"


class MalformedEvent(MarketplaceError):
    code = "malformed_event"


class StorageUnavailable(MarketplaceError):
    code = "storage_unavailable"
