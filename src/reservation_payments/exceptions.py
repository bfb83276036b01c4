"""Error taxonomy for ledger, charge and reconciliation operations."""

from typing import Any, Dict, Optional


class PaymentsError(Exception):
    """Base class for every error raised by this package."""
    code = "PAYMENTS_ERROR"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        data.update(self.details)
        return data


class InvalidAmount(PaymentsError, ValueError):
    """Amount must be a positive integer in minor units."""
    code = "INVALID_AMOUNT"


class ReservationNotFound(PaymentsError, LookupError):
    """Reservation not found."""
    code = "RESERVATION_NOT_FOUND"


class LimitExceeded(PaymentsError):
    """Capture would exceed the reservation's capture limit."""
    code = "LIMIT_EXCEEDED"

    def __init__(self, remaining: int, message: Optional[str] = None):
        super().__init__(
            message or f"Capture exceeds remaining balance. Remaining: {remaining}",
            remaining=remaining,
        )
        self.remaining = remaining


class LimitNotConfigured(PaymentsError):
    """Capture limit is missing on this reservation."""
    code = "LIMIT_NOT_CONFIGURED"


class LimitUpdateRejected(PaymentsError):
    """Capture limit change was rejected."""
    code = "LIMIT_UPDATE_REJECTED"

    def __init__(self, reason: str):
        super().__init__(reason, reason=reason)
        self.reason = reason


class NoChargeableInstrument(PaymentsError):
    """No valid authorization and no vaulted instrument to charge."""
    code = "NO_CHARGEABLE_INSTRUMENT"

    def __init__(self, reason: str):
        super().__init__(f"Unable to charge: {reason}", reason=reason)
        self.reason = reason


class IdempotencyConflict(PaymentsError):
    """Idempotency key was already used for a different request."""
    code = "IDEMPOTENCY_CONFLICT"


class CaptureNotCompleted(PaymentsError):
    """Gateway did not complete the capture."""
    code = "CAPTURE_NOT_COMPLETED"

    def __init__(self, gateway_status: str, via: Optional[str] = None):
        super().__init__(
            f"Charge not completed (gateway status: {gateway_status})",
            gateway_status=gateway_status,
            via=via,
        )
        self.gateway_status = gateway_status
        self.via = via


class ReconciliationInfeasible(PaymentsError):
    """No positive overlap between the offline and online pools."""
    code = "RECONCILIATION_INFEASIBLE"


class NoEligibleReservations(PaymentsError):
    """None of the requested reservations qualifies for this change."""
    code = "NO_ELIGIBLE_RESERVATIONS"


class LedgerStateError(PaymentsError):
    """Ledger counters do not allow this transition."""
    code = "LEDGER_STATE_ERROR"


# Gateway-side failures. Adapters translate provider errors into these.

class GatewayError(PaymentsError):
    """Payment gateway call failed."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: Optional[str] = None, issue: Optional[str] = None, **details: Any):
        super().__init__(message, issue=issue, **details)
        self.issue = issue


class AuthorizationExpired(GatewayError):
    """Authorization has expired."""
    code = "AUTHORIZATION_EXPIRED"


class AuthorizationInvalid(GatewayError):
    """Authorization is invalid or no longer available."""
    code = "AUTHORIZATION_INVALID"


class AuthorizationDeclined(GatewayError):
    """Authorization was declined."""
    code = "AUTHORIZATION_DECLINED"


class InstrumentDeclined(GatewayError):
    """Payment instrument was declined."""
    code = "INSTRUMENT_DECLINED"


class GatewayUnavailable(GatewayError):
    """Payment gateway is unavailable."""
    code = "GATEWAY_UNAVAILABLE"


class GatewayTimeout(GatewayUnavailable):
    """Payment gateway call timed out; outcome unknown."""
    code = "GATEWAY_TIMEOUT"


class DuplicateInvoice(GatewayError):
    """Gateway rejected an invoice ref already used by another order."""
    code = "DUPLICATE_INVOICE"


class AlreadyCaptured(GatewayError):
    """Order or authorization was already captured."""
    code = "ALREADY_CAPTURED"

    def __init__(self, order_ref: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message, issue="ORDER_ALREADY_CAPTURED", order_ref=order_ref)
        self.order_ref = order_ref


class GatewayKeyInUse(GatewayError, IdempotencyConflict):
    """Gateway idempotency key is held by another request or was sent with other parameters."""
    code = "GATEWAY_KEY_IN_USE"
