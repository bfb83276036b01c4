import os
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional
import stripe
from .base import (
    GatewayAdapter,
    ChargeDescriptor,
    OrderResult,
    AuthorizationResult,
    CaptureResult,
    VaultTokenResult,
)
from ..exceptions import (
    GatewayError,
    AuthorizationExpired,
    AuthorizationInvalid,
    AuthorizationDeclined,
    InstrumentDeclined,
    GatewayUnavailable,
    AlreadyCaptured,
    GatewayKeyInUse,
)

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_API_KEY", "")

# Stripe keeps an uncaptured card authorization for seven days.
AUTHORIZATION_VALIDITY = timedelta(days=7)

ORDER_STATUS_MAP = {
    "requires_payment_method": "PAYER_ACTION_REQUIRED",
    "requires_confirmation": "PAYER_ACTION_REQUIRED",
    "requires_action": "PAYER_ACTION_REQUIRED",
    "processing": "APPROVED",
    "requires_capture": "APPROVED",
    "succeeded": "COMPLETED",
    "canceled": "VOIDED",
}

AUTH_STATUS_MAP = {
    "requires_capture": "AUTHORIZED",
    "processing": "PENDING",
    "succeeded": "CAPTURED",
    "canceled": "VOIDED",
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _raw(obj: Any) -> Optional[Dict[str, Any]]:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        try:
            raw = to_dict()
        except (TypeError, ValueError):
            return None
        return raw if isinstance(raw, dict) else None
    return None


class StripeGateway(GatewayAdapter):
    """
    Stripe gateway using stripe-python PaymentIntents. Orders are
    PaymentIntents; an authorization is a PaymentIntent in
    ``requires_capture``; vault tokens are saved PaymentMethods obtained from
    a confirmed SetupIntent. Merchant-initiated charges are confirmed
    off-session against the saved PaymentMethod.
    """

    name = "stripe"

    def __init__(self, api_key: Optional[str] = None):
        if api_key:
            stripe.api_key = api_key
        if not stripe.api_key:
            logger.warning("STRIPE_API_KEY is not set; Stripe calls will fail")

    def _translate(self, error: Exception, during: str) -> GatewayError:
        """Map a stripe-python exception to the gateway error taxonomy."""
        code = _field(error, "code")
        message = _field(error, "user_message") or str(error)
        if isinstance(error, stripe.CardError):
            issue = _field(_field(error, "error"), "decline_code") or code or "card_declined"
            if during == "authorize":
                return AuthorizationDeclined(message, issue=issue)
            return InstrumentDeclined(message, issue=issue)
        if isinstance(error, stripe.IdempotencyError):
            return GatewayKeyInUse(message, issue=code or "idempotency_key_in_use")
        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            return GatewayUnavailable(message, issue=code or type(error).__name__)
        if isinstance(error, stripe.InvalidRequestError):
            if code == "charge_expired_for_capture":
                return AuthorizationExpired(message, issue="AUTHORIZATION_EXPIRED")
            if code == "resource_missing":
                return AuthorizationInvalid(message, issue="INVALID_RESOURCE_ID")
            if code == "payment_intent_unexpected_state":
                intent = _field(_field(error, "error"), "payment_intent")
                if _field(intent, "status") == "succeeded":
                    return AlreadyCaptured(order_ref=_field(intent, "id"))
                return AuthorizationInvalid(message, issue="UNEXPECTED_STATE")
        if isinstance(error, stripe.APIError):
            return GatewayUnavailable(message, issue=code or "api_error")
        return GatewayError(message, issue=code)

    def _capture_from_intent(self, pi: Any, invoice_ref: Optional[str] = None) -> Optional[CaptureResult]:
        status = _field(pi, "status")
        if status not in ("succeeded", "processing"):
            return None
        charge = _field(pi, "latest_charge")
        charge_id = _field(charge, "id") if not isinstance(charge, str) else charge
        metadata = _field(pi, "metadata") or {}
        details = _field(charge, "payment_method_details")
        network_ref = _field(_field(details, "card"), "network_transaction_id")
        amount = _field(pi, "amount_received") or _field(pi, "amount", 0)
        return CaptureResult(
            capture_ref=charge_id or _field(pi, "id"),
            status="COMPLETED" if status == "succeeded" else "PENDING",
            amount=amount,
            currency=str(_field(pi, "currency", "")).upper(),
            order_ref=_field(pi, "id"),
            invoice_ref=invoice_ref or _field(metadata, "invoice_ref"),
            network_ref=network_ref,
            raw_provider_response=_raw(pi),
        )

    def _authorization_from_intent(self, pi: Any) -> AuthorizationResult:
        created = _field(pi, "created")
        expires_at = None
        if created:
            expires_at = datetime.utcfromtimestamp(created) + AUTHORIZATION_VALIDITY
        return AuthorizationResult(
            auth_ref=_field(pi, "id"),
            status=AUTH_STATUS_MAP.get(_field(pi, "status"), "PENDING"),
            amount=_field(pi, "amount_capturable") or _field(pi, "amount", 0),
            currency=str(_field(pi, "currency", "")).upper(),
            order_ref=_field(pi, "id"),
            expires_at=expires_at,
            network_ref=_field(_field(pi, "latest_charge"), "id"),
            raw_provider_response=_raw(pi),
        )

    def _order_from_intent(self, pi: Any) -> OrderResult:
        status = _field(pi, "status")
        metadata = _field(pi, "metadata") or {}
        capture = self._capture_from_intent(pi)
        authorizations = []
        if status == "requires_capture":
            authorizations.append(self._authorization_from_intent(pi))
        approve_url = None
        next_action = _field(pi, "next_action")
        if next_action is not None:
            approve_url = _field(_field(next_action, "redirect_to_url"), "url")
        return OrderResult(
            order_ref=_field(pi, "id"),
            status=ORDER_STATUS_MAP.get(status, "CREATED"),
            amount=_field(pi, "amount", 0),
            currency=str(_field(pi, "currency", "")).upper(),
            invoice_ref=_field(metadata, "invoice_ref"),
            captures=[capture] if capture else [],
            authorizations=authorizations,
            approve_url=approve_url,
            raw_provider_response=_raw(pi),
        )

    def create_order(
        self,
        descriptor: ChargeDescriptor,
        idempotency_key: str,
        intent: str = "CAPTURE",
    ) -> OrderResult:
        metadata = {
            "invoice_ref": descriptor.invoice_ref,
            "custom_ref": descriptor.custom_ref or "",
        }
        metadata.update({k: str(v) for k, v in descriptor.metadata.items()})
        params: Dict[str, Any] = {
            "amount": descriptor.amount,
            "currency": descriptor.currency.lower(),
            "description": descriptor.description,
            "metadata": metadata,
            "capture_method": "manual" if intent == "AUTHORIZE" else "automatic",
            "idempotency_key": idempotency_key,
        }
        if descriptor.soft_descriptor:
            params["statement_descriptor_suffix"] = descriptor.soft_descriptor[:22]
        if descriptor.payer_email:
            params["receipt_email"] = descriptor.payer_email
        if descriptor.vault_token_ref:
            params["payment_method"] = descriptor.vault_token_ref
            params["confirm"] = True
            if descriptor.stored_credential is not None:
                # Merchant-initiated: no customer present to complete authentication
                params["off_session"] = True
                if descriptor.stored_credential.previous_transaction_ref:
                    metadata["previous_transaction_ref"] = (
                        descriptor.stored_credential.previous_transaction_ref
                    )
        try:
            pi = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise self._translate(e, "create_order") from e
        logger.info(f"Stripe PaymentIntent {pi.id} created with status {pi.status}")
        return self._order_from_intent(pi)

    def authorize(self, order_ref: str) -> AuthorizationResult:
        try:
            pi = stripe.PaymentIntent.retrieve(order_ref)
            if pi.status == "requires_confirmation":
                pi = stripe.PaymentIntent.confirm(order_ref)
        except stripe.StripeError as e:
            raise self._translate(e, "authorize") from e
        if pi.status == "requires_payment_method":
            raise AuthorizationDeclined("Authorization was declined", issue="AUTHORIZATION_DENIED")
        return self._authorization_from_intent(pi)

    def capture(
        self,
        ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        invoice_ref: Optional[str] = None,
        final_capture: bool = False,
    ) -> CaptureResult:
        params: Dict[str, Any] = {
            "amount_to_capture": amount,
            "idempotency_key": idempotency_key,
        }
        if invoice_ref:
            params["metadata"] = {"invoice_ref": invoice_ref}
        try:
            pi = stripe.PaymentIntent.capture(ref, **params)
        except stripe.StripeError as e:
            raise self._translate(e, "capture") from e
        capture = self._capture_from_intent(pi, invoice_ref)
        if capture is None:
            return CaptureResult(
                capture_ref=pi.id,
                status="FAILED",
                amount=amount,
                currency=currency.upper(),
                order_ref=pi.id,
                invoice_ref=invoice_ref,
                raw_provider_response=_raw(pi),
            )
        # A PaymentIntent is captured once; Stripe releases the uncaptured remainder
        capture.final_capture = True
        return capture

    def void(self, auth_ref: str) -> AuthorizationResult:
        # Stripe: cancel an uncaptured PaymentIntent
        try:
            pi = stripe.PaymentIntent.cancel(auth_ref)
        except stripe.StripeError as e:
            raise self._translate(e, "void") from e
        return self._authorization_from_intent(pi)

    def exchange_vault_setup_token(self, setup_token: str) -> VaultTokenResult:
        try:
            si = stripe.SetupIntent.retrieve(setup_token, expand=["payment_method"])
        except stripe.StripeError as e:
            raise self._translate(e, "exchange") from e
        if si.status != "succeeded":
            raise AuthorizationInvalid(
                f"SetupIntent {setup_token} is {si.status}", issue="SETUP_NOT_COMPLETED"
            )
        pm = si.payment_method
        card = _field(pm, "card")
        expiry = None
        if card is not None and _field(card, "exp_year"):
            expiry = f"{_field(card, 'exp_year')}-{int(_field(card, 'exp_month', 1)):02d}"
        return VaultTokenResult(
            gateway_token_ref=_field(pm, "id") if not isinstance(pm, str) else pm,
            owner_ref=_field(si, "customer"),
            brand=_field(card, "brand"),
            last4=_field(card, "last4"),
            expiry=expiry,
        )

    def get_order(self, order_ref: str) -> OrderResult:
        try:
            pi = stripe.PaymentIntent.retrieve(order_ref, expand=["latest_charge"])
        except stripe.StripeError as e:
            raise self._translate(e, "get_order") from e
        return self._order_from_intent(pi)

    def find_order_by_invoice(self, invoice_ref: str) -> Optional[OrderResult]:
        # Search results lag writes; only used to settle pending charges later on
        try:
            found = stripe.PaymentIntent.search(
                query=f"metadata['invoice_ref']:'{invoice_ref}'",
                limit=1,
            )
        except stripe.StripeError as e:
            raise self._translate(e, "find_order") from e
        data = _field(found, "data") or []
        if not data:
            return None
        return self._order_from_intent(data[0])

    def health_check(self) -> Dict[str, Any]:
        return {"ok": bool(stripe.api_key), "provider": self.name}
