"""Simulator gateway for exercising charge flows without real PSP calls."""

import uuid
import time
import random
import logging
import threading
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

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
    GatewayTimeout,
    DuplicateInvoice,
    AlreadyCaptured,
)

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined test scenarios for the simulator."""
    SUCCESS = "success"
    DECLINE = "decline"
    PENDING = "pending"
    TIMEOUT = "timeout"


@dataclass
class SimulatedAuthorization:
    """In-memory representation of an authorization."""
    id: str
    order_id: str
    amount: int
    currency: str
    status: str
    expires_at: datetime
    network_ref: str
    captured_amount: int = 0


@dataclass
class SimulatedOrder:
    """In-memory representation of an order."""
    id: str
    amount: int
    currency: str
    intent: str
    status: str
    invoice_ref: str
    vault_token_ref: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    captures: List[CaptureResult] = field(default_factory=list)
    authorization_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    success_rate: float = 1.0  # 0.0 to 1.0
    delay_ms: int = 0  # Simulated response delay in ms
    timeout_rate: float = 0.0  # Rate of timeout errors
    auth_validity_hours: int = 72
    seed: Optional[int] = None  # Random seed for reproducibility


class SimulatorGateway(GatewayAdapter):
    """
    Simulator gateway for testing charge flows without making real PSP calls.
    
    Features:
    - In-memory orders, authorizations and captures
    - Gateway-side idempotency keys and unique invoice refs
    - Configurable success/timeout rates and response delay
    - Special vault tokens for specific scenarios
    - Injected failures, optionally raised after the call took effect
    """

    name = "simulator"

    # Special vault tokens for triggering specific behaviors
    VAULT_SUCCESS = "sim_vault_success"
    VAULT_DECLINE = "sim_vault_decline"
    VAULT_PENDING = "sim_vault_pending"
    VAULT_TIMEOUT = "sim_vault_timeout"

    SETUP_PREFIX = "sim_setup_"
    SETUP_INVALID = "sim_setup_invalid"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self._orders: Dict[str, SimulatedOrder] = {}
        self._authorizations: Dict[str, SimulatedAuthorization] = {}
        self._idempotency: Dict[str, Any] = {}
        self._invoices: Dict[str, str] = {}
        self._vault_tokens: Dict[str, VaultTokenResult] = {}
        self._injected: Dict[str, List[Tuple[Exception, bool]]] = {}
        self._calls: Dict[str, int] = {}
        self._rng = random.Random(self.config.seed)
        self._lock = threading.Lock()
        logger.info("SimulatorGateway initialized")

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"

    def _apply_delay(self) -> None:
        """Apply configured response delay."""
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

    def _determine_scenario(self, token: Optional[str]) -> SimulatorScenario:
        """Determine scenario based on vault token or random config."""
        token_scenarios = {
            self.VAULT_SUCCESS: SimulatorScenario.SUCCESS,
            self.VAULT_DECLINE: SimulatorScenario.DECLINE,
            self.VAULT_PENDING: SimulatorScenario.PENDING,
            self.VAULT_TIMEOUT: SimulatorScenario.TIMEOUT,
        }
        if token in token_scenarios:
            return token_scenarios[token]
        if self._rng.random() < self.config.timeout_rate:
            return SimulatorScenario.TIMEOUT
        if self._rng.random() >= self.config.success_rate:
            return SimulatorScenario.DECLINE
        return SimulatorScenario.SUCCESS

    def _begin_call(self, operation: str) -> Optional[Exception]:
        """Count the call and raise an injected failure scheduled before the effect.

        Returns a failure scheduled to fire after the effect, if any.
        """
        self._calls[operation] = self._calls.get(operation, 0) + 1
        queue = self._injected.get(operation)
        if not queue:
            return None
        error, after_effect = queue.pop(0)
        if not after_effect:
            raise error
        return error

    def _check_invoice(self, invoice_ref: Optional[str], owner_id: str) -> None:
        if not invoice_ref:
            return
        existing = self._invoices.get(invoice_ref)
        if existing is not None and existing != owner_id:
            raise DuplicateInvoice(
                f"Invoice {invoice_ref} was already used",
                issue="DUPLICATE_INVOICE_ID",
            )

    def _order_result(self, order: SimulatedOrder) -> OrderResult:
        authorizations = []
        if order.authorization_id:
            authorizations.append(
                self._authorization_result(self._authorizations[order.authorization_id])
            )
        approve_url = None
        if order.status == "PAYER_ACTION_REQUIRED":
            approve_url = f"/simulator/orders/{order.id}/approve"
        return OrderResult(
            order_ref=order.id,
            status=order.status,
            amount=order.amount,
            currency=order.currency,
            invoice_ref=order.invoice_ref,
            captures=list(order.captures),
            authorizations=authorizations,
            approve_url=approve_url,
            raw_provider_response={"simulator": True, "intent": order.intent},
        )

    def _authorization_result(self, auth: SimulatedAuthorization) -> AuthorizationResult:
        return AuthorizationResult(
            auth_ref=auth.id,
            status=auth.status,
            amount=auth.amount,
            currency=auth.currency,
            order_ref=auth.order_id,
            expires_at=auth.expires_at,
            network_ref=auth.network_ref,
            raw_provider_response={"simulator": True, "captured_amount": auth.captured_amount},
        )

    def _new_capture(
        self,
        order: SimulatedOrder,
        amount: int,
        currency: str,
        invoice_ref: Optional[str],
        status: str = "COMPLETED",
        final_capture: bool = True,
    ) -> CaptureResult:
        capture = CaptureResult(
            capture_ref=self._generate_id("SIMCAP"),
            status=status,
            amount=amount,
            currency=currency,
            order_ref=order.id,
            invoice_ref=invoice_ref,
            network_ref=self._generate_id("SIMNET"),
            final_capture=final_capture,
            raw_provider_response={"simulator": True},
        )
        order.captures.append(capture)
        if invoice_ref:
            self._invoices[invoice_ref] = order.id
        return capture

    def create_order(
        self,
        descriptor: ChargeDescriptor,
        idempotency_key: str,
        intent: str = "CAPTURE",
    ) -> OrderResult:
        """Create a simulated order; charges immediately for CAPTURE with a vault token."""
        self._apply_delay()
        with self._lock:
            late_error = self._begin_call("create_order")
            if idempotency_key in self._idempotency:
                return self._idempotency[idempotency_key]

            order_id = self._generate_id("SIMORD")
            self._check_invoice(descriptor.invoice_ref, order_id)
            order = SimulatedOrder(
                id=order_id,
                amount=descriptor.amount,
                currency=descriptor.currency.upper(),
                intent=intent,
                status="PAYER_ACTION_REQUIRED",
                invoice_ref=descriptor.invoice_ref,
                vault_token_ref=descriptor.vault_token_ref,
                metadata=dict(descriptor.metadata),
            )

            if descriptor.vault_token_ref and intent == "CAPTURE":
                scenario = self._determine_scenario(descriptor.vault_token_ref)
                if scenario == SimulatorScenario.TIMEOUT:
                    raise GatewayTimeout("Simulated timeout", issue="TIMEOUT")
                if scenario == SimulatorScenario.DECLINE:
                    order.status = "DECLINED"
                    self._orders[order.id] = order
                    self._invoices[descriptor.invoice_ref] = order.id
                    raise InstrumentDeclined(
                        "Instrument declined", issue="INSTRUMENT_DECLINED", order_ref=order.id
                    )
                capture_status = "PENDING" if scenario == SimulatorScenario.PENDING else "COMPLETED"
                order.status = "COMPLETED"
                self._new_capture(order, descriptor.amount, order.currency, descriptor.invoice_ref, capture_status)
            elif descriptor.vault_token_ref:
                order.status = "APPROVED"

            self._orders[order.id] = order
            self._invoices.setdefault(descriptor.invoice_ref, order.id)
            result = self._order_result(order)
            self._idempotency[idempotency_key] = result
            logger.debug(f"Simulator order {order.id} created with status {order.status}")

        if late_error is not None:
            raise late_error
        return result

    def authorize(self, order_ref: str) -> AuthorizationResult:
        """Authorize an approved order."""
        self._apply_delay()
        with self._lock:
            late_error = self._begin_call("authorize")
            order = self._orders.get(order_ref)
            if order is None:
                raise AuthorizationInvalid(f"Unknown order {order_ref}", issue="INVALID_RESOURCE_ID")
            if order.authorization_id:
                return self._authorization_result(self._authorizations[order.authorization_id])
            if order.status != "APPROVED":
                raise GatewayError(f"Order {order_ref} is {order.status}", issue="ORDER_NOT_APPROVED")

            scenario = self._determine_scenario(order.vault_token_ref)
            if scenario == SimulatorScenario.TIMEOUT:
                raise GatewayTimeout("Simulated timeout", issue="TIMEOUT")
            if scenario == SimulatorScenario.DECLINE:
                raise AuthorizationDeclined("Authorization denied", issue="AUTHORIZATION_DENIED")

            auth = SimulatedAuthorization(
                id=self._generate_id("SIMAUTH"),
                order_id=order.id,
                amount=order.amount,
                currency=order.currency,
                status="PENDING" if scenario == SimulatorScenario.PENDING else "AUTHORIZED",
                expires_at=datetime.utcnow() + timedelta(hours=self.config.auth_validity_hours),
                network_ref=self._generate_id("SIMNET"),
            )
            self._authorizations[auth.id] = auth
            order.authorization_id = auth.id
            order.status = "COMPLETED"
            result = self._authorization_result(auth)

        if late_error is not None:
            raise late_error
        return result

    def capture(
        self,
        ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        invoice_ref: Optional[str] = None,
        final_capture: bool = False,
    ) -> CaptureResult:
        """Capture against an authorization or an approved order."""
        self._apply_delay()
        with self._lock:
            late_error = self._begin_call("capture")
            if idempotency_key in self._idempotency:
                return self._idempotency[idempotency_key]

            auth = self._authorizations.get(ref)
            if auth is not None:
                order = self._orders[auth.order_id]
                if auth.status == "VOIDED":
                    raise AuthorizationInvalid(f"Authorization {ref} was voided", issue="AUTHORIZATION_VOIDED")
                if auth.status == "CAPTURED":
                    raise AlreadyCaptured(order_ref=order.id)
                if auth.status == "EXPIRED" or datetime.utcnow() > auth.expires_at:
                    auth.status = "EXPIRED"
                    raise AuthorizationExpired(f"Authorization {ref} expired", issue="AUTHORIZATION_EXPIRED")
                if amount > auth.amount - auth.captured_amount:
                    raise GatewayError(
                        f"Capture of {amount} exceeds authorization {ref}",
                        issue="MAX_CAPTURE_AMOUNT_EXCEEDED",
                    )
                self._check_invoice(invoice_ref, order.id)
                capture = self._new_capture(order, amount, currency.upper(), invoice_ref, final_capture=final_capture)
                auth.captured_amount += amount
                if final_capture or auth.captured_amount >= auth.amount:
                    auth.status = "CAPTURED"
                else:
                    auth.status = "PARTIALLY_CAPTURED"
            else:
                order = self._orders.get(ref)
                if order is None:
                    raise AuthorizationInvalid(f"Unknown resource {ref}", issue="INVALID_RESOURCE_ID")
                if order.status == "COMPLETED":
                    raise AlreadyCaptured(order_ref=order.id)
                if order.status != "APPROVED":
                    raise GatewayError(f"Order {ref} is {order.status}", issue="ORDER_NOT_APPROVED")
                self._check_invoice(invoice_ref, order.id)
                capture = self._new_capture(order, amount, currency.upper(), invoice_ref or order.invoice_ref)
                order.status = "COMPLETED"

            self._idempotency[idempotency_key] = capture
            logger.debug(f"Simulator captured {amount} against {ref}")

        if late_error is not None:
            raise late_error
        return capture

    def void(self, auth_ref: str) -> AuthorizationResult:
        """Void an authorization that has not been captured in full."""
        self._apply_delay()
        with self._lock:
            self._begin_call("void")
            auth = self._authorizations.get(auth_ref)
            if auth is None:
                raise AuthorizationInvalid(f"Unknown authorization {auth_ref}", issue="INVALID_RESOURCE_ID")
            if auth.status == "CAPTURED":
                raise GatewayError(f"Authorization {auth_ref} already captured", issue="AUTHORIZATION_ALREADY_CAPTURED")
            auth.status = "VOIDED"
            return self._authorization_result(auth)

    def exchange_vault_setup_token(self, setup_token: str) -> VaultTokenResult:
        """Exchange a setup token; ``sim_setup_<x>`` becomes vault token ``sim_vault_<x>``."""
        self._apply_delay()
        with self._lock:
            self._begin_call("exchange_vault_setup_token")
            if not setup_token or setup_token == self.SETUP_INVALID:
                raise AuthorizationInvalid("Setup token is invalid or expired", issue="INVALID_RESOURCE_ID")
            if setup_token in self._vault_tokens:
                return self._vault_tokens[setup_token]
            if setup_token.startswith(self.SETUP_PREFIX):
                token_ref = "sim_vault_" + setup_token[len(self.SETUP_PREFIX):]
            else:
                token_ref = f"sim_vault_{uuid.uuid4().hex[:12]}"
            expiry = datetime.utcnow() + timedelta(days=730)
            result = VaultTokenResult(
                gateway_token_ref=token_ref,
                owner_ref=self._generate_id("SIMCUST"),
                brand="VISA",
                last4="0002" if token_ref == self.VAULT_DECLINE else "4242",
                expiry=expiry.strftime("%Y-%m"),
            )
            self._vault_tokens[setup_token] = result
            return result

    def get_order(self, order_ref: str) -> OrderResult:
        self._apply_delay()
        with self._lock:
            self._begin_call("get_order")
            order = self._orders.get(order_ref)
            if order is None:
                raise GatewayError(f"Unknown order {order_ref}", issue="INVALID_RESOURCE_ID")
            return self._order_result(order)

    def find_order_by_invoice(self, invoice_ref: str) -> Optional[OrderResult]:
        self._apply_delay()
        with self._lock:
            self._begin_call("find_order_by_invoice")
            order_id = self._invoices.get(invoice_ref)
            if order_id is None:
                return None
            return self._order_result(self._orders[order_id])

    # Simulator-specific helpers for tests and local demos

    def approve_order(self, order_ref: str) -> OrderResult:
        """Simulate the guest approving an order (link-pay checkout)."""
        with self._lock:
            order = self._orders[order_ref]
            if order.status == "PAYER_ACTION_REQUIRED":
                order.status = "APPROVED"
            return self._order_result(order)

    def expire_authorization(self, auth_ref: str) -> None:
        """Force an authorization past its honor period."""
        with self._lock:
            auth = self._authorizations[auth_ref]
            auth.expires_at = datetime.utcnow() - timedelta(seconds=1)

    def inject_failure(self, operation: str, error: Exception, after_effect: bool = False) -> None:
        """Make the next call to ``operation`` raise ``error``.

        With ``after_effect`` the call completes on the simulated PSP first,
        which models a response lost on the way back.
        """
        with self._lock:
            self._injected.setdefault(operation, []).append((error, after_effect))

    def call_count(self, operation: str) -> int:
        return self._calls.get(operation, 0)

    def get_authorization(self, auth_ref: str) -> Optional[SimulatedAuthorization]:
        return self._authorizations.get(auth_ref)

    def get_all_orders(self) -> Dict[str, SimulatedOrder]:
        return dict(self._orders)

    def clear(self) -> None:
        """Clear all stored state (for test cleanup)."""
        with self._lock:
            self._orders.clear()
            self._authorizations.clear()
            self._idempotency.clear()
            self._invoices.clear()
            self._vault_tokens.clear()
            self._injected.clear()
            self._calls.clear()

    def health_check(self) -> Dict[str, Any]:
        """Return health status of the simulator."""
        return {
            "ok": True,
            "provider": self.name,
            "order_count": len(self._orders),
            "config": {
                "success_rate": self.config.success_rate,
                "delay_ms": self.config.delay_ms,
                "timeout_rate": self.config.timeout_rate,
            },
        }
