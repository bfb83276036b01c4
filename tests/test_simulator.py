"""Tests for the SimulatorGateway and the GatewayCaller."""

import time
from datetime import datetime, timedelta

import pytest

from reservation_payments.config import Settings
from reservation_payments.exceptions import (
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    InstrumentDeclined,
    AuthorizationExpired,
    AuthorizationInvalid,
    AlreadyCaptured,
    DuplicateInvoice,
)
from reservation_payments.gateway import (
    SimulatorGateway,
    SimulatorConfig,
    ChargeDescriptor,
    GatewayCaller,
)


def descriptor(amount=5000, invoice_ref="INV-1", vault_token_ref=SimulatorGateway.VAULT_SUCCESS):
    return ChargeDescriptor(
        amount=amount,
        currency="usd",
        invoice_ref=invoice_ref,
        custom_ref="CNF00001",
        vault_token_ref=vault_token_ref,
    )


def authorized(simulator, amount=8000):
    order = simulator.create_order(descriptor(amount, "INV-AUTH"), "key-auth", intent="AUTHORIZE")
    return simulator.authorize(order.order_ref)


class TestMerchantInitiatedCharge:
    """Charging a vaulted instrument with a CAPTURE order."""

    def test_success_completes_immediately(self, simulator):
        """A success token yields a completed order with one completed capture."""
        order = simulator.create_order(descriptor(), "key-1")

        assert order.status == "COMPLETED"
        assert order.currency == "USD"
        capture = order.find_capture()
        assert capture.amount == 5000
        assert capture.invoice_ref == "INV-1"

    def test_decline_raises(self, simulator):
        with pytest.raises(InstrumentDeclined):
            simulator.create_order(descriptor(vault_token_ref=SimulatorGateway.VAULT_DECLINE), "key-1")

    def test_pending_capture(self, simulator):
        order = simulator.create_order(descriptor(vault_token_ref=SimulatorGateway.VAULT_PENDING), "key-1")
        assert order.find_capture() is None
        assert order.find_capture(completed_only=False).status == "PENDING"

    def test_timeout_leaves_no_order(self, simulator):
        """A simulated timeout fails before anything is recorded."""
        with pytest.raises(GatewayTimeout):
            simulator.create_order(descriptor(vault_token_ref=SimulatorGateway.VAULT_TIMEOUT), "key-1")
        assert simulator.find_order_by_invoice("INV-1") is None

    def test_idempotency_key_replays(self, simulator):
        first = simulator.create_order(descriptor(), "key-1")
        second = simulator.create_order(descriptor(), "key-1")

        assert first.order_ref == second.order_ref
        assert len(simulator.get_all_orders()) == 1

    def test_reused_invoice_is_rejected(self, simulator):
        simulator.create_order(descriptor(), "key-1")

        with pytest.raises(DuplicateInvoice) as exc_info:
            simulator.create_order(descriptor(), "key-2")

        assert exc_info.value.issue == "DUPLICATE_INVOICE_ID"

    def test_find_order_by_invoice(self, simulator):
        order = simulator.create_order(descriptor(), "key-1")
        found = simulator.find_order_by_invoice("INV-1")
        assert found.order_ref == order.order_ref


class TestAuthorizationCapture:
    """Authorize-then-capture flow."""

    def test_authorize_returns_72h_hold(self, simulator):
        before = datetime.utcnow()
        auth = authorized(simulator)

        assert auth.status == "AUTHORIZED"
        assert auth.amount == 8000
        assert before + timedelta(hours=71) < auth.expires_at <= datetime.utcnow() + timedelta(hours=72)
        assert simulator.get_order(auth.order_ref).status == "COMPLETED"

    def test_partial_then_final_capture(self, simulator):
        auth = authorized(simulator)

        simulator.capture(auth.auth_ref, 5000, "USD", "cap-1", invoice_ref="INV-C1")
        assert simulator.get_authorization(auth.auth_ref).status == "PARTIALLY_CAPTURED"

        simulator.capture(auth.auth_ref, 3000, "USD", "cap-2", invoice_ref="INV-C2")
        assert simulator.get_authorization(auth.auth_ref).status == "CAPTURED"

    def test_capture_over_remaining_is_rejected(self, simulator):
        auth = authorized(simulator)
        simulator.capture(auth.auth_ref, 5000, "USD", "cap-1")

        with pytest.raises(GatewayError) as exc_info:
            simulator.capture(auth.auth_ref, 4000, "USD", "cap-2")

        assert exc_info.value.issue == "MAX_CAPTURE_AMOUNT_EXCEEDED"

    def test_expired_authorization(self, simulator):
        auth = authorized(simulator)
        simulator.expire_authorization(auth.auth_ref)

        with pytest.raises(AuthorizationExpired):
            simulator.capture(auth.auth_ref, 1000, "USD", "cap-1")
        assert simulator.get_authorization(auth.auth_ref).status == "EXPIRED"

    def test_voided_authorization(self, simulator):
        auth = authorized(simulator)
        assert simulator.void(auth.auth_ref).status == "VOIDED"

        with pytest.raises(AuthorizationInvalid):
            simulator.capture(auth.auth_ref, 1000, "USD", "cap-1")

    def test_captured_authorization(self, simulator):
        auth = authorized(simulator)
        simulator.capture(auth.auth_ref, 8000, "USD", "cap-1", final_capture=True)

        with pytest.raises(AlreadyCaptured):
            simulator.capture(auth.auth_ref, 1, "USD", "cap-2")

    def test_capture_idempotency_key_replays(self, simulator):
        auth = authorized(simulator)
        first = simulator.capture(auth.auth_ref, 1000, "USD", "cap-1")
        second = simulator.capture(auth.auth_ref, 1000, "USD", "cap-1")
        assert first.capture_ref == second.capture_ref
        assert simulator.get_authorization(auth.auth_ref).captured_amount == 1000


class TestApprovedOrderCapture:
    """Link-pay orders approved by the guest."""

    def test_capture_after_approval(self, simulator):
        order = simulator.create_order(descriptor(vault_token_ref=None), "key-1")
        assert order.status == "PAYER_ACTION_REQUIRED"
        assert order.approve_url is not None

        with pytest.raises(GatewayError):
            simulator.capture(order.order_ref, 5000, "USD", "cap-1")

        simulator.approve_order(order.order_ref)
        capture = simulator.capture(order.order_ref, 5000, "USD", "cap-2")

        assert capture.status == "COMPLETED"
        assert capture.invoice_ref == "INV-1"
        with pytest.raises(AlreadyCaptured):
            simulator.capture(order.order_ref, 5000, "USD", "cap-3")


class TestVaultSetup:
    """Setup token exchange."""

    def test_exchange_maps_token(self, simulator):
        result = simulator.exchange_vault_setup_token("sim_setup_success")
        assert result.gateway_token_ref == SimulatorGateway.VAULT_SUCCESS
        assert result.last4 == "4242"

    def test_exchange_is_repeatable(self, simulator):
        first = simulator.exchange_vault_setup_token("sim_setup_success")
        second = simulator.exchange_vault_setup_token("sim_setup_success")
        assert first == second

    def test_invalid_setup_token(self, simulator):
        with pytest.raises(AuthorizationInvalid):
            simulator.exchange_vault_setup_token(SimulatorGateway.SETUP_INVALID)


class TestInjectedFailures:
    """Scripted failures used by the service tests."""

    def test_failure_before_effect(self, simulator):
        simulator.inject_failure("create_order", GatewayUnavailable("down"))

        with pytest.raises(GatewayUnavailable):
            simulator.create_order(descriptor(), "key-1")

        assert simulator.get_all_orders() == {}
        assert simulator.call_count("create_order") == 1

    def test_failure_after_effect_keeps_the_order(self, simulator):
        """The call takes effect and only the response is lost."""
        simulator.inject_failure("create_order", GatewayTimeout("lost"), after_effect=True)

        with pytest.raises(GatewayTimeout):
            simulator.create_order(descriptor(), "key-1")

        found = simulator.find_order_by_invoice("INV-1")
        assert found is not None
        assert found.find_capture() is not None

    def test_clear_resets_state(self, simulator):
        simulator.create_order(descriptor(), "key-1")
        simulator.clear()
        assert simulator.get_all_orders() == {}
        assert simulator.call_count("create_order") == 0


class TestSimulatorConfig:
    """Random scenarios from configuration."""

    def test_zero_success_rate_declines(self):
        simulator = SimulatorGateway(SimulatorConfig(success_rate=0.0, seed=7))
        with pytest.raises(InstrumentDeclined):
            simulator.create_order(descriptor(vault_token_ref="sim_vault_random"), "key-1")

    def test_health_check(self, simulator):
        health = simulator.health_check()
        assert health["ok"] is True
        assert health["provider"] == "simulator"


class TestGatewayCaller:
    """Tests for timeouts and read retries."""

    async def test_call_returns_result(self, settings):
        caller = GatewayCaller(settings)
        assert await caller.call(lambda x: x * 2, 21) == 42

    async def test_call_times_out(self):
        caller = GatewayCaller(Settings(gateway_timeout_seconds=0.05))

        with pytest.raises(GatewayTimeout):
            await caller.call(time.sleep, 0.5)

    async def test_read_retries_unavailable(self, settings, simulator):
        order = simulator.create_order(descriptor(), "key-1")
        simulator.inject_failure("get_order", GatewayUnavailable("blip"))
        caller = GatewayCaller(settings)

        result = await caller.read(simulator.get_order, order.order_ref)

        assert result.order_ref == order.order_ref
        assert simulator.call_count("get_order") == 2

    async def test_read_gives_up_after_attempts(self, settings, simulator):
        simulator.inject_failure("get_order", GatewayUnavailable("down"))
        simulator.inject_failure("get_order", GatewayUnavailable("still down"))
        caller = GatewayCaller(settings)

        with pytest.raises(GatewayUnavailable):
            await caller.read(simulator.get_order, "SIMORD-X")

        assert simulator.call_count("get_order") == 2

    async def test_read_does_not_retry_other_errors(self, settings, simulator):
        caller = GatewayCaller(settings)
        with pytest.raises(GatewayError):
            await caller.read(simulator.get_order, "SIMORD-UNKNOWN")
        assert simulator.call_count("get_order") == 1
