"""Charge service layer that ties the ledger, the decision engine and the gateway together."""

import uuid
import logging
from typing import Optional, Dict, Any, Callable, Awaitable, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import (
    Reservation,
    CaptureRecord,
    ReservationRepository,
    VaultTokenRepository,
    AuditLogRepository,
    IdempotencyKeyRepository,
    ChargeState,
    CaptureVia,
    CaptureStatus,
    AuthorizationStatus,
    CAPTURABLE_AUTH_STATUSES,
)
from .decision import (
    ChargePath,
    ChargePlan,
    decide_charge_path,
    has_active_vault_token,
    REASON_NO_VAULT,
    REASON_AUTH_EXPIRED,
)
from .descriptors import build_charge_descriptor, build_invoice_ref
from .exceptions import (
    ReservationNotFound,
    NoChargeableInstrument,
    IdempotencyConflict,
    CaptureNotCompleted,
    LedgerStateError,
    GatewayError,
    AuthorizationExpired,
    AuthorizationInvalid,
    AuthorizationDeclined,
    InstrumentDeclined,
    GatewayUnavailable,
    GatewayTimeout,
    DuplicateInvoice,
    AlreadyCaptured,
    GatewayKeyInUse,
)
from .gateway import (
    GatewayAdapter,
    GatewayCaller,
    ChargeDescriptor,
    OrderResult,
    CaptureResult,
    get_gateway,
)
from .ledger import CaptureLedger, LedgerSnapshot
from .money import require_positive

logger = logging.getLogger(__name__)

CHARGE_ENDPOINT = "charge_reservation"
LINK_CAPTURE_ENDPOINT = "capture_approved_order"

Attempt = Callable[[str, str], Awaitable[CaptureResult]]


class ChargeResult(BaseModel):
    """Outcome of a completed capture."""
    reservation_id: str
    capture_ref: str
    via: str
    status: str
    amount: int
    currency: str
    invoice_ref: Optional[str] = None
    gateway_order_ref: Optional[str] = None
    decision_reason: Optional[str] = None
    demoted_from: Optional[str] = None
    ledger: LedgerSnapshot
    replayed: bool = False


class LedgerService:
    """Read and administer reservation ledgers."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = CaptureLedger(session)

    async def get_ledger(self, reservation_id: str) -> LedgerSnapshot:
        return await self.ledger.snapshot(reservation_id)

    async def update_capture_limit(
        self,
        reservation_id: str,
        new_limit: int,
        actor: str = "system",
    ) -> LedgerSnapshot:
        return await self.ledger.update_limit(reservation_id, new_limit, actor=actor)

    async def open_bounds(
        self,
        reservation_id: str,
        limit: int,
        currency: str,
        actor: str = "system",
    ) -> LedgerSnapshot:
        return await self.ledger.open_bounds(reservation_id, limit, currency, actor=actor)


class ChargeService:
    """Service class for post-stay charges, authorizations and vaulting."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[GatewayAdapter] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the service.

        Args:
            session: AsyncSession instance for database operations.
            gateway: Gateway adapter; built from settings when omitted.
            settings: Runtime settings; process settings when omitted.
        """
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway or get_gateway(self.settings)
        self.caller = GatewayCaller(self.settings)
        self.ledger = CaptureLedger(session)
        self.reservations = ReservationRepository(session)
        self.vault_tokens = VaultTokenRepository(session)
        self.audit = AuditLogRepository(session)
        self.idempotency_repo = IdempotencyKeyRepository(session)

    # Helpers

    async def _read_reservation(self, reservation_id: str) -> Reservation:
        """Load a reservation and end the read transaction."""
        try:
            reservation = await self.reservations.get_by_id(reservation_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        if reservation is None:
            raise ReservationNotFound(
                f"Reservation {reservation_id} not found", reservation_id=reservation_id
            )
        return reservation

    async def check_idempotency(
        self,
        idempotency_key: str,
        endpoint: str,
        request_data: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Check if a request with this idempotency key has been processed.

        Args:
            idempotency_key: The idempotency key from the request.
            endpoint: The operation being called.
            request_data: The request data for conflict detection.

        Returns:
            Cached response if found and valid, None for new requests.

        Raises:
            IdempotencyConflict: If the key was used for a different request.
        """
        try:
            existing, is_conflict = await self.idempotency_repo.check_idempotency(
                key=idempotency_key,
                endpoint=endpoint,
                request_data=request_data,
            )
            response_data = existing.response_data if existing is not None else None
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if is_conflict:
            raise IdempotencyConflict(
                f"Idempotency key '{idempotency_key}' has already been used "
                f"for a different request"
            )

        if response_data:
            logger.info(f"Returning cached response for idempotency key {idempotency_key}")
            return response_data

        return None

    async def _remember(
        self,
        idempotency_key: str,
        endpoint: str,
        reservation_id: str,
        request_data: Dict[str, Any],
        result: ChargeResult,
    ) -> None:
        try:
            await self.idempotency_repo.create(
                key=idempotency_key,
                endpoint=endpoint,
                reservation_id=reservation_id,
                response_data=result.model_dump(mode="json"),
                response_status_code=200,
                request_hash=self.idempotency_repo.compute_request_hash(request_data),
                ttl_hours=self.settings.idempotency_ttl_hours,
            )
            await self.session.commit()
        except IntegrityError:
            # A concurrent request with the same key stored its result first
            await self.session.rollback()
            logger.info(f"Idempotency key {idempotency_key} already stored")

    @staticmethod
    def _gateway_key(prefix: str, reservation_id: str, idempotency_key: Optional[str]) -> str:
        """Gateway-side key; stable for a caller key so retries hit the same capture."""
        return f"{prefix}:{reservation_id}:{idempotency_key or uuid.uuid4().hex}"

    async def _commit_changes(self, changes: Callable[[], Awaitable[None]]) -> None:
        try:
            await changes()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    # Gateway outcome resolution

    async def _resolve_lost_capture(
        self,
        order_ref: Optional[str],
        invoice_ref: str,
        error: Optional[GatewayError] = None,
    ) -> Optional[CaptureResult]:
        """Find out whether a capture whose response was lost took effect.

        Returns:
            The capture carrying ``invoice_ref``, or None if the gateway has
            no such capture.

        Raises:
            GatewayTimeout: With ``unresolved=True`` when the gateway could not
                be read either; the caller must keep the capacity reserved.
        """
        try:
            if order_ref:
                order = await self.caller.read(self.gateway.get_order, order_ref)
            else:
                order = await self.caller.read(self.gateway.find_order_by_invoice, invoice_ref)
        except GatewayUnavailable as read_error:
            logger.error(f"Capture outcome for invoice {invoice_ref} is unknown: {read_error}")
            raise GatewayTimeout(
                f"Capture outcome unknown for invoice {invoice_ref}",
                issue=error.issue if error is not None else "TIMEOUT",
                unresolved=True,
                invoice_ref=invoice_ref,
                order_ref=order_ref,
            ) from read_error

        capture = order.find_capture(invoice_ref, completed_only=False) if order else None
        if capture is not None:
            logger.info(f"Recovered capture {capture.capture_ref} for invoice {invoice_ref}")
        else:
            logger.info(f"No capture found for invoice {invoice_ref}; treating as not executed")
        return capture

    async def _resolve_already_captured(
        self,
        error: AlreadyCaptured,
        order_ref: Optional[str],
        invoice_ref: str,
        match_invoice: bool = True,
    ) -> CaptureResult:
        """Use the existing capture when the gateway reports the order as captured.

        With ``match_invoice`` only a capture carrying this attempt's invoice
        counts; an earlier capture of the same authorization does not pay
        for this charge and the error is raised again.
        """
        order_ref = error.order_ref or order_ref
        if not order_ref:
            raise error
        order = await self.caller.read(self.gateway.get_order, order_ref)
        capture = order.find_capture(invoice_ref)
        if capture is None and not match_invoice:
            capture = order.find_capture()
        if capture is None:
            if match_invoice:
                logger.warning(f"Order {order_ref} holds no capture for invoice {invoice_ref}")
                raise error
            raise CaptureNotCompleted(order.status)
        logger.info(f"Order {order_ref} was already captured; using capture {capture.capture_ref}")
        return capture

    async def _replay_lost_capture(
        self,
        replay: Attempt,
        gateway_key: str,
        invoice_ref: str,
        error: GatewayError,
    ) -> CaptureResult:
        """Repeat a request whose response was lost, under the same key.

        The gateway answers a repeated key with the original outcome, or
        executes the request now if the first one never reached it.
        """
        try:
            capture = await replay(invoice_ref, gateway_key)
        except (GatewayUnavailable, GatewayKeyInUse) as replay_error:
            logger.error(f"Capture outcome for invoice {invoice_ref} is unknown: {replay_error}")
            raise GatewayTimeout(
                f"Capture outcome unknown for invoice {invoice_ref}",
                issue=error.issue or "TIMEOUT",
                unresolved=True,
                invoice_ref=invoice_ref,
            ) from replay_error
        logger.info(f"Recovered capture {capture.capture_ref} for invoice {invoice_ref}")
        return capture

    async def _run_attempt(
        self,
        attempt: Attempt,
        gateway_key: str,
        invoice_ref: str,
        order_ref: Optional[str],
        replay: Optional[Attempt],
        match_invoice: bool,
    ) -> CaptureResult:
        try:
            return await attempt(invoice_ref, gateway_key)
        except AlreadyCaptured as e:
            return await self._resolve_already_captured(e, order_ref, invoice_ref, match_invoice)
        except GatewayUnavailable as e:
            if replay is not None:
                return await self._replay_lost_capture(replay, gateway_key, invoice_ref, e)
            capture = await self._resolve_lost_capture(order_ref, invoice_ref, e)
            if capture is None:
                raise
            return capture

    async def _attempt_capture(
        self,
        attempt: Attempt,
        gateway_key: str,
        confirmation_number: str,
        order_ref: Optional[str] = None,
        replay: Optional[Attempt] = None,
        match_invoice: bool = True,
    ) -> CaptureResult:
        """Run a capture attempt and resolve its outcome.

        The invoice ref is derived from the gateway key, so a repeated key
        sends the identical request. A duplicate-invoice rejection is retried
        once under a new key. Lost responses are resolved with ``replay``
        when given and by reading the order back otherwise.
        """
        invoice_ref = build_invoice_ref(confirmation_number, key=gateway_key)
        try:
            return await self._run_attempt(
                attempt, gateway_key, invoice_ref, order_ref, replay, match_invoice
            )
        except DuplicateInvoice:
            logger.warning(f"Invoice {invoice_ref} rejected as duplicate; retrying once")
        retry_key = f"{gateway_key}:retry"
        return await self._run_attempt(
            attempt,
            retry_key,
            build_invoice_ref(confirmation_number, key=retry_key),
            order_ref,
            replay,
            match_invoice,
        )

    # Ledger-bracketed execution

    async def _run_reserved(
        self,
        reservation: Reservation,
        amount: int,
        execute: Callable[[], Awaitable[Tuple[CaptureResult, str, Optional[str]]]],
        gateway_key: str,
        actor: str,
    ) -> Tuple[CaptureResult, str, Optional[str], LedgerSnapshot]:
        """Reserve capacity, run ``execute`` and settle the ledger with its outcome."""
        await self.ledger.reserve(reservation.id, amount)
        try:
            capture, via, demoted_from = await execute()
        except (AuthorizationDeclined, InstrumentDeclined) as e:
            await self.ledger.finalize(reservation.id, amount, success=False)
            await self._record_decline(reservation, e, actor)
            raise
        except GatewayUnavailable as e:
            if e.details.get("unresolved"):
                logger.error(
                    f"Keeping {amount} pending on reservation {reservation.id} until the "
                    f"capture outcome is resolved"
                )
                raise
            await self.ledger.finalize(reservation.id, amount, success=False)
            raise
        except Exception:
            await self.ledger.finalize(reservation.id, amount, success=False)
            raise

        if capture.status != CaptureStatus.COMPLETED.value:
            await self.ledger.finalize(reservation.id, amount, success=False)
            logger.warning(
                f"Capture {capture.capture_ref} on reservation {reservation.id} is {capture.status}"
            )
            raise CaptureNotCompleted(capture.status, via=via)

        snapshot = await self._finalize_capture(reservation, amount, capture, via, gateway_key, actor)
        return capture, via, demoted_from, snapshot

    async def _finalize_capture(
        self,
        reservation: Reservation,
        amount: int,
        capture: CaptureResult,
        via: str,
        gateway_key: str,
        actor: str,
    ) -> LedgerSnapshot:
        record = CaptureRecord(
            gateway_order_ref=capture.order_ref,
            capture_ref=capture.capture_ref,
            status=capture.status,
            amount=capture.amount,
            currency=(capture.currency or reservation.base_currency).upper(),
            via=via,
            invoice_ref=capture.invoice_ref,
            idempotency_key=gateway_key,
            network_ref=capture.network_ref,
        )
        settled = await self.ledger.finalize(reservation.id, amount, True, record, actor=actor)

        async def changes() -> None:
            if via == CaptureVia.AUTH_CAPTURE.value:
                fully = capture.final_capture or settled.captured_total >= (reservation.auth_amount or 0)
                await self.reservations.set_authorization_status(
                    reservation.id,
                    AuthorizationStatus.CAPTURED.value if fully
                    else AuthorizationStatus.PARTIALLY_CAPTURED.value,
                    capture_ref=None if reservation.auth_capture_ref else capture.capture_ref,
                )
            # The platform collected the money, so its commission is already in hand
            if await self.reservations.set_commission_paid(reservation.id, True):
                await self.audit.create(
                    field="commission",
                    before={"paid": False},
                    after={"paid": True},
                    note=f"retained from online capture {capture.capture_ref}",
                    actor=actor,
                    reservation_id=reservation.id,
                    hotel_id=reservation.hotel_id,
                )

        await self._commit_changes(changes)
        return await self.ledger.snapshot(reservation.id)

    async def _record_decline(self, reservation: Reservation, error: GatewayError, actor: str) -> None:
        async def changes() -> None:
            await self.reservations.set_charge_state(reservation.id, ChargeState.DECLINED.value)
            await self.audit.create(
                field="charge_state",
                before=reservation.charge_state,
                after=ChargeState.DECLINED.value,
                note=f"{error.code}: {error.issue or error.message}",
                actor=actor,
                reservation_id=reservation.id,
                hotel_id=reservation.hotel_id,
            )

        await self._commit_changes(changes)
        logger.warning(f"Charge on reservation {reservation.id} declined ({error.issue})")

    async def _retire_authorization(
        self,
        reservation: Reservation,
        status: str,
        note: str,
        actor: str,
        demote: bool,
    ) -> None:
        """Close the initial authorization and, when demoting, audit the switch to MIT."""

        async def changes() -> None:
            await self.reservations.set_authorization_status(reservation.id, status)
            if demote:
                await self.audit.create(
                    field="via",
                    before=CaptureVia.AUTH_CAPTURE.value,
                    after=CaptureVia.MIT.value,
                    note=note,
                    actor=actor,
                    reservation_id=reservation.id,
                    hotel_id=reservation.hotel_id,
                )

        await self._commit_changes(changes)
        if demote:
            logger.warning(
                f"Reservation {reservation.id}: authorization {reservation.auth_ref} {status.lower()} "
                f"({note}); falling back to MIT"
            )

    async def _reject_authorization(
        self,
        reservation: Reservation,
        error: GatewayError,
        actor: str,
        demote: bool,
    ) -> None:
        """Record that the gateway refused to capture the initial authorization."""
        if isinstance(error, AuthorizationExpired):
            status = AuthorizationStatus.EXPIRED.value
        elif isinstance(error, AlreadyCaptured):
            status = AuthorizationStatus.CAPTURED.value
        else:
            status = AuthorizationStatus.VOIDED.value
        note = f"authorization rejected by gateway ({error.issue or error.code})"
        await self._retire_authorization(reservation, status, note, actor, demote)

    # Charge paths

    async def _auth_capture(
        self,
        reservation: Reservation,
        amount: int,
        plan: ChargePlan,
        gateway_key: str,
    ) -> CaptureResult:
        final_capture = amount >= plan.remaining_authorization

        async def attempt(invoice_ref: str, key: str) -> CaptureResult:
            return await self.caller.call(
                self.gateway.capture,
                reservation.auth_ref,
                amount,
                reservation.base_currency,
                key,
                invoice_ref,
                final_capture,
            )

        return await self._attempt_capture(
            attempt, gateway_key, reservation.confirmation_number, reservation.auth_order_ref
        )

    async def _mit_capture(
        self,
        reservation: Reservation,
        amount: int,
        gateway_key: str,
    ) -> CaptureResult:
        previous_capture_ref = reservation.auth_capture_ref
        if previous_capture_ref is None and reservation.captures:
            previous_capture_ref = reservation.captures[-1].capture_ref

        def describe(invoice_ref: str) -> ChargeDescriptor:
            return build_charge_descriptor(
                reservation,
                amount,
                vault_token=reservation.vault_token,
                previous_capture_ref=previous_capture_ref,
                invoice_ref=invoice_ref,
            )

        def capture_of(order: OrderResult, invoice_ref: str) -> CaptureResult:
            capture = order.find_capture(invoice_ref, completed_only=False)
            if capture is None:
                capture = order.find_capture(completed_only=False)
            if capture is None:
                raise CaptureNotCompleted(order.status, via=CaptureVia.MIT.value)
            return capture

        async def attempt(invoice_ref: str, key: str) -> CaptureResult:
            order = await self.caller.call(
                self.gateway.create_order, describe(invoice_ref), key, "CAPTURE"
            )
            return capture_of(order, invoice_ref)

        # Same descriptor and key: the gateway returns the original order
        async def replay(invoice_ref: str, key: str) -> CaptureResult:
            order = await self.caller.read(
                self.gateway.create_order, describe(invoice_ref), key, "CAPTURE"
            )
            return capture_of(order, invoice_ref)

        return await self._attempt_capture(
            attempt, gateway_key, reservation.confirmation_number, replay=replay
        )

    async def charge_reservation(
        self,
        reservation_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> ChargeResult:
        """Charge a post-stay amount against a reservation.

        Uses the initial authorization when it can still cover the amount
        and falls back to a merchant-initiated charge of the vaulted
        instrument otherwise.

        Args:
            reservation_id: Reservation to charge.
            amount: Amount in minor units of the ledger's base currency.
            idempotency_key: Caller key; repeating it returns the first result.
            actor: Who triggered the charge.

        Returns:
            ChargeResult with the capture and the updated ledger.

        Raises:
            InvalidAmount, ReservationNotFound, LimitNotConfigured,
            LimitExceeded, NoChargeableInstrument, IdempotencyConflict,
            AuthorizationDeclined, InstrumentDeclined, AuthorizationExpired,
            AuthorizationInvalid, CaptureNotCompleted, GatewayUnavailable.
        """
        require_positive(amount)
        request_data = {"reservation_id": reservation_id, "amount": amount}
        if idempotency_key:
            cached = await self.check_idempotency(idempotency_key, CHARGE_ENDPOINT, request_data)
            if cached is not None:
                return ChargeResult.model_validate({**cached, "replayed": True})

        reservation = await self._read_reservation(reservation_id)
        plan = decide_charge_path(reservation, amount)

        async def execute() -> Tuple[CaptureResult, str, Optional[str]]:
            demoted_from = None
            if plan.path == ChargePath.AUTH_CAPTURE:
                try:
                    capture = await self._auth_capture(
                        reservation,
                        amount,
                        plan,
                        self._gateway_key("authcap", reservation_id, idempotency_key),
                    )
                    return capture, CaptureVia.AUTH_CAPTURE.value, None
                except (AuthorizationExpired, AuthorizationInvalid, AlreadyCaptured) as e:
                    demote = has_active_vault_token(reservation)
                    await self._reject_authorization(reservation, e, actor, demote)
                    if not demote:
                        raise
                demoted_from = CaptureVia.AUTH_CAPTURE.value
            elif plan.reason == REASON_AUTH_EXPIRED:
                # Known expired locally: no capture attempt, but the fallback is still audited
                await self._retire_authorization(
                    reservation,
                    AuthorizationStatus.EXPIRED.value,
                    f"authorization expired at {reservation.auth_expires_at.isoformat()}",
                    actor,
                    demote=True,
                )
                demoted_from = CaptureVia.AUTH_CAPTURE.value

            capture = await self._mit_capture(
                reservation, amount, self._gateway_key("mit", reservation_id, idempotency_key)
            )
            return capture, CaptureVia.MIT.value, demoted_from

        gateway_key = self._gateway_key("charge", reservation_id, idempotency_key)
        capture, via, demoted_from, snapshot = await self._run_reserved(
            reservation, amount, execute, gateway_key, actor
        )

        result = ChargeResult(
            reservation_id=reservation_id,
            capture_ref=capture.capture_ref,
            via=via,
            status=capture.status,
            amount=capture.amount,
            currency=capture.currency or reservation.base_currency,
            invoice_ref=capture.invoice_ref,
            gateway_order_ref=capture.order_ref,
            decision_reason=plan.reason,
            demoted_from=demoted_from,
            ledger=snapshot,
        )
        if idempotency_key:
            await self._remember(idempotency_key, CHARGE_ENDPOINT, reservation_id, request_data, result)

        logger.info(
            f"Charged {amount} on reservation {reservation_id} via {via} "
            f"(capture {capture.capture_ref})"
        )
        return result

    async def capture_approved_order(
        self,
        reservation_id: str,
        order_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> ChargeResult:
        """Capture an order the guest approved through a payment link.

        Args:
            reservation_id: Reservation the order pays for.
            order_ref: Gateway order the guest approved.
            amount: Amount to capture; the order amount when omitted.
            idempotency_key: Caller key; repeating it returns the first result.
            actor: Who triggered the capture.

        Returns:
            ChargeResult with ``via`` LINK_CAPTURE.
        """
        if amount is None:
            order = await self.caller.read(self.gateway.get_order, order_ref)
            amount = order.amount
        require_positive(amount)
        request_data = {"reservation_id": reservation_id, "order_ref": order_ref, "amount": amount}
        if idempotency_key:
            cached = await self.check_idempotency(idempotency_key, LINK_CAPTURE_ENDPOINT, request_data)
            if cached is not None:
                return ChargeResult.model_validate({**cached, "replayed": True})

        reservation = await self._read_reservation(reservation_id)
        gateway_key = self._gateway_key("linkcap", reservation_id, idempotency_key)

        async def execute() -> Tuple[CaptureResult, str, Optional[str]]:
            async def attempt(invoice_ref: str, key: str) -> CaptureResult:
                return await self.caller.call(
                    self.gateway.capture,
                    order_ref,
                    amount,
                    reservation.base_currency,
                    key,
                    invoice_ref,
                    True,
                )

            # The guest's order pays for exactly this charge, whichever request captured it
            capture = await self._attempt_capture(
                attempt, gateway_key, reservation.confirmation_number, order_ref, match_invoice=False
            )
            return capture, CaptureVia.LINK_CAPTURE.value, None

        capture, via, _, snapshot = await self._run_reserved(
            reservation, amount, execute, gateway_key, actor
        )
        result = ChargeResult(
            reservation_id=reservation_id,
            capture_ref=capture.capture_ref,
            via=via,
            status=capture.status,
            amount=capture.amount,
            currency=capture.currency or reservation.base_currency,
            invoice_ref=capture.invoice_ref,
            gateway_order_ref=capture.order_ref or order_ref,
            ledger=snapshot,
        )
        if idempotency_key:
            await self._remember(
                idempotency_key, LINK_CAPTURE_ENDPOINT, reservation_id, request_data, result
            )
        logger.info(f"Captured approved order {order_ref} for reservation {reservation_id}")
        return result

    async def resolve_pending_charge(
        self,
        reservation_id: str,
        amount: int,
        invoice_ref: str,
        order_ref: Optional[str] = None,
        via: str = CaptureVia.MIT.value,
        actor: str = "system",
    ) -> Dict[str, Any]:
        """Settle capacity left pending by a capture whose outcome was unknown.

        Args:
            reservation_id: Reservation with the pending amount.
            amount: The pending amount of that capture.
            invoice_ref: Invoice ref of the lost capture.
            order_ref: Order to read; looked up by invoice ref when omitted.
            via: How the lost capture was executed.
            actor: Who resolved it.

        Returns:
            Dict with ``captured`` and the updated ``ledger``.
        """
        require_positive(amount)
        reservation = await self._read_reservation(reservation_id)
        if reservation.pending_total < amount:
            raise LedgerStateError(
                f"Reservation {reservation_id} has only {reservation.pending_total} pending",
                reservation_id=reservation_id,
            )
        capture = await self._resolve_lost_capture(order_ref, invoice_ref)
        if capture is None or capture.status != CaptureStatus.COMPLETED.value:
            snapshot = await self.ledger.finalize(reservation_id, amount, success=False)
            return {"captured": False, "ledger": snapshot}
        snapshot = await self._finalize_capture(
            reservation, amount, capture, via, f"resolve:{invoice_ref}", actor
        )
        return {"captured": True, "capture_ref": capture.capture_ref, "ledger": snapshot}

    # Authorization and vaulting

    async def authorize_reservation(
        self,
        reservation_id: str,
        amount: Optional[int] = None,
        vault_token_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> LedgerSnapshot:
        """Place the initial authorization for a reservation.

        Opens the ledger bounds with the authorized amount when no capture
        limit is configured yet. Repeating the call while a capturable
        authorization exists changes nothing.

        Args:
            reservation_id: Reservation to authorize.
            amount: Amount to authorize; the capture limit or stay total when omitted.
            vault_token_id: Stored instrument to use; the reservation's when omitted.
            idempotency_key: Caller key forwarded to the gateway.
            actor: Who triggered the authorization.

        Returns:
            Ledger snapshot including the initial authorization.
        """
        reservation = await self._read_reservation(reservation_id)
        if reservation.has_authorization and reservation.auth_status in CAPTURABLE_AUTH_STATUSES:
            logger.info(f"Reservation {reservation_id} already holds authorization {reservation.auth_ref}")
            return await self.ledger.snapshot(reservation_id)

        amount = amount or reservation.capture_limit or reservation.total_amount
        require_positive(amount)

        token = reservation.vault_token
        if vault_token_id is not None:
            token = await self.vault_tokens.get_by_id(vault_token_id)
            await self.session.commit()
        if token is None or not token.is_active:
            raise NoChargeableInstrument(REASON_NO_VAULT)

        descriptor = build_charge_descriptor(
            reservation, amount, vault_token=token, merchant_initiated=False
        )
        order = await self.caller.call(
            self.gateway.create_order,
            descriptor,
            self._gateway_key("authorize", reservation_id, idempotency_key),
            "AUTHORIZE",
        )
        try:
            auth = await self.caller.call(self.gateway.authorize, order.order_ref)
        except AuthorizationDeclined as e:
            await self._record_decline(reservation, e, actor)
            raise

        async def changes() -> None:
            await self.reservations.set_authorization(
                reservation_id,
                order_ref=order.order_ref,
                auth_ref=auth.auth_ref,
                status=auth.status,
                amount=auth.amount,
                expires_at=auth.expires_at,
                network_ref=auth.network_ref,
            )
            if reservation.vault_token_id != token.id:
                await self.reservations.attach_vault_token(reservation_id, token.id)
            if reservation.captured_total == 0:
                await self.reservations.set_charge_state(reservation_id, ChargeState.AUTHORIZED.value)
            await self.audit.create(
                field="authorization",
                before=reservation.authorization_dict(),
                after={"auth_ref": auth.auth_ref, "status": auth.status, "amount": auth.amount},
                actor=actor,
                reservation_id=reservation_id,
                hotel_id=reservation.hotel_id,
            )

        await self._commit_changes(changes)
        logger.info(f"Authorized {auth.amount} on reservation {reservation_id} ({auth.auth_ref})")

        if reservation.capture_limit is None:
            return await self.ledger.open_bounds(
                reservation_id, auth.amount, auth.currency or reservation.base_currency, actor=actor
            )
        return await self.ledger.snapshot(reservation_id)

    async def void_authorization(self, reservation_id: str, actor: str = "system") -> LedgerSnapshot:
        """Release the initial authorization hold."""
        reservation = await self._read_reservation(reservation_id)
        if not reservation.auth_ref or reservation.auth_status not in CAPTURABLE_AUTH_STATUSES:
            raise LedgerStateError(
                f"Reservation {reservation_id} has no open authorization",
                reservation_id=reservation_id,
            )
        auth = await self.caller.call(self.gateway.void, reservation.auth_ref)

        async def changes() -> None:
            await self.reservations.set_authorization_status(
                reservation_id, AuthorizationStatus.VOIDED.value
            )
            if reservation.charge_state == ChargeState.AUTHORIZED.value:
                await self.reservations.set_charge_state(reservation_id, ChargeState.NOT_PAID.value)
            await self.audit.create(
                field="authorization",
                before={"auth_ref": reservation.auth_ref, "status": reservation.auth_status},
                after={"auth_ref": auth.auth_ref, "status": AuthorizationStatus.VOIDED.value},
                actor=actor,
                reservation_id=reservation_id,
                hotel_id=reservation.hotel_id,
            )

        await self._commit_changes(changes)
        logger.info(f"Voided authorization {reservation.auth_ref} on reservation {reservation_id}")
        return await self.ledger.snapshot(reservation_id)

    async def attach_vault_token(
        self,
        reservation_id: str,
        setup_token: str,
        actor: str = "system",
    ) -> Dict[str, Any]:
        """Exchange a gateway setup token and store the vaulted instrument.

        Returns:
            The stored vault token (never the raw gateway reference).
        """
        reservation = await self._read_reservation(reservation_id)
        vaulted = await self.caller.call(self.gateway.exchange_vault_setup_token, setup_token)

        try:
            token = await self.vault_tokens.get_by_gateway_ref(vaulted.gateway_token_ref)
            if token is None:
                token = await self.vault_tokens.create(
                    gateway_token_ref=vaulted.gateway_token_ref,
                    owner_ref=vaulted.owner_ref,
                    brand=vaulted.brand,
                    last4=vaulted.last4,
                    expiry=vaulted.expiry,
                )
            if reservation.vault_token_id != token.id:
                await self.reservations.attach_vault_token(reservation_id, token.id)
                await self.audit.create(
                    field="vault_token",
                    before=reservation.vault_token_id,
                    after=token.id,
                    actor=actor,
                    reservation_id=reservation_id,
                    hotel_id=reservation.hotel_id,
                )
            data = token.to_dict()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Attached vault token {token.id} to reservation {reservation_id}")
        return data
