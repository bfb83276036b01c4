"""Per-reservation capture ledger.

Counters change only through ``reserve`` and ``finalize``. Each public
method is one database transaction that ends in a commit, so no lock is
held while the caller talks to the gateway.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import (
    Reservation,
    CaptureRecord,
    ReservationRepository,
    CaptureRecordRepository,
    BoundsHistoryRepository,
    AuditLogRepository,
)
from .exceptions import (
    ReservationNotFound,
    LimitExceeded,
    LimitNotConfigured,
    LimitUpdateRejected,
    LedgerStateError,
    InvalidAmount,
)
from .money import require_positive

logger = logging.getLogger(__name__)


class LedgerSnapshot(BaseModel):
    """Point-in-time view of a reservation's ledger."""
    reservation_id: str
    confirmation_number: str
    base_currency: str
    limit: Optional[int] = Field(None, description="Capture limit in minor units; None when not configured")
    captured_total: int
    pending_total: int
    remaining: Optional[int] = None
    charge_state: str
    payment_label: str
    charge_count: int = 0
    initial_authorization: Optional[Dict[str, Any]] = None
    captures: List[Dict[str, Any]] = Field(default_factory=list)
    bounds_history: List[Dict[str, Any]] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "LedgerSnapshot":
        return cls(
            reservation_id=reservation.id,
            confirmation_number=reservation.confirmation_number,
            base_currency=reservation.base_currency,
            limit=reservation.capture_limit,
            captured_total=reservation.captured_total,
            pending_total=reservation.pending_total,
            remaining=reservation.remaining_capacity,
            charge_state=reservation.charge_state,
            payment_label=reservation.payment_label,
            charge_count=reservation.charge_count,
            initial_authorization=reservation.authorization_dict(),
            captures=[c.to_dict() for c in reservation.captures],
            bounds_history=[b.to_dict() for b in reservation.bounds_history],
        )


class CaptureLedger:
    """Atomic reserve/finalize bookkeeping for one database session."""
    
    def __init__(self, session: AsyncSession):
        """Initialize the ledger with a database session.
        
        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
        self.reservations = ReservationRepository(session)
        self.captures = CaptureRecordRepository(session)
        self.bounds = BoundsHistoryRepository(session)
        self.audit = AuditLogRepository(session)
    
    async def _load(self, reservation_id: str) -> Reservation:
        reservation = await self.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise ReservationNotFound(
                f"Reservation {reservation_id} not found", reservation_id=reservation_id
            )
        return reservation
    
    async def _snapshot_and_commit(self, reservation_id: str) -> LedgerSnapshot:
        snapshot = LedgerSnapshot.from_reservation(await self._load(reservation_id))
        await self.session.commit()
        return snapshot
    
    async def snapshot(self, reservation_id: str) -> LedgerSnapshot:
        """Read the ledger of a reservation.
        
        Raises:
            ReservationNotFound: If the reservation does not exist.
        """
        try:
            return await self._snapshot_and_commit(reservation_id)
        except Exception:
            await self.session.rollback()
            raise
    
    async def reserve(self, reservation_id: str, amount: int) -> LedgerSnapshot:
        """Hold ``amount`` of capacity for an in-flight capture.
        
        Args:
            reservation_id: Reservation to charge.
            amount: Amount in minor units.
        
        Returns:
            Ledger snapshot including the new pending amount.
        
        Raises:
            InvalidAmount: If amount is not a positive integer.
            ReservationNotFound: If the reservation does not exist.
            LimitNotConfigured: If the reservation has no capture limit.
            LimitExceeded: If the amount does not fit under the limit.
        """
        require_positive(amount)
        try:
            reserved = await self.reservations.reserve_pending(reservation_id, amount)
            if reserved:
                snapshot = await self._snapshot_and_commit(reservation_id)
                logger.info(
                    f"Reserved {amount} on reservation {reservation_id} "
                    f"(pending={snapshot.pending_total}, remaining={snapshot.remaining})"
                )
                return snapshot
            
            reservation = await self._load(reservation_id)
            limit = reservation.capture_limit
            remaining = max(0, reservation.remaining_capacity or 0)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        
        if limit is None:
            logger.warning(f"Reservation {reservation_id} has no capture limit configured")
            raise LimitNotConfigured(
                f"Capture limit missing on reservation {reservation_id}",
                reservation_id=reservation_id,
            )
        logger.info(
            f"Reserve of {amount} on reservation {reservation_id} rejected; remaining {remaining}"
        )
        raise LimitExceeded(remaining)
    
    async def finalize(
        self,
        reservation_id: str,
        amount: int,
        success: bool,
        capture_record: Optional[CaptureRecord] = None,
        actor: str = "system",
    ) -> LedgerSnapshot:
        """Settle a previous ``reserve``.
        
        On success the pending amount moves to captured and the capture
        record is stored in the same transaction. A capture ref that is
        already recorded is never counted twice; the pending amount is only
        released.
        
        Args:
            reservation_id: Reservation that was reserved against.
            amount: The amount passed to ``reserve``.
            success: Whether the gateway completed the capture.
            capture_record: Unsaved CaptureRecord for a successful capture.
            actor: Who triggered the capture, for the audit log.
        
        Returns:
            Ledger snapshot after settlement.
        """
        require_positive(amount)
        if success and capture_record is None:
            raise LedgerStateError("A successful finalize needs a capture record")
        
        if not success:
            return await self._release(reservation_id, amount)
        
        try:
            existing = await self.captures.get_by_capture_ref(capture_record.capture_ref)
            if existing is not None:
                await self.session.commit()
                logger.warning(
                    f"Capture {capture_record.capture_ref} already recorded; releasing {amount} only"
                )
                return await self._release(reservation_id, amount)
            
            counted = capture_record.amount
            if counted != amount:
                logger.warning(
                    f"Gateway captured {counted} for a reserve of {amount} on "
                    f"reservation {reservation_id}"
                )
                if counted > amount:
                    counted = amount
                if counted <= 0:
                    raise InvalidAmount(f"Captured amount must be positive, got {capture_record.amount}")
            
            capture_record.reservation_id = reservation_id
            await self.captures.add(capture_record)
            committed = await self.reservations.commit_pending(
                reservation_id, amount, counted, via=capture_record.via
            )
            if not committed:
                await self._load(reservation_id)
                raise LedgerStateError(
                    f"Reservation {reservation_id} has less than {amount} pending",
                    reservation_id=reservation_id,
                )
            
            reservation = await self._load(reservation_id)
            await self.audit.create(
                field="captured_total",
                before=reservation.captured_total - counted,
                after=reservation.captured_total,
                note=f"{capture_record.via} capture {capture_record.capture_ref}",
                actor=actor,
                reservation_id=reservation_id,
                hotel_id=reservation.hotel_id,
            )
            snapshot = LedgerSnapshot.from_reservation(reservation)
            await self.session.commit()
        except IntegrityError:
            # Another finalize recorded the same capture ref first
            await self.session.rollback()
            logger.warning(
                f"Capture {capture_record.capture_ref} recorded concurrently; releasing {amount} only"
            )
            return await self._release(reservation_id, amount)
        except Exception:
            await self.session.rollback()
            raise
        
        logger.info(
            f"Finalized capture {capture_record.capture_ref} of {counted} on reservation "
            f"{reservation_id} (captured={snapshot.captured_total})"
        )
        return snapshot
    
    async def _release(self, reservation_id: str, amount: int) -> LedgerSnapshot:
        try:
            released = await self.reservations.release_pending(reservation_id, amount)
            if not released:
                await self._load(reservation_id)
                raise LedgerStateError(
                    f"Reservation {reservation_id} has less than {amount} pending",
                    reservation_id=reservation_id,
                )
            snapshot = await self._snapshot_and_commit(reservation_id)
        except Exception:
            await self.session.rollback()
            raise
        logger.info(f"Released {amount} pending on reservation {reservation_id}")
        return snapshot
    
    async def update_limit(
        self,
        reservation_id: str,
        new_limit: int,
        actor: str = "system",
    ) -> LedgerSnapshot:
        """Change the capture limit.
        
        The new limit must cover everything captured plus everything in
        flight, otherwise an in-flight capture could push the reservation
        over it.
        
        Raises:
            LimitUpdateRejected: If the new limit is not positive or too low.
            ReservationNotFound: If the reservation does not exist.
        """
        if isinstance(new_limit, bool) or not isinstance(new_limit, int) or new_limit <= 0:
            raise LimitUpdateRejected(f"Limit must be a positive integer, got {new_limit!r}")
        
        try:
            reservation = await self._load(reservation_id)
            old_limit = reservation.capture_limit
            updated = await self.reservations.set_limit(reservation_id, new_limit)
            if not updated:
                reservation = await self._load(reservation_id)
                reason = (
                    f"New limit {new_limit} is below captured {reservation.captured_total} "
                    f"plus pending {reservation.pending_total}"
                )
                await self.session.commit()
                raise LimitUpdateRejected(reason)
            
            await self.bounds.create(reservation_id, old_limit, new_limit, actor=actor)
            await self.audit.create(
                field="capture_limit",
                before=old_limit,
                after=new_limit,
                actor=actor,
                reservation_id=reservation_id,
                hotel_id=reservation.hotel_id,
            )
            snapshot = await self._snapshot_and_commit(reservation_id)
        except LimitUpdateRejected:
            raise
        except Exception:
            await self.session.rollback()
            raise
        
        logger.info(f"Capture limit of reservation {reservation_id} changed {old_limit} -> {new_limit}")
        return snapshot
    
    async def open_bounds(
        self,
        reservation_id: str,
        limit: int,
        currency: str,
        actor: str = "system",
    ) -> LedgerSnapshot:
        """Configure the capture limit for the first time. No-op when already set."""
        require_positive(limit)
        try:
            reservation = await self._load(reservation_id)
            opened = await self.reservations.open_bounds(reservation_id, limit, currency)
            if opened:
                await self.bounds.create(reservation_id, None, limit, actor=actor)
                await self.audit.create(
                    field="capture_limit",
                    before=None,
                    after=limit,
                    note=f"bounds opened in {currency.upper()}",
                    actor=actor,
                    reservation_id=reservation_id,
                    hotel_id=reservation.hotel_id,
                )
                logger.info(f"Opened bounds {limit} {currency.upper()} on reservation {reservation_id}")
            return await self._snapshot_and_commit(reservation_id)
        except Exception:
            await self.session.rollback()
            raise
