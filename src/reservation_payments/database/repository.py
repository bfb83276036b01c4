"""Repository layer for ledger persistence operations.

Every counter mutation here is a single guarded UPDATE. Callers never read a
row, compute, and write it back: the WHERE clause carries the check and the
row count reports whether it held.
"""

import hashlib
import json
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List, Sequence

from sqlalchemy import select, update, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Reservation,
    CaptureRecord,
    BoundsChange,
    VaultToken,
    AuditLogEntry,
    ReconciliationBatch,
    IdempotencyKey,
    ChargeState,
    PaymentLabel,
    CommissionStatus,
    VaultTokenStatus,
    BatchStatus,
)

logger = logging.getLogger(__name__)

# Default idempotency key TTL in hours
DEFAULT_IDEMPOTENCY_TTL_HOURS = 24


class ReservationRepository:
    """Repository for reservation ledger reads and guarded updates."""
    
    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.
        
        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
    
    async def create(
        self,
        hotel_id: str,
        confirmation_number: str,
        total_amount: int,
        base_currency: str = "USD",
        capture_limit: Optional[int] = None,
        commission_amount: int = 0,
        reservation_status: str = "confirmed",
        hotel_name: Optional[str] = None,
        guest_name: Optional[str] = None,
        guest_email: Optional[str] = None,
        guest_phone: Optional[str] = None,
        checkin_date: Optional[str] = None,
        checkout_date: Optional[str] = None,
        payment_label: str = PaymentLabel.NOT_PAID.value,
        details: Optional[Dict[str, Any]] = None,
    ) -> Reservation:
        """Create a reservation row carrying the ledger fields.
        
        Reservation CRUD belongs to the booking system; this exists so the
        ledger can be seeded by imports, fixtures and the booking adapter.
        """
        reservation = Reservation(
            hotel_id=hotel_id,
            hotel_name=hotel_name,
            confirmation_number=confirmation_number,
            total_amount=total_amount,
            base_currency=base_currency.upper(),
            capture_limit=capture_limit,
            commission_amount=commission_amount,
            reservation_status=reservation_status,
            guest_name=guest_name,
            guest_email=guest_email,
            guest_phone=guest_phone,
            checkin_date=checkin_date,
            checkout_date=checkout_date,
            payment_label=payment_label,
        )
        if details:
            reservation.details = details
        
        self.session.add(reservation)
        await self.session.flush()
        
        logger.info(f"Created reservation {reservation.id} ({confirmation_number}) for hotel {hotel_id}")
        return await self.get_by_id(reservation.id)
    
    async def get_by_id(self, reservation_id: str) -> Optional[Reservation]:
        """Load a reservation, always refreshing it from the database.
        
        Args:
            reservation_id: Reservation ID.
        
        Returns:
            Reservation instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    async def list_by_ids(self, reservation_ids: Sequence[str]) -> List[Reservation]:
        if not reservation_ids:
            return []
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id.in_(list(reservation_ids)))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
    
    async def list_by_hotel(
        self,
        hotel_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        checkout_from: Optional[date] = None,
        checkout_to: Optional[date] = None,
    ) -> List[Reservation]:
        """List reservations, optionally for one hotel and stay statuses.
        
        Args:
            hotel_id: Hotel to filter by; all hotels when None.
            statuses: Reservation statuses to include; all when None.
            checkout_from: Earliest checkout date to include.
            checkout_to: Checkout dates on or after this one are excluded.
        
        Returns:
            Reservations ordered by creation time.
        """
        stmt = select(Reservation)
        if hotel_id is not None:
            stmt = stmt.where(Reservation.hotel_id == hotel_id)
        if statuses:
            stmt = stmt.where(Reservation.reservation_status.in_(list(statuses)))
        # ISO dates stored as text sort chronologically
        if checkout_from is not None:
            stmt = stmt.where(Reservation.checkout_date >= checkout_from.isoformat())
        if checkout_to is not None:
            stmt = stmt.where(Reservation.checkout_date < checkout_to.isoformat())
        result = await self.session.execute(
            stmt.order_by(Reservation.created_at, Reservation.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
    
    async def reserve_pending(self, reservation_id: str, amount: int) -> bool:
        """Add ``amount`` to pending only if it fits under the limit.
        
        Returns:
            True if the row was updated.
        """
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.capture_limit.is_not(None),
                    Reservation.captured_total + Reservation.pending_total + amount
                    <= Reservation.capture_limit,
                )
            )
            .values(pending_total=Reservation.pending_total + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def release_pending(self, reservation_id: str, amount: int) -> bool:
        """Return ``amount`` of pending capacity without capturing it."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.pending_total >= amount,
                )
            )
            .values(pending_total=Reservation.pending_total - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def commit_pending(
        self,
        reservation_id: str,
        amount: int,
        captured_amount: int,
        via: Optional[str] = None,
    ) -> bool:
        """Move ``amount`` out of pending and count ``captured_amount`` as captured.
        
        Charge state and payment label are derived in the same statement so
        concurrent captures never leave a stale label behind.
        """
        new_captured = Reservation.captured_total + captured_amount
        fully_captured = new_captured >= Reservation.capture_limit
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.pending_total >= amount,
                )
            )
            .values(
                pending_total=Reservation.pending_total - amount,
                captured_total=new_captured,
                charge_count=Reservation.charge_count + 1,
                charge_state=case(
                    (fully_captured, ChargeState.FULLY_CAPTURED.value),
                    else_=ChargeState.PARTIALLY_CAPTURED.value,
                ),
                payment_label=case(
                    (fully_captured, PaymentLabel.PAID_ONLINE.value),
                    else_=PaymentLabel.DEPOSIT_PAID.value,
                ),
                transfer_eligible=True,
                last_charge_via=via,
                last_charge_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def open_bounds(self, reservation_id: str, limit: int, currency: str) -> bool:
        """Set the capture limit only if none is configured yet."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.capture_limit.is_(None),
                )
            )
            .values(capture_limit=limit, base_currency=currency.upper())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def set_limit(self, reservation_id: str, new_limit: int) -> bool:
        """Change the limit only if it still covers captured plus pending."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.captured_total + Reservation.pending_total <= new_limit,
                )
            )
            .values(capture_limit=new_limit)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def set_charge_state(self, reservation_id: str, state: str) -> None:
        await self.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(charge_state=state)
            .execution_options(synchronize_session=False)
        )
    
    async def set_authorization(
        self,
        reservation_id: str,
        order_ref: Optional[str],
        auth_ref: str,
        status: str,
        amount: int,
        expires_at: Optional[datetime],
        network_ref: Optional[str] = None,
    ) -> None:
        await self.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(
                auth_order_ref=order_ref,
                auth_ref=auth_ref,
                auth_status=status,
                auth_amount=amount,
                auth_expires_at=expires_at,
                auth_network_ref=network_ref,
            )
            .execution_options(synchronize_session=False)
        )
    
    async def set_authorization_status(
        self,
        reservation_id: str,
        status: str,
        capture_ref: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"auth_status": status}
        if capture_ref:
            values["auth_capture_ref"] = capture_ref
        await self.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    
    async def attach_vault_token(self, reservation_id: str, vault_token_id: str) -> bool:
        result = await self.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(vault_token_id=vault_token_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def set_commission_paid(
        self,
        reservation_id: str,
        paid: bool,
        at: Optional[datetime] = None,
    ) -> bool:
        """Flip the commission flag only if it currently has the other value."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.commission_paid.is_(not paid),
                )
            )
            .values(
                commission_paid=paid,
                commission_paid_at=(at or datetime.utcnow()) if paid else None,
                commission_status=(
                    CommissionStatus.PAID.value if paid else CommissionStatus.DUE.value
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
    
    async def set_money_transferred(
        self,
        reservation_id: str,
        transferred: bool,
        at: Optional[datetime] = None,
    ) -> bool:
        """Flip the transfer flag only if it currently has the other value."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.money_transferred.is_(not transferred),
                )
            )
            .values(
                money_transferred=transferred,
                money_transferred_at=(at or datetime.utcnow()) if transferred else None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CaptureRecordRepository:
    """Repository for capture records."""
    
    def __init__(self, session: AsyncSession):
        self.session = session
    
    async def get_by_capture_ref(self, capture_ref: str) -> Optional[CaptureRecord]:
        result = await self.session.execute(
            select(CaptureRecord).where(CaptureRecord.capture_ref == capture_ref)
        )
        return result.scalar_one_or_none()
    
    async def list_by_reservation(self, reservation_id: str) -> List[CaptureRecord]:
        result = await self.session.execute(
            select(CaptureRecord)
            .where(CaptureRecord.reservation_id == reservation_id)
            .order_by(CaptureRecord.created_at)
        )
        return list(result.scalars().all())
    
    async def add(self, record: CaptureRecord) -> CaptureRecord:
        self.session.add(record)
        await self.session.flush()
        return record


class BoundsHistoryRepository:
    """Repository for capture limit history."""
    
    def __init__(self, session: AsyncSession):
        self.session = session
    
    async def create(
        self,
        reservation_id: str,
        old_limit: Optional[int],
        new_limit: int,
        actor: Optional[str] = None,
    ) -> BoundsChange:
        change = BoundsChange(
            reservation_id=reservation_id,
            old_limit=old_limit,
            new_limit=new_limit,
            actor=actor,
        )
        self.session.add(change)
        await self.session.flush()
        return change
    
    async def list_by_reservation(self, reservation_id: str) -> List[BoundsChange]:
        result = await self.session.execute(
            select(BoundsChange)
            .where(BoundsChange.reservation_id == reservation_id)
            .order_by(BoundsChange.at)
        )
        return list(result.scalars().all())


class VaultTokenRepository:
    """Repository for vaulted instruments. Tokens are never mutated besides status."""
    
    def __init__(self, session: AsyncSession):
        self.session = session
    
    async def create(
        self,
        gateway_token_ref: str,
        owner_ref: Optional[str] = None,
        brand: Optional[str] = None,
        last4: Optional[str] = None,
        expiry: Optional[str] = None,
    ) -> VaultToken:
        token = VaultToken(
            gateway_token_ref=gateway_token_ref,
            owner_ref=owner_ref,
            brand=brand,
            last4=last4,
            expiry=expiry,
            status=VaultTokenStatus.ACTIVE.value,
        )
        self.session.add(token)
        await self.session.flush()
        logger.info(f"Stored vault token {token.id} ({brand or 'card'} ending {last4 or '????'})")
        return token
    
    async def get_by_id(self, token_id: str) -> Optional[VaultToken]:
        result = await self.session.execute(
            select(VaultToken).where(VaultToken.id == token_id)
        )
        return result.scalar_one_or_none()
    
    async def get_by_gateway_ref(self, gateway_token_ref: str) -> Optional[VaultToken]:
        result = await self.session.execute(
            select(VaultToken).where(VaultToken.gateway_token_ref == gateway_token_ref)
        )
        return result.scalar_one_or_none()
    
    async def deactivate(self, token_id: str) -> bool:
        result = await self.session.execute(
            update(VaultToken)
            .where(
                and_(
                    VaultToken.id == token_id,
                    VaultToken.status == VaultTokenStatus.ACTIVE.value,
                )
            )
            .values(status=VaultTokenStatus.INACTIVE.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class AuditLogRepository:
    """Append-only audit log."""
    
    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.
        
        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
    
    async def create(
        self,
        field: str,
        before: Any = None,
        after: Any = None,
        note: Optional[str] = None,
        actor: str = "system",
        reservation_id: Optional[str] = None,
        hotel_id: Optional[str] = None,
        batch_key: Optional[str] = None,
    ) -> AuditLogEntry:
        """Append an audit entry.
        
        Args:
            field: Logical field that changed (captured_total, via, commission, ...).
            before: Value before the change.
            after: Value after the change.
            note: Free-form explanation.
            actor: Who triggered the change.
            reservation_id: Affected reservation, if any.
            hotel_id: Affected hotel, if any.
            batch_key: Reconciliation batch the change belongs to.
        
        Returns:
            Created AuditLogEntry instance.
        """
        entry = AuditLogEntry(
            field=field,
            note=note,
            actor=actor,
            reservation_id=reservation_id,
            hotel_id=hotel_id,
            batch_key=batch_key,
        )
        entry.before = before
        entry.after = after
        
        self.session.add(entry)
        await self.session.flush()
        
        logger.debug(
            f"Audit {field} for reservation={reservation_id} hotel={hotel_id} "
            f"batch={batch_key}: {before!r} -> {after!r}"
        )
        return entry
    
    async def list_by_reservation(
        self,
        reservation_id: str,
        field: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        stmt = select(AuditLogEntry).where(AuditLogEntry.reservation_id == reservation_id)
        if field is not None:
            stmt = stmt.where(AuditLogEntry.field == field)
        result = await self.session.execute(stmt.order_by(AuditLogEntry.at))
        return list(result.scalars().all())
    
    async def list_by_batch(self, batch_key: str) -> List[AuditLogEntry]:
        result = await self.session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.batch_key == batch_key)
            .order_by(AuditLogEntry.at)
        )
        return list(result.scalars().all())


class ReconciliationBatchRepository:
    """Repository for reconciliation batch records."""
    
    def __init__(self, session: AsyncSession):
        self.session = session
    
    async def create(
        self,
        key: str,
        hotel_id: str,
        strategy: str,
        offline_items: List[Dict[str, Any]],
        online_items: List[Dict[str, Any]],
        offline_total: int,
        online_total: int,
        settled_amount: int,
        tolerance: int,
        actor: Optional[str] = None,
    ) -> ReconciliationBatch:
        batch = ReconciliationBatch(
            key=key,
            hotel_id=hotel_id,
            status=BatchStatus.IN_PROGRESS.value,
            strategy=strategy,
            offline_total=offline_total,
            online_total=online_total,
            settled_amount=settled_amount,
            tolerance=tolerance,
            actor=actor,
        )
        batch.offline_items = offline_items
        batch.online_items = online_items
        self.session.add(batch)
        await self.session.flush()
        return batch
    
    async def get(self, key: str) -> Optional[ReconciliationBatch]:
        result = await self.session.execute(
            select(ReconciliationBatch).where(ReconciliationBatch.key == key)
        )
        return result.scalar_one_or_none()
    
    async def list_by_hotel(self, hotel_id: str, limit: int = 50) -> List[ReconciliationBatch]:
        result = await self.session.execute(
            select(ReconciliationBatch)
            .where(ReconciliationBatch.hotel_id == hotel_id)
            .order_by(ReconciliationBatch.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
    
    async def finish(
        self,
        batch: ReconciliationBatch,
        status: str,
        settled_amount: Optional[int] = None,
    ) -> ReconciliationBatch:
        batch.status = status
        if settled_amount is not None:
            batch.settled_amount = settled_amount
        batch.completed_at = datetime.utcnow()
        await self.session.flush()
        return batch


class IdempotencyKeyRepository:
    """Repository for IdempotencyKey CRUD operations."""
    
    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.
        
        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
    
    @staticmethod
    def compute_request_hash(request_data: Dict[str, Any]) -> str:
        """Compute a hash of the request data for conflict detection.
        
        Args:
            request_data: Request data dictionary.
        
        Returns:
            SHA256 hash of the request data.
        """
        data_str = json.dumps(request_data, sort_keys=True, default=str)
        return hashlib.sha256(data_str.encode()).hexdigest()
    
    async def get_by_key(self, key: str) -> Optional[IdempotencyKey]:
        """Get an idempotency key record by key value.
        
        Args:
            key: The idempotency key string.
        
        Returns:
            IdempotencyKey instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(IdempotencyKey).where(IdempotencyKey.key == key)
        )
        return result.scalar_one_or_none()
    
    async def create(
        self,
        key: str,
        endpoint: str,
        reservation_id: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None,
        response_status_code: int = 200,
        request_hash: Optional[str] = None,
        ttl_hours: int = DEFAULT_IDEMPOTENCY_TTL_HOURS,
    ) -> IdempotencyKey:
        """Create a new idempotency key record.
        
        Args:
            key: The idempotency key string.
            endpoint: The operation that was called.
            reservation_id: Optional associated reservation ID.
            response_data: Optional response data to cache.
            response_status_code: HTTP status code of the response.
            request_hash: Optional hash of the request data.
            ttl_hours: Time-to-live in hours.
        
        Returns:
            Created IdempotencyKey instance.
        """
        expires_at = datetime.utcnow() + timedelta(hours=ttl_hours)
        
        idempotency_key = IdempotencyKey(
            key=key,
            endpoint=endpoint,
            reservation_id=reservation_id,
            response_status_code=response_status_code,
            request_hash=request_hash,
            expires_at=expires_at,
        )
        if response_data:
            idempotency_key.response_data = response_data
        
        self.session.add(idempotency_key)
        await self.session.flush()
        
        logger.debug(f"Created idempotency key {key} for endpoint {endpoint}")
        return idempotency_key
    
    async def check_idempotency(
        self,
        key: str,
        endpoint: str,
        request_data: Dict[str, Any],
    ) -> tuple[Optional[IdempotencyKey], bool]:
        """Check if an idempotency key exists and is valid.
        
        Args:
            key: The idempotency key string.
            endpoint: The operation being called.
            request_data: The request data for conflict detection.
        
        Returns:
            Tuple of (IdempotencyKey or None, is_conflict).
            If IdempotencyKey is returned and is_conflict is False, replay the cached response.
            If is_conflict is True, the request conflicts with a previous request.
            If IdempotencyKey is None, this is a new request.
        """
        existing = await self.get_by_key(key)
        
        if existing is None:
            return None, False
        
        # Check if expired
        if existing.is_expired():
            # Delete expired key and treat as new request
            await self.session.delete(existing)
            await self.session.flush()
            return None, False
        
        # Check for endpoint mismatch
        if existing.endpoint != endpoint:
            logger.warning(
                f"Idempotency key {key} used for different endpoint: "
                f"expected {existing.endpoint}, got {endpoint}"
            )
            return existing, True
        
        # Check for request data conflict
        if existing.request_hash:
            current_hash = self.compute_request_hash(request_data)
            if existing.request_hash != current_hash:
                logger.warning(
                    f"Idempotency key {key} request data mismatch"
                )
                return existing, True
        
        # Valid cached response
        return existing, False
