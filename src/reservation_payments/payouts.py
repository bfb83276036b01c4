"""Commission and hotel-transfer bookkeeping."""

import logging
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, Sequence, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from .database import (
    Reservation,
    ReservationRepository,
    AuditLogRepository,
    CommissionStatus,
    PaymentLabel,
)
from .exceptions import ReservationNotFound, NoEligibleReservations

logger = logging.getLogger(__name__)

# Stays whose money flows can be settled with the hotel.
ELIGIBLE_STATUSES = ("checked_out", "early_checked_out", "inhouse")
# Stays whose commission can be marked paid by hand.
CHECKED_OUT_STATUSES = ("checked_out", "early_checked_out")

CHANNEL_ONLINE = "online"
CHANNEL_OFFLINE = "offline"

TRANSFER_DONE = "transferred"
TRANSFER_PENDING = "not_transferred"
TRANSFER_STATUSES = (TRANSFER_DONE, TRANSFER_PENDING)


def payment_channel(reservation: Reservation) -> str:
    """Online when the platform collected card money, offline otherwise."""
    if reservation.captured_total > 0 or reservation.payment_label in (
        PaymentLabel.PAID_ONLINE.value,
        PaymentLabel.DEPOSIT_PAID.value,
    ):
        return CHANNEL_ONLINE
    return CHANNEL_OFFLINE


def offline_commission_due(reservation: Reservation) -> int:
    """Commission the hotel still owes for a stay it collected itself."""
    if payment_channel(reservation) != CHANNEL_OFFLINE or reservation.commission_paid:
        return 0
    return max(0, reservation.commission_amount)


def online_transfer_due(reservation: Reservation) -> int:
    """Net amount the platform still owes the hotel for a card-paid stay."""
    if payment_channel(reservation) != CHANNEL_ONLINE:
        return 0
    if not reservation.transfer_eligible or reservation.money_transferred:
        return 0
    return reservation.online_due


def _commission_payable(reservation: Reservation, hotel_id: str) -> bool:
    return (
        reservation.hotel_id == hotel_id
        and reservation.reservation_status in CHECKED_OUT_STATUSES
        and payment_channel(reservation) == CHANNEL_OFFLINE
    )


def _collect(reservations: Iterable[Reservation]) -> Dict[str, int]:
    items = list(reservations)
    total = sum(r.total_amount for r in items)
    commission = sum(r.commission_amount for r in items)
    return {
        "count": len(items),
        "total_amount": total,
        "commission_amount": commission,
        "net_amount": total - commission,
    }


def _commission_state(paid: bool) -> Dict[str, Any]:
    return {
        "paid": paid,
        "status": CommissionStatus.PAID.value if paid else CommissionStatus.DUE.value,
    }


class PayoutService:
    """Manual commission/transfer overrides and payout summaries."""
    
    def __init__(self, session: AsyncSession):
        """Initialize the service with a database session.
        
        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
        self.reservations = ReservationRepository(session)
        self.audit = AuditLogRepository(session)
    
    async def _load(self, reservation_id: str) -> Reservation:
        reservation = await self.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise ReservationNotFound(
                f"Reservation {reservation_id} not found", reservation_id=reservation_id
            )
        return reservation
    
    async def set_commission_status(
        self,
        reservation_id: str,
        paid: bool,
        actor: str = "system",
        note: Optional[str] = None,
        batch_key: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Set the commission flag of one reservation.
        
        Setting the value it already has changes nothing and writes no
        audit entry.
        
        Args:
            reservation_id: Reservation to update.
            paid: Target commission state.
            actor: Who made the change.
            note: Free-form note for the audit entry.
            batch_key: Reconciliation batch the change belongs to.
            at: When the commission was paid; now when omitted.
        
        Returns:
            Dict with the reservation ledger view and whether it changed.
        """
        try:
            reservation = await self._load(reservation_id)
            changed = await self.reservations.set_commission_paid(reservation_id, paid, at=at)
            if changed:
                await self.audit.create(
                    field="commission",
                    before=_commission_state(not paid),
                    after=_commission_state(paid),
                    note=note,
                    actor=actor,
                    reservation_id=reservation_id,
                    hotel_id=reservation.hotel_id,
                    batch_key=batch_key,
                )
                reservation = await self._load(reservation_id)
            data = reservation.to_dict()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        
        if changed:
            logger.info(
                f"Commission of reservation {reservation_id} set to "
                f"{'paid' if paid else 'due'} by {actor}"
            )
        return {"reservation": data, "changed": changed}
    
    async def set_transfer_status(
        self,
        reservation_id: str,
        transferred: bool,
        actor: str = "system",
        note: Optional[str] = None,
        batch_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set the hotel-transfer flag of one reservation. No-op when unchanged."""
        try:
            reservation = await self._load(reservation_id)
            changed = await self.reservations.set_money_transferred(reservation_id, transferred)
            if changed:
                await self.audit.create(
                    field="money_transferred",
                    before=not transferred,
                    after=transferred,
                    note=note,
                    actor=actor,
                    reservation_id=reservation_id,
                    hotel_id=reservation.hotel_id,
                    batch_key=batch_key,
                )
                reservation = await self._load(reservation_id)
            data = reservation.to_dict()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        
        if changed:
            logger.info(
                f"Transfer flag of reservation {reservation_id} set to {transferred} by {actor}"
            )
        return {"reservation": data, "changed": changed}
    
    async def mark_commission_paid(
        self,
        reservation_ids: Sequence[str],
        hotel_id: str,
        actor: str = "system",
        note: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Mark several reservations' commission as paid, e.g. after a bank transfer.
        
        Only checked-out stays of ``hotel_id`` whose money the hotel
        collected itself qualify; every other id is reported as excluded
        and left untouched.
        
        Args:
            reservation_ids: Reservations to mark.
            hotel_id: Hotel the commission was paid by.
            actor: Who made the change.
            note: Free-form note for the audit entries.
            paid_at: When the hotel paid; now when omitted.
        
        Returns:
            Dict with per-reservation results, updated and excluded ids,
            and the payment time.
        
        Raises:
            NoEligibleReservations: If none of the ids qualifies.
        """
        ids = list(dict.fromkeys(reservation_ids))
        found = {r.id: r for r in await self.reservations.list_by_ids(ids)}
        await self.session.commit()
        
        eligible = [rid for rid in ids if rid in found and _commission_payable(found[rid], hotel_id)]
        excluded = [rid for rid in ids if rid not in eligible]
        if not eligible:
            raise NoEligibleReservations(
                "No reservations qualified (checked-out offline stays of this hotel)",
                excluded_ids=excluded,
            )
        
        paid_at = paid_at or datetime.utcnow()
        if paid_at.tzinfo is not None:
            # Stored as naive UTC
            paid_at = paid_at.astimezone(timezone.utc).replace(tzinfo=None)
        results = []
        for reservation_id in eligible:
            outcome = await self.set_commission_status(
                reservation_id, True, actor=actor, note=note or "manual override", at=paid_at
            )
            results.append({"reservation_id": reservation_id, "changed": outcome["changed"]})
        
        if excluded:
            logger.warning(f"Commission mark-paid for hotel {hotel_id} excluded {', '.join(excluded)}")
        return {
            "hotel_id": hotel_id,
            "results": results,
            "updated_ids": [r["reservation_id"] for r in results if r["changed"]],
            "excluded_ids": excluded,
            "paid_at": paid_at.isoformat(),
            "note": note,
        }
    
    async def list_candidates(
        self,
        hotel_id: Optional[str] = None,
        channel: Optional[str] = None,
        commission_paid: Optional[bool] = None,
        transfer_status: Optional[str] = None,
        checkout_from: Optional[date] = None,
        checkout_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """List settleable reservations for the payouts screen.
        
        Args:
            hotel_id: Restrict to one hotel; all hotels when None.
            channel: ``online`` or ``offline``; both when None.
            commission_paid: Keep only stays with this commission flag.
            transfer_status: ``transferred`` or ``not_transferred``; online stays only.
            checkout_from: Earliest checkout date to include.
            checkout_to: Checkout dates on or after this one are excluded.
            page: 1-based page number.
            page_size: Items per page.
        
        Returns:
            Dict with the page of reservations, pagination info and a
            summary over every matching reservation.
        """
        if channel not in (None, CHANNEL_ONLINE, CHANNEL_OFFLINE):
            raise ValueError(f"Unknown payment channel: {channel}")
        if transfer_status not in (None,) + TRANSFER_STATUSES:
            raise ValueError(f"Unknown transfer status: {transfer_status}")
        
        reservations = await self.reservations.list_by_hotel(
            hotel_id,
            statuses=ELIGIBLE_STATUSES,
            checkout_from=checkout_from,
            checkout_to=checkout_to,
        )
        await self.session.commit()
        
        matching = []
        for r in reservations:
            r_channel = payment_channel(r)
            if channel is not None and r_channel != channel:
                continue
            if commission_paid is not None and r.commission_paid != commission_paid:
                continue
            if transfer_status is not None:
                if r_channel != CHANNEL_ONLINE:
                    continue
                if r.money_transferred != (transfer_status == TRANSFER_DONE):
                    continue
            matching.append(r)
        
        # Newest checkout first
        matching.sort(key=lambda r: (r.checkout_date or "", r.created_at), reverse=True)
        
        page = max(1, page)
        page_size = max(1, page_size)
        total = len(matching)
        start = (page - 1) * page_size
        items = []
        for r in matching[start:start + page_size]:
            data = r.to_dict()
            data["payment_channel"] = payment_channel(r)
            items.append(data)
        
        summary = _collect(matching)
        summary["offline_count"] = sum(1 for r in matching if payment_channel(r) == CHANNEL_OFFLINE)
        summary["online_count"] = total - summary["offline_count"]
        return {
            "hotel_id": hotel_id,
            "filter": {
                "channel": channel,
                "commission_paid": commission_paid,
                "transfer_status": transfer_status,
                "checkout_from": checkout_from.isoformat() if checkout_from else None,
                "checkout_to": checkout_to.isoformat() if checkout_to else None,
            },
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": max(1, -(-total // page_size)),
            },
            "summary": summary,
            "reservations": items,
        }
    
    async def payout_overview(self, hotel_id: Optional[str] = None) -> Dict[str, Any]:
        """Summarize pending and settled amounts for both money flows.
        
        Args:
            hotel_id: Restrict to one hotel; all hotels when None.
        
        Returns:
            Dict with ``pending`` and ``paid`` sections per channel, plus
            the amounts reconciliation would net.
        """
        reservations = await self.reservations.list_by_hotel(hotel_id, statuses=ELIGIBLE_STATUSES)
        await self.session.commit()
        
        offline = [r for r in reservations if payment_channel(r) == CHANNEL_OFFLINE]
        online = [r for r in reservations if payment_channel(r) == CHANNEL_ONLINE]
        pending_offline = [r for r in offline if not r.commission_paid]
        paid_offline = [r for r in offline if r.commission_paid]
        transferred = [r for r in online if r.money_transferred]
        not_transferred = [r for r in online if not r.money_transferred]
        
        return {
            "hotel_id": hotel_id,
            "pending": {
                "offline": _collect(pending_offline),
                "online": _collect(not_transferred),
                "all": _collect(r for r in reservations if not r.commission_paid),
            },
            "paid": {
                "offline": _collect(paid_offline),
                "online": _collect(transferred),
                "all": _collect(r for r in reservations if r.commission_paid),
                "transfers": {
                    "transferred": len(transferred),
                    "not_transferred": len(not_transferred),
                },
            },
            "reconcilable": {
                "offline_commission_due": sum(offline_commission_due(r) for r in reservations),
                "online_transfer_due": sum(online_transfer_due(r) for r in reservations),
            },
        }
