"""Build the gateway-facing description of a reservation charge."""

import uuid
import hashlib
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from .database import Reservation, VaultToken
from .gateway import ChargeDescriptor, LineItem, StoredCredential
from .money import allocate_proportionally, require_positive

logger = logging.getLogger(__name__)

# Gateways cap description lengths; keep well inside the common 127-char limit.
MAX_DESCRIPTION_LENGTH = 127
MAX_ITEM_NAME_LENGTH = 127


def build_invoice_ref(
    confirmation_number: str,
    now: Optional[datetime] = None,
    key: Optional[str] = None,
) -> str:
    """Invoice ref for a charge attempt.

    With a gateway idempotency key the ref is derived from the key, so the
    same key always describes the same request. Without one it is unique.
    """
    if key is not None:
        return f"RSV-{confirmation_number}-{hashlib.sha256(key.encode()).hexdigest()[:16]}"
    now = now or datetime.utcnow()
    return f"RSV-{confirmation_number}-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _room_lines(details: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not details:
        return []
    rooms = details.get("rooms") or []
    lines = []
    for room in rooms:
        if not isinstance(room, dict):
            continue
        weight = room.get("total_amount", room.get("amount", 0))
        if isinstance(weight, bool) or not isinstance(weight, int) or weight <= 0:
            continue
        name = room.get("name") or room.get("room_type") or "Room"
        count = room.get("count", 1)
        if isinstance(count, int) and count > 1:
            name = f"{name} x{count}"
        lines.append({"name": name, "weight": weight, "sku": room.get("sku")})
    return lines


def build_line_items(reservation: Reservation, amount: int) -> List[LineItem]:
    """Split ``amount`` across the reservation's room lines.
    
    Shares follow the room totals and always sum to ``amount``; with no
    usable room lines (or fewer units than lines) one stay line is used.
    """
    require_positive(amount)
    sku = f"CNF-{reservation.confirmation_number}"
    lines = _room_lines(reservation.details)
    shares = allocate_proportionally(amount, [line["weight"] for line in lines]) if lines else [amount]
    if len(shares) != len(lines):
        stay_name = f"Hotel stay - {reservation.hotel_name or reservation.hotel_id}"
        return [LineItem(name=stay_name[:MAX_ITEM_NAME_LENGTH], unit_amount=amount, sku=sku)]
    return [
        LineItem(
            name=str(line["name"])[:MAX_ITEM_NAME_LENGTH],
            unit_amount=share,
            sku=line["sku"] or sku,
        )
        for line, share in zip(lines, shares)
    ]


def build_description(reservation: Reservation) -> str:
    hotel = reservation.hotel_name or reservation.hotel_id
    guest = reservation.guest_name or "Guest"
    phone = f" ({reservation.guest_phone})" if reservation.guest_phone else ""
    description = (
        f"Hotel reservation - {hotel} - {reservation.checkin_date or '?'} to "
        f"{reservation.checkout_date or '?'} - Guest {guest}{phone}"
    )
    return description[:MAX_DESCRIPTION_LENGTH]


def build_charge_descriptor(
    reservation: Reservation,
    amount: int,
    vault_token: Optional[VaultToken] = None,
    previous_capture_ref: Optional[str] = None,
    invoice_ref: Optional[str] = None,
    currency: Optional[str] = None,
    merchant_initiated: bool = True,
) -> ChargeDescriptor:
    """Describe a charge of ``amount`` against ``reservation``.
    
    Args:
        reservation: Reservation being charged.
        amount: Amount in minor units.
        vault_token: Stored instrument for a merchant-initiated charge.
        previous_capture_ref: Earlier capture of the same instrument, linked
            in the stored-credential block.
        invoice_ref: Invoice ref to use; a fresh unique one when omitted.
        currency: Charge currency; the ledger's base currency when omitted.
        merchant_initiated: Whether to mark the charge as a stored-credential
            charge made without the guest present.
    
    Returns:
        ChargeDescriptor ready for the gateway.
    """
    require_positive(amount)
    stored_credential = None
    if vault_token is not None and merchant_initiated:
        stored_credential = StoredCredential(previous_transaction_ref=previous_capture_ref)
    return ChargeDescriptor(
        amount=amount,
        currency=(currency or reservation.base_currency).upper(),
        invoice_ref=invoice_ref or build_invoice_ref(reservation.confirmation_number),
        custom_ref=reservation.confirmation_number,
        description=build_description(reservation),
        soft_descriptor=(reservation.hotel_name or "HOTEL")[:22],
        items=build_line_items(reservation, amount),
        vault_token_ref=vault_token.gateway_token_ref if vault_token is not None else None,
        stored_credential=stored_credential,
        payer_name=reservation.guest_name,
        payer_email=reservation.guest_email,
        metadata={
            "reservation_id": reservation.id,
            "hotel_id": reservation.hotel_id,
        },
    )
