"""Choose how a post-stay charge is executed."""

import enum
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .database import Reservation, CaptureVia, CAPTURABLE_AUTH_STATUSES
from .exceptions import NoChargeableInstrument

logger = logging.getLogger(__name__)

REASON_EXCEEDS_AUTH = "amount exceeds remaining authorization"
REASON_AUTH_EXPIRED = "authorization expired"
REASON_NO_AUTH = "no valid authorization to capture"
REASON_NO_VAULT = "no vaulted payment method"


class ChargePath(str, enum.Enum):
    AUTH_CAPTURE = CaptureVia.AUTH_CAPTURE.value
    MIT = CaptureVia.MIT.value


class ChargePlan(BaseModel):
    path: ChargePath
    reason: Optional[str] = None  # why the initial authorization was not used
    remaining_authorization: int = 0


def remaining_authorization(reservation: Reservation) -> int:
    """Authorized amount not yet consumed by captures."""
    if not reservation.auth_amount:
        return 0
    return max(0, reservation.auth_amount - reservation.captured_total)


def authorization_skip_reason(
    reservation: Reservation,
    amount: int,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Return why the initial authorization cannot take ``amount``, or None if it can."""
    now = now or datetime.utcnow()
    if not reservation.auth_ref or reservation.auth_status not in CAPTURABLE_AUTH_STATUSES:
        return REASON_NO_AUTH
    if reservation.auth_expires_at is not None and reservation.auth_expires_at <= now:
        return REASON_AUTH_EXPIRED
    if remaining_authorization(reservation) < amount:
        return REASON_EXCEEDS_AUTH
    return None


def has_active_vault_token(reservation: Reservation) -> bool:
    token = reservation.vault_token
    return token is not None and token.is_active


def decide_charge_path(
    reservation: Reservation,
    amount: int,
    now: Optional[datetime] = None,
) -> ChargePlan:
    """Pick AUTH_CAPTURE or MIT for charging ``amount``.
    
    Args:
        reservation: Reservation with its vault token loaded.
        amount: Amount to charge in minor units.
        now: Clock override for tests.
    
    Returns:
        ChargePlan with the chosen path and, for MIT, the reason the
        initial authorization was skipped.
    
    Raises:
        NoChargeableInstrument: If neither path is available.
    """
    remaining = remaining_authorization(reservation)
    reason = authorization_skip_reason(reservation, amount, now)
    if reason is None:
        return ChargePlan(path=ChargePath.AUTH_CAPTURE, remaining_authorization=remaining)
    
    if has_active_vault_token(reservation):
        logger.info(f"Reservation {reservation.id}: charging via MIT ({reason})")
        return ChargePlan(path=ChargePath.MIT, reason=reason, remaining_authorization=remaining)
    
    if reason == REASON_NO_AUTH:
        reason = f"{reason} and {REASON_NO_VAULT}"
    raise NoChargeableInstrument(reason)
