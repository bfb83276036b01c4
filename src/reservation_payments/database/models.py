"""SQLAlchemy models for the reservation payment ledger."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ChargeState(str, enum.Enum):
    """Charge lifecycle of a reservation."""
    NOT_PAID = "NOT_PAID"
    AUTHORIZED = "AUTHORIZED"
    PARTIALLY_CAPTURED = "PARTIALLY_CAPTURED"
    FULLY_CAPTURED = "FULLY_CAPTURED"
    DECLINED = "DECLINED"


class CaptureVia(str, enum.Enum):
    """How a capture was executed against the gateway."""
    AUTH_CAPTURE = "AUTH_CAPTURE"
    MIT = "MIT"
    LINK_CAPTURE = "LINK_CAPTURE"


class CaptureStatus(str, enum.Enum):
    """Canonical gateway capture statuses."""
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    DECLINED = "DECLINED"
    FAILED = "FAILED"


class AuthorizationStatus(str, enum.Enum):
    """Canonical gateway authorization statuses."""
    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    PENDING = "PENDING"
    PARTIALLY_CAPTURED = "PARTIALLY_CAPTURED"
    CAPTURED = "CAPTURED"
    VOIDED = "VOIDED"
    EXPIRED = "EXPIRED"
    DENIED = "DENIED"


# Statuses an authorization can still be captured from.
CAPTURABLE_AUTH_STATUSES = frozenset({
    AuthorizationStatus.CREATED.value,
    AuthorizationStatus.AUTHORIZED.value,
    AuthorizationStatus.PENDING.value,
    AuthorizationStatus.PARTIALLY_CAPTURED.value,
})


class PaymentLabel(str, enum.Enum):
    """Human-facing payment label shown to hotel staff."""
    NOT_PAID = "not paid"
    DEPOSIT_PAID = "deposit paid"
    PAID_ONLINE = "paid online"
    PAID_OFFLINE = "paid offline"


class CommissionStatus(str, enum.Enum):
    DUE = "commission due"
    PAID = "commission paid"


class VaultTokenStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BatchStatus(str, enum.Enum):
    """Status of a reconciliation batch."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NOTHING_TO_RECONCILE = "nothing_to_reconcile"
    FAILED = "failed"


def _load_json(raw: Optional[str]) -> Any:
    if raw:
        return json.loads(raw)
    return None


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class VaultToken(Base):
    """Tokenized reference to a guest's payment instrument.

    Created once from a gateway exchange. Only ``status`` may change.
    """
    __tablename__ = "vault_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    gateway_token_ref: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    owner_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    brand: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    expiry: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)  # YYYY-MM
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=VaultTokenStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == VaultTokenStatus.ACTIVE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_ref": self.owner_ref,
            "brand": self.brand,
            "last4": self.last4,
            "expiry": self.expiry,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Reservation(Base):
    """Ledger-relevant slice of a hotel reservation."""
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    hotel_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    confirmation_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    checkin_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    checkout_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    reservation_status: Mapped[str] = mapped_column(String(50), nullable=False, default="confirmed")

    # Stay price in the hotel's currency, minor units
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ledger bounds; NULL limit means "not configured"
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    capture_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    captured_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    charge_state: Mapped[str] = mapped_column(String(30), nullable=False, default=ChargeState.NOT_PAID.value)
    payment_label: Mapped[str] = mapped_column(String(30), nullable=False, default=PaymentLabel.NOT_PAID.value)
    charge_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_charge_via: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_charge_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Initial authorization (authorize-only checkout)
    auth_order_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    auth_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    auth_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    auth_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    auth_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auth_network_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    auth_capture_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Commission the hotel owes the platform / transfer the platform owes the hotel
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commission_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    commission_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    commission_status: Mapped[str] = mapped_column(String(30), nullable=False, default=CommissionStatus.DUE.value)
    transfer_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    money_transferred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    money_transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    vault_token_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("vault_tokens.id"), nullable=True)

    # Room lines and other free-form reservation details
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    vault_token: Mapped[Optional["VaultToken"]] = relationship("VaultToken", lazy="selectin")
    captures: Mapped[List["CaptureRecord"]] = relationship(
        "CaptureRecord",
        back_populates="reservation",
        order_by="CaptureRecord.created_at",
        lazy="selectin",
    )
    bounds_history: Mapped[List["BoundsChange"]] = relationship(
        "BoundsChange",
        back_populates="reservation",
        order_by="BoundsChange.at",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_reservations_hotel_id", "hotel_id"),
        Index("ix_reservations_hotel_commission", "hotel_id", "commission_paid"),
        Index("ix_reservations_hotel_transfer", "hotel_id", "money_transferred"),
        CheckConstraint("captured_total >= 0", name="ck_reservations_captured_nonneg"),
        CheckConstraint("pending_total >= 0", name="ck_reservations_pending_nonneg"),
    )

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Get details as dictionary."""
        return _load_json(self.details_json)

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        """Set details from dictionary."""
        self.details_json = _dump_json(value)

    @property
    def remaining_capacity(self) -> Optional[int]:
        if self.capture_limit is None:
            return None
        return self.capture_limit - self.captured_total - self.pending_total

    @property
    def has_authorization(self) -> bool:
        return bool(self.auth_ref)

    @property
    def online_due(self) -> int:
        """Net amount owed to the hotel for a card-paid stay."""
        return max(0, self.total_amount - self.commission_amount)

    def authorization_dict(self) -> Optional[Dict[str, Any]]:
        if not self.auth_ref:
            return None
        return {
            "order_ref": self.auth_order_ref,
            "auth_ref": self.auth_ref,
            "status": self.auth_status,
            "amount": self.auth_amount,
            "expires_at": self.auth_expires_at.isoformat() if self.auth_expires_at else None,
            "network_ref": self.auth_network_ref,
            "capture_ref": self.auth_capture_ref,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert reservation ledger state to dictionary representation."""
        return {
            "id": self.id,
            "hotel_id": self.hotel_id,
            "confirmation_number": self.confirmation_number,
            "reservation_status": self.reservation_status,
            "total_amount": self.total_amount,
            "bounds": {"base_currency": self.base_currency, "limit": self.capture_limit},
            "captured_total": self.captured_total,
            "pending_total": self.pending_total,
            "charge_state": self.charge_state,
            "payment_label": self.payment_label,
            "initial_authorization": self.authorization_dict(),
            "commission": {
                "amount": self.commission_amount,
                "paid": self.commission_paid,
                "paid_at": self.commission_paid_at.isoformat() if self.commission_paid_at else None,
                "status": self.commission_status,
            },
            "transfer": {
                "eligible": self.transfer_eligible,
                "transferred": self.money_transferred,
                "transferred_at": (
                    self.money_transferred_at.isoformat() if self.money_transferred_at else None
                ),
            },
            "vault_token_id": self.vault_token_id,
        }


class CaptureRecord(Base):
    """One completed capture against a reservation."""
    __tablename__ = "capture_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id: Mapped[str] = mapped_column(String(36), ForeignKey("reservations.id"), nullable=False, index=True)
    gateway_order_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    capture_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    via: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    network_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    reservation: Mapped["Reservation"] = relationship("Reservation", back_populates="captures")

    __table_args__ = (
        UniqueConstraint("capture_ref", name="uq_capture_records_capture_ref"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway_order_ref": self.gateway_order_ref,
            "capture_ref": self.capture_ref,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "via": self.via,
            "invoice_ref": self.invoice_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class BoundsChange(Base):
    """History of capture limit changes."""
    __tablename__ = "bounds_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id: Mapped[str] = mapped_column(String(36), ForeignKey("reservations.id"), nullable=False, index=True)
    at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    old_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    new_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    reservation: Mapped["Reservation"] = relationship("Reservation", back_populates="bounds_history")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat() if self.at else None,
            "old": self.old_limit,
            "new": self.new_limit,
            "actor": self.actor,
        }


class AuditLogEntry(Base):
    """Append-only record of a ledger, commission or transfer mutation."""
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    hotel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    batch_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    field: Mapped[str] = mapped_column(String(50), nullable=False)
    before_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_at", "at"),
    )

    @property
    def before(self) -> Any:
        return _load_json(self.before_json)

    @before.setter
    def before(self, value: Any) -> None:
        self.before_json = _dump_json(value)

    @property
    def after(self) -> Any:
        return _load_json(self.after_json)

    @after.setter
    def after(self, value: Any) -> None:
        self.after_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "hotel_id": self.hotel_id,
            "batch_key": self.batch_key,
            "at": self.at.isoformat() if self.at else None,
            "actor": self.actor,
            "field": self.field,
            "before": self.before,
            "after": self.after,
            "note": self.note,
        }


class ReconciliationBatch(Base):
    """Record of one reconciliation run for a hotel."""
    __tablename__ = "reconciliation_batches"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=BatchStatus.IN_PROGRESS.value)
    strategy: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    offline_items_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    online_items_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    offline_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    online_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    settled_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tolerance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def offline_items(self) -> List[Dict[str, Any]]:
        return _load_json(self.offline_items_json) or []

    @offline_items.setter
    def offline_items(self, value: List[Dict[str, Any]]) -> None:
        self.offline_items_json = _dump_json(value)

    @property
    def online_items(self) -> List[Dict[str, Any]]:
        return _load_json(self.online_items_json) or []

    @online_items.setter
    def online_items(self, value: List[Dict[str, Any]]) -> None:
        self.online_items_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "hotel_id": self.hotel_id,
            "status": self.status,
            "strategy": self.strategy,
            "offline_items": self.offline_items,
            "online_items": self.online_items,
            "offline_total": self.offline_total,
            "online_total": self.online_total,
            "settled_amount": self.settled_amount,
            "tolerance": self.tolerance,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class IdempotencyKey(Base):
    """Model for storing idempotency keys to support idempotent charge requests."""
    __tablename__ = "idempotency_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    reservation_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("reservations.id"), nullable=True)

    # Store the cached response for replay
    response_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_status_code: Mapped[int] = mapped_column(Integer, nullable=False, default=200)

    # Track the operation that was called
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)

    # Request hash to detect conflicting requests with same key
    request_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_idempotency_keys_expires_at", "expires_at"),
    )

    @property
    def response_data(self) -> Optional[Dict[str, Any]]:
        """Get response data as dictionary."""
        return _load_json(self.response_data_json)

    @response_data.setter
    def response_data(self, value: Optional[Dict[str, Any]]) -> None:
        """Set response data from dictionary."""
        self.response_data_json = _dump_json(value)

    def is_expired(self) -> bool:
        """Check if the idempotency key has expired."""
        return datetime.utcnow() > self.expires_at
