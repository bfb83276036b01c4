"""Database module for ledger persistence."""

from .models import (
    Base,
    Reservation,
    CaptureRecord,
    BoundsChange,
    VaultToken,
    AuditLogEntry,
    ReconciliationBatch,
    IdempotencyKey,
    ChargeState,
    CaptureVia,
    CaptureStatus,
    AuthorizationStatus,
    CAPTURABLE_AUTH_STATUSES,
    PaymentLabel,
    CommissionStatus,
    VaultTokenStatus,
    BatchStatus,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
)
from .repository import (
    ReservationRepository,
    CaptureRecordRepository,
    BoundsHistoryRepository,
    VaultTokenRepository,
    AuditLogRepository,
    ReconciliationBatchRepository,
    IdempotencyKeyRepository,
)

__all__ = [
    # Models
    "Base",
    "Reservation",
    "CaptureRecord",
    "BoundsChange",
    "VaultToken",
    "AuditLogEntry",
    "ReconciliationBatch",
    "IdempotencyKey",
    "ChargeState",
    "CaptureVia",
    "CaptureStatus",
    "AuthorizationStatus",
    "CAPTURABLE_AUTH_STATUSES",
    "PaymentLabel",
    "CommissionStatus",
    "VaultTokenStatus",
    "BatchStatus",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    # Repositories
    "ReservationRepository",
    "CaptureRecordRepository",
    "BoundsHistoryRepository",
    "VaultTokenRepository",
    "AuditLogRepository",
    "ReconciliationBatchRepository",
    "IdempotencyKeyRepository",
]
