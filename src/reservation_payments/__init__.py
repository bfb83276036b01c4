# reservation_payments package
__version__ = "0.1.0"

from .config import Settings, get_settings
from .database import (
    Reservation,
    CaptureRecord,
    VaultToken,
    AuditLogEntry,
    ReconciliationBatch,
    ChargeState,
    CaptureVia,
    init_db,
    close_db,
    get_db,
)
from .exceptions import PaymentsError
from .ledger import CaptureLedger, LedgerSnapshot
from .decision import ChargePath, ChargePlan, decide_charge_path
from .services import ChargeService, ChargeResult, LedgerService
from .payouts import PayoutService

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    ReconciliationResult,
    ReconciliationPlan,
    ReconciliationStatus,
    Reconciler,
    ReportGenerator,
)
