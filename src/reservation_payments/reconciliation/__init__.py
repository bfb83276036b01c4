"""Automatic reconciliation of hotel money flows.

Nets, per hotel, the commission hotels owe on offline-paid stays against
the transfers the platform owes on card-paid stays, and marks the matched
reservations settled on both sides.

Features:
- Exact subset-sum matching for small batches, greedy fallback at scale
- Dry-run planning with no writes
- Per-reservation guarded updates that are safe to re-run
- JSON, CSV and text reports
"""

from .models import (
    ReconciliationStatus,
    SelectionStrategy,
    ReconciliationItem,
    PoolSelection,
    ReconciliationPlan,
    ReconciliationResult,
    ReconciliationRequest,
)
from .reconciler import Reconciler, select_exact, select_greedy, trim_to_tolerance
from .service import ReconciliationService
from .report import ReportGenerator

__all__ = [
    # Models
    "ReconciliationStatus",
    "SelectionStrategy",
    "ReconciliationItem",
    "PoolSelection",
    "ReconciliationPlan",
    "ReconciliationResult",
    "ReconciliationRequest",
    # Core Components
    "Reconciler",
    "select_exact",
    "select_greedy",
    "trim_to_tolerance",
    "ReconciliationService",
    "ReportGenerator",
]
