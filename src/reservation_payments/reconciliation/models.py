"""Models for hotel commission/transfer reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class ReconciliationStatus(str, enum.Enum):
    """Status of a reconciliation batch."""
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NOTHING_TO_RECONCILE = "nothing_to_reconcile"
    FAILED = "failed"


class SelectionStrategy(str, enum.Enum):
    """How a pool subset was chosen."""
    EXACT = "exact"
    GREEDY = "greedy"
    MIXED = "mixed"


class ReconciliationItem(BaseModel):
    """One reservation's amount in either pool."""
    reservation_id: str = Field(..., description="Reservation ID")
    confirmation_number: Optional[str] = Field(None, description="Reservation confirmation number")
    amount: int = Field(..., description="Amount due in minor units")

    class Config:
        from_attributes = True


class PoolSelection(BaseModel):
    """Subset chosen from one pool."""
    items: List[ReconciliationItem] = Field(default_factory=list)
    strategy: SelectionStrategy = SelectionStrategy.EXACT

    @property
    def total(self) -> int:
        return sum(item.amount for item in self.items)


class ReconciliationPlan(BaseModel):
    """Outcome of the pure compute phase; nothing has been written yet."""
    hotel_id: Optional[str] = Field(None, description="Hotel the pools belong to")
    status: ReconciliationStatus = Field(default=ReconciliationStatus.PLANNED)
    strategy: SelectionStrategy = Field(default=SelectionStrategy.EXACT)
    tolerance: int = Field(default=0, description="Allowed difference between subset sums")
    target: int = Field(default=0, description="min(sum(offline pool), sum(online pool))")

    offline_pool_total: int = Field(default=0)
    online_pool_total: int = Field(default=0)
    offline_items: List[ReconciliationItem] = Field(default_factory=list)
    online_items: List[ReconciliationItem] = Field(default_factory=list)
    offline_total: int = Field(default=0, description="Sum of chosen offline items")
    online_total: int = Field(default=0, description="Sum of chosen online items")
    settled_amount: int = Field(default=0)

    @property
    def remainder(self) -> Dict[str, int]:
        """Amounts left unsettled in each pool, and the unmatched difference."""
        return {
            "offline": self.offline_pool_total - self.offline_total,
            "online": self.online_pool_total - self.online_total,
            "difference": abs(self.offline_total - self.online_total),
        }

    @property
    def has_overlap(self) -> bool:
        return self.settled_amount > 0


class ReconciliationResult(BaseModel):
    """Result of a reconciliation run for one hotel."""
    batch_key: Optional[str] = Field(None, description="Batch key; None for dry runs")
    hotel_id: str
    status: ReconciliationStatus
    strategy: SelectionStrategy = SelectionStrategy.EXACT
    tolerance: int = 0
    dry_run: bool = False
    settled_amount: int = 0
    offline_items: List[ReconciliationItem] = Field(default_factory=list)
    online_items: List[ReconciliationItem] = Field(default_factory=list)
    offline_total: int = 0
    online_total: int = 0
    remainder: Dict[str, int] = Field(default_factory=dict)
    skipped: List[str] = Field(
        default_factory=list,
        description="Reservations settled by someone else between plan and write",
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_plan(
        cls,
        plan: ReconciliationPlan,
        batch_key: Optional[str] = None,
        dry_run: bool = False,
    ) -> "ReconciliationResult":
        return cls(
            batch_key=batch_key,
            hotel_id=plan.hotel_id or "",
            status=plan.status,
            strategy=plan.strategy,
            tolerance=plan.tolerance,
            dry_run=dry_run,
            settled_amount=plan.settled_amount,
            offline_items=plan.offline_items,
            online_items=plan.online_items,
            offline_total=plan.offline_total,
            online_total=plan.online_total,
            remainder=plan.remainder,
        )

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return the result without the per-item lists."""
        return {
            "batch_key": self.batch_key,
            "hotel_id": self.hotel_id,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "tolerance": self.tolerance,
            "dry_run": self.dry_run,
            "settled_amount": self.settled_amount,
            "statistics": {
                "offline_count": len(self.offline_items),
                "online_count": len(self.online_items),
                "offline_total": self.offline_total,
                "online_total": self.online_total,
                "skipped": len(self.skipped),
            },
            "remainder": self.remainder,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete result including chosen items."""
        result = self.to_summary_dict()
        result["offline_items"] = [i.model_dump() for i in self.offline_items]
        result["online_items"] = [i.model_dump() for i in self.online_items]
        result["skipped"] = list(self.skipped)
        return result


class ReconciliationRequest(BaseModel):
    """Request model for reconciling one hotel."""
    hotel_id: str = Field(..., min_length=1, description="Hotel to reconcile")
    tolerance: Optional[int] = Field(None, ge=0, description="Override of the configured tolerance")
    dry_run: bool = Field(default=False, description="Compute the plan without writing")
    actor: str = Field(default="system", description="Who triggered the run")
