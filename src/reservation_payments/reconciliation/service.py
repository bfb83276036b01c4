"""Service layer for hotel reconciliation runs."""

import uuid
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..database import (
    ReservationRepository,
    ReconciliationBatchRepository,
    AuditLogRepository,
    BatchStatus,
)
from ..payouts import (
    CHANNEL_OFFLINE as OFFLINE,
    CHANNEL_ONLINE as ONLINE,
    ELIGIBLE_STATUSES,
    PayoutService,
    offline_commission_due,
    online_transfer_due,
)
from .models import (
    ReconciliationItem,
    ReconciliationPlan,
    ReconciliationResult,
    ReconciliationStatus,
)
from .reconciler import Reconciler
from .report import ReportGenerator

logger = logging.getLogger(__name__)


def new_batch_key() -> str:
    return f"rb_{uuid.uuid4().hex}"


def _dropped(
    items: List[ReconciliationItem],
    kept: List[ReconciliationItem],
) -> List[ReconciliationItem]:
    kept_ids = {i.reservation_id for i in kept}
    return [i for i in items if i.reservation_id not in kept_ids]


class ReconciliationService:
    """Service for planning and executing reconciliation batches."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            settings: Runtime settings; process settings when omitted.
        """
        self.session = session
        self.settings = settings or get_settings()
        self.reservations = ReservationRepository(session)
        self.batches = ReconciliationBatchRepository(session)
        self.audit = AuditLogRepository(session)
        self.payouts = PayoutService(session)

    def _reconciler(self, tolerance: Optional[int] = None) -> Reconciler:
        return Reconciler(
            tolerance=self.settings.reconcile_tolerance if tolerance is None else tolerance,
            max_dp_items=self.settings.reconcile_max_dp_items,
            max_dp_target=self.settings.reconcile_max_dp_target,
        )

    async def fetch_pools(
        self,
        hotel_id: str,
    ) -> Tuple[List[ReconciliationItem], List[ReconciliationItem]]:
        """Load the unsettled offline and online items of a hotel.

        Args:
            hotel_id: Hotel to load.

        Returns:
            Tuple of (offline_pool, online_pool).
        """
        try:
            reservations = await self.reservations.list_by_hotel(
                hotel_id, statuses=ELIGIBLE_STATUSES
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        offline: List[ReconciliationItem] = []
        online: List[ReconciliationItem] = []
        for r in reservations:
            commission = offline_commission_due(r)
            if commission > 0:
                offline.append(ReconciliationItem(
                    reservation_id=r.id,
                    confirmation_number=r.confirmation_number,
                    amount=commission,
                ))
            transfer = online_transfer_due(r)
            if transfer > 0:
                online.append(ReconciliationItem(
                    reservation_id=r.id,
                    confirmation_number=r.confirmation_number,
                    amount=transfer,
                ))

        logger.info(f"Hotel {hotel_id}: {len(offline)} offline and {len(online)} online candidates")
        return offline, online

    async def plan_hotel(
        self,
        hotel_id: str,
        tolerance: Optional[int] = None,
    ) -> ReconciliationPlan:
        """Compute what a reconciliation run would settle, without writing anything."""
        offline, online = await self.fetch_pools(hotel_id)
        return self._reconciler(tolerance).reconcile(offline, online, hotel_id=hotel_id)

    async def reconcile_hotel(
        self,
        hotel_id: str,
        tolerance: Optional[int] = None,
        actor: str = "system",
        dry_run: bool = False,
    ) -> ReconciliationResult:
        """Net a hotel's offline commission debts against its online transfer credits.

        The plan is computed first; with ``dry_run`` the run stops there.
        Otherwise every chosen reservation is updated in its own transaction
        with a guarded write, so a crash leaves a partial batch that the next
        run completes without settling anything twice.

        Args:
            hotel_id: Hotel to reconcile.
            tolerance: Allowed difference between the two sums; configured value when None.
            actor: Who triggered the run.
            dry_run: Only compute the plan.

        Returns:
            ReconciliationResult with the batch key and the settled items.
        """
        plan = await self.plan_hotel(hotel_id, tolerance)

        if dry_run:
            logger.info(f"Dry run for hotel {hotel_id} would settle {plan.settled_amount}")
            return ReconciliationResult.from_plan(plan, dry_run=True)

        batch_key = new_batch_key()
        result = ReconciliationResult.from_plan(plan, batch_key=batch_key)

        try:
            batch = await self.batches.create(
                key=batch_key,
                hotel_id=hotel_id,
                strategy=plan.strategy.value,
                offline_items=[i.model_dump() for i in plan.offline_items],
                online_items=[i.model_dump() for i in plan.online_items],
                offline_total=plan.offline_total,
                online_total=plan.online_total,
                settled_amount=plan.settled_amount,
                tolerance=plan.tolerance,
                actor=actor,
            )
            if not plan.has_overlap:
                await self.batches.finish(batch, BatchStatus.NOTHING_TO_RECONCILE.value, 0)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if not plan.has_overlap:
            logger.info(f"Nothing to reconcile for hotel {hotel_id} (batch {batch_key})")
            result.status = ReconciliationStatus.NOTHING_TO_RECONCILE
            result.completed_at = datetime.utcnow()
            return result

        logger.info(
            f"Starting reconciliation batch {batch_key} for hotel {hotel_id}: "
            f"settling {plan.settled_amount}"
        )

        try:
            offline_items, online_items, skipped = await self._apply(plan, batch_key, actor)
            offline_total = sum(i.amount for i in offline_items)
            online_total = sum(i.amount for i in online_items)
            settled = min(offline_total, online_total)

            batch = await self.batches.get(batch_key)
            await self.batches.finish(batch, BatchStatus.COMPLETED.value, settled)
            await self.audit.create(
                field="reconciliation",
                before={
                    "offline_pool": plan.offline_pool_total,
                    "online_pool": plan.online_pool_total,
                },
                after={
                    "settled_amount": settled,
                    "offline_count": len(offline_items),
                    "online_count": len(online_items),
                },
                note=f"auto-reconciled ({plan.strategy.value}, tolerance {plan.tolerance})",
                actor=actor,
                hotel_id=hotel_id,
                batch_key=batch_key,
            )
            await self.session.commit()

            result.status = ReconciliationStatus.COMPLETED
            result.settled_amount = settled
            result.offline_total = offline_total
            result.online_total = online_total
            result.remainder = {
                "offline": plan.offline_pool_total - offline_total,
                "online": plan.online_pool_total - online_total,
                "difference": abs(offline_total - online_total),
            }
            result.skipped = skipped
            result.completed_at = batch.completed_at

            logger.info(
                f"Reconciliation batch {batch_key} completed: settled {settled} "
                f"({len(result.skipped)} skipped)"
            )
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Reconciliation batch {batch_key} failed: {e}")
            await self._mark_failed(batch_key)
            result.status = ReconciliationStatus.FAILED
            result.error_message = str(e)
            result.completed_at = datetime.utcnow()

        return result

    async def _apply(
        self,
        plan: ReconciliationPlan,
        batch_key: str,
        actor: str,
    ) -> Tuple[List[ReconciliationItem], List[ReconciliationItem], List[str]]:
        """Write the settlement flags, one reservation per transaction.

        Items settled elsewhere since the plan was computed are skipped, and
        the sides are matched again after each side is written. Flags this
        batch set on items that drop out of the new match are reverted, so
        the marked sums stay within tolerance of each other.

        Returns:
            Tuple of (offline items, online items, skipped reservation ids).
        """
        written_offline = await self._mark(plan.offline_items, OFFLINE, batch_key, actor)

        offline, online = self._rematch(plan, written_offline, plan.online_items)
        await self._revert(_dropped(written_offline, offline), OFFLINE, batch_key, actor)
        written_online = await self._mark(online, ONLINE, batch_key, actor)

        final_offline, final_online = self._rematch(plan, offline, written_online)
        await self._revert(_dropped(offline, final_offline), OFFLINE, batch_key, actor)
        await self._revert(_dropped(written_online, final_online), ONLINE, batch_key, actor)

        skipped = (
            [i.reservation_id for i in _dropped(plan.offline_items, final_offline)]
            + [i.reservation_id for i in _dropped(plan.online_items, final_online)]
        )
        return final_offline, final_online, skipped

    def _rematch(
        self,
        plan: ReconciliationPlan,
        offline: List[ReconciliationItem],
        online: List[ReconciliationItem],
    ) -> Tuple[List[ReconciliationItem], List[ReconciliationItem]]:
        """Match the sides again once an item dropped out of one of them."""
        difference = sum(i.amount for i in offline) - sum(i.amount for i in online)
        if abs(difference) <= plan.tolerance:
            return offline, online
        rematch = self._reconciler(plan.tolerance).reconcile(offline, online, plan.hotel_id)
        return rematch.offline_items, rematch.online_items

    async def _set_flag(
        self,
        side: str,
        reservation_id: str,
        value: bool,
        note: str,
        batch_key: str,
        actor: str,
    ) -> bool:
        if side == OFFLINE:
            outcome = await self.payouts.set_commission_status(
                reservation_id, value, actor=actor, note=note, batch_key=batch_key
            )
        else:
            outcome = await self.payouts.set_transfer_status(
                reservation_id, value, actor=actor, note=note, batch_key=batch_key
            )
        return outcome["changed"]

    async def _mark(
        self,
        items: List[ReconciliationItem],
        side: str,
        batch_key: str,
        actor: str,
    ) -> List[ReconciliationItem]:
        """Settle ``items`` and return the ones this batch actually changed."""
        note = f"auto-reconciled in batch {batch_key}"
        written = []
        for item in items:
            if await self._set_flag(side, item.reservation_id, True, note, batch_key, actor):
                written.append(item)
            else:
                logger.warning(f"{side.capitalize()} item {item.reservation_id} was already settled; skipped")
        return written

    async def _revert(
        self,
        items: List[ReconciliationItem],
        side: str,
        batch_key: str,
        actor: str,
    ) -> None:
        note = f"reverted in batch {batch_key}: counterpart settled elsewhere"
        for item in items:
            if await self._set_flag(side, item.reservation_id, False, note, batch_key, actor):
                logger.warning(f"{side.capitalize()} item {item.reservation_id} reverted in batch {batch_key}")

    async def _mark_failed(self, batch_key: str) -> None:
        try:
            batch = await self.batches.get(batch_key)
            if batch is not None:
                await self.batches.finish(batch, BatchStatus.FAILED.value)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Could not mark batch {batch_key} as failed: {e}")

    async def get_batch(self, batch_key: str) -> Optional[Dict[str, Any]]:
        """Return a stored batch with its audit trail, or None."""
        batch = await self.batches.get(batch_key)
        if batch is None:
            await self.session.commit()
            return None
        data = batch.to_dict()
        data["audit"] = [e.to_dict() for e in await self.audit.list_by_batch(batch_key)]
        await self.session.commit()
        return data

    async def list_batches(self, hotel_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        batches = await self.batches.list_by_hotel(hotel_id, limit=limit)
        data = [b.to_dict() for b in batches]
        await self.session.commit()
        return data

    def generate_report(
        self,
        result: ReconciliationResult,
        format: str = "json",
        include_details: bool = True,
    ) -> str:
        """Generate a formatted report from a reconciliation result.

        Args:
            result: ReconciliationResult to format.
            format: Output format ('json', 'csv', 'text', 'detailed_text').
            include_details: Include chosen items (for JSON format).

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(result, currency=self.settings.default_currency)

        if format == "json":
            return generator.to_json(include_details=include_details)
        elif format == "csv":
            return generator.to_csv()
        elif format == "text":
            return generator.to_summary_text()
        elif format == "detailed_text":
            return generator.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
