"""Subset-sum matching of offline commission debts against online transfer credits."""

import logging
from typing import List, Dict, Tuple, Optional, Sequence

from ..exceptions import InvalidAmount
from .models import (
    ReconciliationItem,
    PoolSelection,
    ReconciliationPlan,
    ReconciliationStatus,
    SelectionStrategy,
)

logger = logging.getLogger(__name__)


def select_exact(amounts: Sequence[int], target: int) -> List[int]:
    """Return indices of the subset whose sum is the largest value <= target.

    Dynamic programming over reachable sums; each sum keeps the item that
    first reached it so the subset can be walked back.

    Args:
        amounts: Positive item amounts in minor units.
        target: Upper bound for the subset sum.

    Returns:
        Chosen indices in ascending order.
    """
    parents: Dict[int, Tuple[int, int]] = {0: (-1, -1)}
    best = 0
    for index, amount in enumerate(amounts):
        if amount <= 0 or amount > target:
            continue
        for reached in list(parents):
            candidate = reached + amount
            if candidate <= target and candidate not in parents:
                parents[candidate] = (reached, index)
                if candidate > best:
                    best = candidate
        if best == target:
            break

    chosen = []
    current = best
    while current > 0:
        previous, index = parents[current]
        chosen.append(index)
        current = previous
    return sorted(chosen)


def select_greedy(amounts: Sequence[int], target: int) -> List[int]:
    """Largest-first approximation of :func:`select_exact`."""
    chosen = []
    total = 0
    for index in sorted(range(len(amounts)), key=lambda i: (-amounts[i], i)):
        amount = amounts[index]
        if amount > 0 and total + amount <= target:
            chosen.append(index)
            total += amount
    return sorted(chosen)


def trim_to_tolerance(
    offline: List[ReconciliationItem],
    online: List[ReconciliationItem],
    tolerance: int,
) -> Tuple[List[ReconciliationItem], List[ReconciliationItem]]:
    """Drop the smallest item of the larger subset until the sums are within tolerance."""
    offline = list(offline)
    online = list(online)
    while True:
        offline_total = sum(i.amount for i in offline)
        online_total = sum(i.amount for i in online)
        if abs(offline_total - online_total) <= tolerance:
            break
        larger = offline if offline_total > online_total else online
        if not larger:
            break
        smallest = min(range(len(larger)), key=lambda i: larger[i].amount)
        removed = larger.pop(smallest)
        logger.debug(f"Trimmed {removed.reservation_id} ({removed.amount}) from the larger subset")
    return offline, online


class Reconciler:
    """Pure compute phase of a reconciliation batch."""

    def __init__(
        self,
        tolerance: int = 0,
        max_dp_items: int = 64,
        max_dp_target: int = 10_000_000,
    ):
        """Initialize the reconciler.

        Args:
            tolerance: Allowed difference between the two subset sums (minor units).
            max_dp_items: Largest pool solved exactly.
            max_dp_target: Largest target solved exactly.
        """
        if tolerance < 0:
            raise InvalidAmount(f"Tolerance must not be negative, got {tolerance}")
        self.tolerance = tolerance
        self.max_dp_items = max_dp_items
        self.max_dp_target = max_dp_target

    def _use_exact(self, count: int, target: int) -> bool:
        return count <= self.max_dp_items and target <= self.max_dp_target

    def select(self, pool: List[ReconciliationItem], target: int) -> PoolSelection:
        """Choose a subset of ``pool`` summing as close to ``target`` as possible without exceeding it."""
        amounts = [item.amount for item in pool]
        if self._use_exact(len(pool), target):
            indices = select_exact(amounts, target)
            strategy = SelectionStrategy.EXACT
        else:
            indices = select_greedy(amounts, target)
            strategy = SelectionStrategy.GREEDY
        return PoolSelection(items=[pool[i] for i in indices], strategy=strategy)

    def reconcile(
        self,
        offline_pool: List[ReconciliationItem],
        online_pool: List[ReconciliationItem],
        hotel_id: Optional[str] = None,
    ) -> ReconciliationPlan:
        """Match the offline pool against the online pool.

        The process:
        1. target = min(sum(offline), sum(online))
        2. choose a subset of each pool not exceeding target
        3. trim the larger subset until the sums are within tolerance
        4. settled = min of the two subset sums

        Args:
            offline_pool: Commission owed by the hotel, one item per reservation.
            online_pool: Transfers owed to the hotel, one item per reservation.
            hotel_id: Hotel the pools belong to.

        Returns:
            ReconciliationPlan; status NOTHING_TO_RECONCILE when settled is 0.
        """
        offline_pool = [i for i in offline_pool if i.amount > 0]
        online_pool = [i for i in online_pool if i.amount > 0]
        offline_pool_total = sum(i.amount for i in offline_pool)
        online_pool_total = sum(i.amount for i in online_pool)
        target = min(offline_pool_total, online_pool_total)

        logger.info(
            f"Reconciling hotel {hotel_id}: {len(offline_pool)} offline ({offline_pool_total}), "
            f"{len(online_pool)} online ({online_pool_total}), target {target}"
        )

        offline = self.select(offline_pool, target)
        online = self.select(online_pool, target)
        if offline.strategy == online.strategy:
            strategy = offline.strategy
        else:
            strategy = SelectionStrategy.MIXED

        offline_items, online_items = trim_to_tolerance(offline.items, online.items, self.tolerance)
        offline_total = sum(i.amount for i in offline_items)
        online_total = sum(i.amount for i in online_items)
        settled = min(offline_total, online_total)

        if settled <= 0:
            status = ReconciliationStatus.NOTHING_TO_RECONCILE
            offline_items, online_items = [], []
            offline_total = online_total = settled = 0
        else:
            status = ReconciliationStatus.PLANNED

        plan = ReconciliationPlan(
            hotel_id=hotel_id,
            status=status,
            strategy=strategy,
            tolerance=self.tolerance,
            target=target,
            offline_pool_total=offline_pool_total,
            online_pool_total=online_pool_total,
            offline_items=offline_items,
            online_items=online_items,
            offline_total=offline_total,
            online_total=online_total,
            settled_amount=settled,
        )

        logger.info(
            f"Plan for hotel {hotel_id}: settle {settled} "
            f"({len(offline_items)} offline / {len(online_items)} online, {strategy.value})"
        )
        return plan
