"""Tests for the reconciliation module."""

import csv
import io
import json

import pytest
from unittest.mock import AsyncMock

from reservation_payments.database import (
    CaptureRecord,
    ReservationRepository,
    ReconciliationBatchRepository,
)
from reservation_payments.exceptions import InvalidAmount
from reservation_payments.ledger import CaptureLedger
from reservation_payments.payouts import PayoutService
from reservation_payments.reconciliation import (
    ReconciliationService,
    ReconciliationStatus,
    ReconciliationItem,
    ReconciliationResult,
    SelectionStrategy,
    Reconciler,
    ReportGenerator,
    select_exact,
    select_greedy,
    trim_to_tolerance,
)

from conftest import seed_reservation


def items(prefix, amounts):
    return [
        ReconciliationItem(reservation_id=f"{prefix}{i}", confirmation_number=f"CNF-{prefix}{i}", amount=a)
        for i, a in enumerate(amounts)
    ]


async def seed_offline(session, confirmation_number, commission, hotel_id="hotel_1"):
    """A stay the hotel collected itself; it owes the commission."""
    return await seed_reservation(
        session, confirmation_number, hotel_id=hotel_id,
        total_amount=commission * 5, commission_amount=commission,
    )


async def seed_online(session, confirmation_number, total, commission, hotel_id="hotel_1"):
    """A card-paid stay; the platform owes the hotel total minus commission."""
    rid = await seed_reservation(
        session, confirmation_number, hotel_id=hotel_id,
        total_amount=total, capture_limit=total, commission_amount=commission,
    )
    ledger = CaptureLedger(session)
    await ledger.reserve(rid, total)
    await ledger.finalize(rid, total, True, CaptureRecord(
        capture_ref=f"CAP-{confirmation_number}",
        status="COMPLETED",
        amount=total,
        currency="USD",
        via="MIT",
    ))
    return rid


async def seed_pairs(db_session):
    """Offline commission [2000, 1000] against online transfers [2000, 1000]."""
    return {
        "offline": [
            await seed_offline(db_session, "PAIR-OFF-1", 2000),
            await seed_offline(db_session, "PAIR-OFF-2", 1000),
        ],
        "online": [
            await seed_online(db_session, "PAIR-ON-1", 2500, 500),
            await seed_online(db_session, "PAIR-ON-2", 1200, 200),
        ],
    }


async def marked_totals(db_session, plan, settled_elsewhere):
    """Sum the planned amounts left flagged on each side, ignoring items settled outside the batch."""
    repo = ReservationRepository(db_session)
    ids = [i.reservation_id for i in plan.offline_items + plan.online_items]
    flags = {r.id: r for r in await repo.list_by_ids(ids)}
    await db_session.commit()
    offline = sum(
        i.amount for i in plan.offline_items
        if flags[i.reservation_id].commission_paid and i.reservation_id not in settled_elsewhere
    )
    online = sum(
        i.amount for i in plan.online_items
        if flags[i.reservation_id].money_transferred and i.reservation_id not in settled_elsewhere
    )
    return offline, online


@pytest.fixture
async def hotel(db_session):
    """Offline commission [3000, 2000, 1500] against online transfers [2500, 2500, 1000]."""
    offline = [
        await seed_offline(db_session, "OFF-1", 3000),
        await seed_offline(db_session, "OFF-2", 2000),
        await seed_offline(db_session, "OFF-3", 1500),
    ]
    online = [
        await seed_online(db_session, "ON-1", 3000, 500),
        await seed_online(db_session, "ON-2", 3000, 500),
        await seed_online(db_session, "ON-3", 1200, 200),
    ]
    return {"offline": offline, "online": online}


@pytest.fixture
def reconciliation_service(db_session, settings):
    return ReconciliationService(db_session, settings=settings)


class TestSubsetSelection:
    """Tests for the subset-sum helpers."""

    def test_exact_finds_best_sum(self):
        """Exact selection reaches 10 where largest-first stops at 6."""
        assert select_exact([6, 5, 5], 10) == [1, 2]
        assert select_greedy([6, 5, 5], 10) == [0]

    def test_exact_never_exceeds_target(self):
        chosen = select_exact([30, 20, 15], 60)
        assert chosen == [0, 1]

    def test_exact_with_unreachable_target(self):
        assert select_exact([50, 70], 40) == []
        assert select_exact([], 100) == []

    def test_greedy_is_largest_first(self):
        assert select_greedy([10, 25, 25], 60) == [0, 1, 2]
        assert select_greedy([30, 20, 15], 60) == [0, 1]

    def test_trim_drops_smallest_of_larger_side(self):
        offline, online = trim_to_tolerance(items("off", [30, 20]), items("on", [25, 25, 10]), 0)
        assert [i.amount for i in offline] == [30, 20]
        assert [i.amount for i in online] == [25, 25]


class TestReconciler:
    """Tests for the Reconciler compute phase."""

    def test_worked_example(self):
        """[30, 20, 15] against [25, 25, 10] settles 50 on each side."""
        plan = Reconciler().reconcile(items("off", [30, 20, 15]), items("on", [25, 25, 10]), "hotel_1")

        assert plan.status == ReconciliationStatus.PLANNED
        assert plan.strategy == SelectionStrategy.EXACT
        assert plan.target == 60
        assert plan.settled_amount == 50
        assert [i.amount for i in plan.offline_items] == [30, 20]
        assert [i.amount for i in plan.online_items] == [25, 25]
        assert plan.remainder == {"offline": 15, "online": 10, "difference": 0}

    def test_tolerance_keeps_near_match(self):
        """With tolerance 0 the near match collapses; with 10 it settles 490."""
        offline = items("off", [500, 480])
        online = items("on", [490, 480])

        strict = Reconciler(tolerance=0).reconcile(offline, online)
        loose = Reconciler(tolerance=10).reconcile(offline, online)

        assert strict.status == ReconciliationStatus.NOTHING_TO_RECONCILE
        assert loose.settled_amount == 490
        assert loose.offline_total == 500
        assert loose.remainder["difference"] == 10

    def test_empty_pool_is_nothing_to_reconcile(self):
        plan = Reconciler().reconcile(items("off", [100]), [])

        assert plan.status == ReconciliationStatus.NOTHING_TO_RECONCILE
        assert plan.settled_amount == 0
        assert plan.offline_items == []
        assert not plan.has_overlap

    def test_non_positive_items_are_ignored(self):
        plan = Reconciler().reconcile(items("off", [0, 40, -5]), items("on", [40]))
        assert plan.settled_amount == 40
        assert [i.reservation_id for i in plan.offline_items] == ["off1"]

    def test_large_pools_fall_back_to_greedy(self):
        reconciler = Reconciler(max_dp_items=0)
        plan = reconciler.reconcile(items("off", [30, 20, 15]), items("on", [25, 25, 10]))
        assert plan.strategy == SelectionStrategy.GREEDY
        assert plan.settled_amount == 50

    def test_mixed_strategy(self):
        reconciler = Reconciler(max_dp_items=3)
        plan = reconciler.reconcile(items("off", [30, 20, 15]), items("on", [20, 20, 10, 10]))
        assert plan.strategy == SelectionStrategy.MIXED
        assert plan.settled_amount == 50

    def test_negative_tolerance_is_rejected(self):
        with pytest.raises(InvalidAmount):
            Reconciler(tolerance=-1)

    def test_settled_never_exceeds_either_pool(self):
        plan = Reconciler(tolerance=5).reconcile(items("off", [7, 13, 29, 41]), items("on", [11, 17, 23]))
        assert plan.settled_amount <= sum(i.amount for i in plan.offline_items)
        assert plan.settled_amount <= sum(i.amount for i in plan.online_items)
        assert abs(plan.offline_total - plan.online_total) <= 5


class TestReconciliationService:
    """Tests for reconciliation batches against the database."""

    async def test_fetch_pools(self, reconciliation_service, hotel):
        """Offline pool holds unpaid commission, online pool holds untransferred net amounts."""
        offline, online = await reconciliation_service.fetch_pools("hotel_1")

        assert sorted(i.amount for i in offline) == [1500, 2000, 3000]
        assert sorted(i.amount for i in online) == [1000, 2500, 2500]

    async def test_other_hotels_and_statuses_are_excluded(self, db_session, reconciliation_service):
        await seed_offline(db_session, "OTHER-1", 1000, hotel_id="hotel_2")
        await seed_reservation(db_session, "CANCELLED-1", commission_amount=900, reservation_status="cancelled")

        offline, online = await reconciliation_service.fetch_pools("hotel_1")

        assert offline == []
        assert online == []

    async def test_reconcile_hotel(self, db_session, reconciliation_service, hotel):
        """A run settles the chosen reservations and records the batch."""
        result = await reconciliation_service.reconcile_hotel("hotel_1", actor="finance")

        assert result.status == ReconciliationStatus.COMPLETED
        assert result.batch_key.startswith("rb_")
        assert result.settled_amount == 5000
        assert result.skipped == []

        repo = ReservationRepository(db_session)
        paid = {r.confirmation_number: r.commission_paid for r in await repo.list_by_ids(hotel["offline"])}
        moved = {r.confirmation_number: r.money_transferred for r in await repo.list_by_ids(hotel["online"])}
        await db_session.commit()
        assert paid == {"OFF-1": True, "OFF-2": True, "OFF-3": False}
        assert moved == {"ON-1": True, "ON-2": True, "ON-3": False}

        batch = await reconciliation_service.get_batch(result.batch_key)
        assert batch["status"] == "completed"
        assert batch["settled_amount"] == 5000
        fields = sorted(entry["field"] for entry in batch["audit"])
        assert fields == ["commission", "commission", "money_transferred", "money_transferred", "reconciliation"]
        assert all(entry["actor"] == "finance" for entry in batch["audit"])

    async def test_second_run_settles_nothing_twice(self, reconciliation_service, hotel):
        await reconciliation_service.reconcile_hotel("hotel_1")

        second = await reconciliation_service.reconcile_hotel("hotel_1")

        assert second.status == ReconciliationStatus.NOTHING_TO_RECONCILE
        assert second.settled_amount == 0
        batches = await reconciliation_service.list_batches("hotel_1")
        assert sorted(b["status"] for b in batches) == ["completed", "nothing_to_reconcile"]

    async def test_dry_run_writes_nothing(self, db_session, reconciliation_service, hotel):
        result = await reconciliation_service.reconcile_hotel("hotel_1", dry_run=True)

        assert result.dry_run is True
        assert result.batch_key is None
        assert result.settled_amount == 5000
        assert result.status == ReconciliationStatus.PLANNED
        assert await reconciliation_service.list_batches("hotel_1") == []
        offline, _ = await reconciliation_service.fetch_pools("hotel_1")
        assert len(offline) == 3

    async def test_concurrently_settled_item_is_skipped(self, db_session, reconciliation_service, hotel):
        """A commission paid between plan and write leaves nothing that matches 3000 exactly."""
        plan = await reconciliation_service.plan_hotel("hotel_1")
        await PayoutService(db_session).set_commission_status(hotel["offline"][1], True, actor="finance")
        reconciliation_service.plan_hotel = AsyncMock(return_value=plan)

        result = await reconciliation_service.reconcile_hotel("hotel_1")

        assert result.status == ReconciliationStatus.COMPLETED
        assert sorted(result.skipped) == sorted(hotel["offline"][:2] + hotel["online"][:2])
        assert result.settled_amount == 0
        assert (result.offline_total, result.online_total) == (0, 0)

        offline_marked, online_marked = await marked_totals(db_session, plan, {hotel["offline"][1]})
        assert abs(offline_marked - online_marked) <= plan.tolerance
        paid = await ReservationRepository(db_session).get_by_id(hotel["offline"][0])
        await db_session.commit()
        assert paid.commission_paid is False

    async def test_offline_skip_limits_online_side(self, db_session, reconciliation_service):
        """Only the online items matching what was actually settled offline are written."""
        sides = await seed_pairs(db_session)
        plan = await reconciliation_service.plan_hotel("hotel_1")
        assert plan.settled_amount == 3000
        await PayoutService(db_session).set_commission_status(sides["offline"][1], True)
        reconciliation_service.plan_hotel = AsyncMock(return_value=plan)

        result = await reconciliation_service.reconcile_hotel("hotel_1")

        assert result.settled_amount == 2000
        assert (result.offline_total, result.online_total) == (2000, 2000)
        assert result.remainder["difference"] == 0
        assert sorted(result.skipped) == sorted([sides["offline"][1], sides["online"][1]])
        assert await marked_totals(db_session, plan, {sides["offline"][1]}) == (2000, 2000)

        batch = await reconciliation_service.get_batch(result.batch_key)
        assert sorted(entry["field"] for entry in batch["audit"]) == [
            "commission", "money_transferred", "reconciliation",
        ]

    async def test_online_skip_reverts_offline_excess(self, db_session, reconciliation_service):
        """A transfer recorded elsewhere mid-batch rolls back the commission it was matched with."""
        sides = await seed_pairs(db_session)
        plan = await reconciliation_service.plan_hotel("hotel_1")
        await PayoutService(db_session).set_transfer_status(sides["online"][1], True)
        reconciliation_service.plan_hotel = AsyncMock(return_value=plan)

        result = await reconciliation_service.reconcile_hotel("hotel_1")

        assert result.settled_amount == 2000
        assert await marked_totals(db_session, plan, {sides["online"][1]}) == (2000, 2000)
        repo = ReservationRepository(db_session)
        reverted = await repo.get_by_id(sides["offline"][1])
        await db_session.commit()
        assert reverted.commission_paid is False

        batch = await reconciliation_service.get_batch(result.batch_key)
        notes = [entry["note"] for entry in batch["audit"] if entry["reservation_id"] == sides["offline"][1]]
        assert len(notes) == 2
        assert any(note.startswith(f"reverted in batch {result.batch_key}") for note in notes)

    async def test_near_match_within_tolerance_is_kept(self, db_session, reconciliation_service):
        """Nothing is re-matched or reverted when no item was settled elsewhere."""
        await seed_offline(db_session, "NEAR-OFF", 500)
        await seed_online(db_session, "NEAR-ON", 1000, 510)

        result = await reconciliation_service.reconcile_hotel("hotel_1", tolerance=10)

        assert result.settled_amount == 490
        assert (result.offline_total, result.online_total) == (500, 490)
        assert result.skipped == []
        offline, online = await reconciliation_service.fetch_pools("hotel_1")
        assert offline == [] and online == []

    async def test_failure_marks_batch_failed(self, reconciliation_service, hotel):
        reconciliation_service.payouts.set_transfer_status = AsyncMock(side_effect=RuntimeError("db gone"))

        result = await reconciliation_service.reconcile_hotel("hotel_1")

        assert result.status == ReconciliationStatus.FAILED
        assert result.error_message == "db gone"
        batch = await reconciliation_service.get_batch(result.batch_key)
        assert batch["status"] == "failed"

    async def test_unknown_batch(self, reconciliation_service):
        assert await reconciliation_service.get_batch("rb_missing") is None

    async def test_tolerance_override(self, db_session, reconciliation_service):
        await seed_offline(db_session, "OFF-A", 500)
        await seed_offline(db_session, "OFF-B", 480)
        await seed_online(db_session, "ON-A", 1000, 510)
        await seed_online(db_session, "ON-B", 1000, 520)

        strict = await reconciliation_service.plan_hotel("hotel_1", tolerance=0)
        loose = await reconciliation_service.plan_hotel("hotel_1", tolerance=10)

        assert strict.settled_amount == 0
        assert loose.settled_amount == 490

    async def test_generate_report_formats(self, reconciliation_service, hotel):
        result = await reconciliation_service.reconcile_hotel("hotel_1")

        assert json.loads(reconciliation_service.generate_report(result, "json"))["settled_amount"] == 5000
        assert "HOTEL RECONCILIATION SUMMARY" in reconciliation_service.generate_report(result, "text")
        assert "OFF-1" in reconciliation_service.generate_report(result, "detailed_text")
        assert reconciliation_service.generate_report(result, "csv").startswith("batch_key,")
        with pytest.raises(ValueError):
            reconciliation_service.generate_report(result, "xml")


class TestReportGenerator:
    """Tests for the ReportGenerator class."""

    @pytest.fixture
    def result(self):
        plan = Reconciler().reconcile(items("off", [3000, 2000, 1500]), items("on", [2500, 2500, 1000]), "hotel_1")
        result = ReconciliationResult.from_plan(plan, batch_key="rb_test")
        result.status = ReconciliationStatus.COMPLETED
        result.skipped = ["on1"]
        return result

    def test_to_json_summary(self, result):
        """Summary JSON has statistics but no item lists."""
        data = json.loads(ReportGenerator(result).to_json(include_details=False))

        assert data["batch_key"] == "rb_test"
        assert data["status"] == "completed"
        assert data["statistics"]["offline_count"] == 2
        assert data["statistics"]["skipped"] == 1
        assert "offline_items" not in data

    def test_to_json_with_details(self, result):
        data = json.loads(ReportGenerator(result).to_json())
        assert [i["reservation_id"] for i in data["offline_items"]] == ["off0", "off1"]
        assert data["skipped"] == ["on1"]

    def test_to_csv(self, result):
        """One row per chosen reservation, skipped ones flagged."""
        rows = list(csv.DictReader(io.StringIO(ReportGenerator(result).to_csv())))

        assert len(rows) == 4
        assert {row["side"] for row in rows} == {"offline", "online"}
        skipped = [row["reservation_id"] for row in rows if row["skipped"] == "yes"]
        assert skipped == ["on1"]

    def test_to_summary_text(self, result):
        text = ReportGenerator(result, currency="EUR").to_summary_text()

        assert "HOTEL RECONCILIATION SUMMARY" in text
        assert "Settled Amount: 50.00" in text
        assert "Offline Unsettled: 15.00" in text

    def test_to_detailed_text(self, result):
        text = ReportGenerator(result).to_detailed_text()
        assert "COMMISSION MARKED PAID" in text
        assert "CNF-on1: 25.00 (skipped)" in text

    def test_dry_run_text(self):
        plan = Reconciler().reconcile(items("off", [100]), items("on", [100]), "hotel_1")
        text = ReportGenerator(ReconciliationResult.from_plan(plan, dry_run=True)).to_summary_text()
        assert "N/A (dry run)" in text


class TestBatchRepository:
    """Stored batch records."""

    async def test_list_by_hotel_newest_first(self, db_session):
        repo = ReconciliationBatchRepository(db_session)
        for key in ("rb_1", "rb_2"):
            await repo.create(key, "hotel_1", "exact", [], [], 0, 0, 0, 0)
        await db_session.commit()

        batches = await repo.list_by_hotel("hotel_1")

        assert {b.key for b in batches} == {"rb_1", "rb_2"}
        assert all(b.status == "in_progress" for b in batches)
