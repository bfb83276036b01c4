"""Tests for the capture ledger."""

import asyncio

import pytest

from reservation_payments.database import (
    CaptureRecord,
    AuditLogRepository,
    BoundsHistoryRepository,
    ChargeState,
    PaymentLabel,
    get_async_session_factory,
)
from reservation_payments.exceptions import (
    InvalidAmount,
    ReservationNotFound,
    LimitExceeded,
    LimitNotConfigured,
    LimitUpdateRejected,
    LedgerStateError,
)
from reservation_payments.ledger import CaptureLedger

from conftest import seed_reservation


def capture_record(capture_ref: str, amount: int, via: str = "MIT") -> CaptureRecord:
    return CaptureRecord(
        capture_ref=capture_ref,
        status="COMPLETED",
        amount=amount,
        currency="USD",
        via=via,
        gateway_order_ref=f"ORD-{capture_ref}",
    )


@pytest.fixture
def ledger(db_session):
    return CaptureLedger(db_session)


class TestReserve:
    """Tests for reserving capacity."""

    async def test_reserve_holds_pending(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)

        snapshot = await ledger.reserve(rid, 4000)

        assert snapshot.pending_total == 4000
        assert snapshot.captured_total == 0
        assert snapshot.remaining == 6000

    async def test_reserve_rejects_invalid_amount(self, ledger, make_reservation):
        rid = await make_reservation()
        with pytest.raises(InvalidAmount):
            await ledger.reserve(rid, 0)
        with pytest.raises(InvalidAmount):
            await ledger.reserve(rid, -5)

    async def test_reserve_unknown_reservation(self, ledger):
        with pytest.raises(ReservationNotFound):
            await ledger.reserve("missing", 100)

    async def test_reserve_without_limit(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=None)
        with pytest.raises(LimitNotConfigured):
            await ledger.reserve(rid, 100)

    async def test_reserve_over_limit_reports_remaining(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 7000)

        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.reserve(rid, 3001)

        assert exc_info.value.remaining == 3000
        snapshot = await ledger.snapshot(rid)
        assert snapshot.pending_total == 7000

    async def test_reserve_exactly_to_limit(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        snapshot = await ledger.reserve(rid, 10000)
        assert snapshot.remaining == 0


class TestFinalize:
    """Tests for settling reservations of capacity."""

    async def test_success_moves_pending_to_captured(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 4000)

        snapshot = await ledger.finalize(rid, 4000, True, capture_record("CAP-1", 4000))

        assert snapshot.pending_total == 0
        assert snapshot.captured_total == 4000
        assert snapshot.charge_state == ChargeState.PARTIALLY_CAPTURED.value
        assert snapshot.payment_label == PaymentLabel.DEPOSIT_PAID.value
        assert snapshot.charge_count == 1
        assert [c["capture_ref"] for c in snapshot.captures] == ["CAP-1"]

    async def test_full_capture_marks_paid_online(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=5000)
        await ledger.reserve(rid, 5000)

        snapshot = await ledger.finalize(rid, 5000, True, capture_record("CAP-FULL", 5000))

        assert snapshot.charge_state == ChargeState.FULLY_CAPTURED.value
        assert snapshot.payment_label == PaymentLabel.PAID_ONLINE.value

    async def test_failure_releases_pending(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 4000)

        snapshot = await ledger.finalize(rid, 4000, False)

        assert snapshot.pending_total == 0
        assert snapshot.captured_total == 0
        assert snapshot.remaining == 10000

    async def test_replayed_capture_counts_once(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 3000)
        await ledger.finalize(rid, 3000, True, capture_record("CAP-DUP", 3000))

        await ledger.reserve(rid, 3000)
        snapshot = await ledger.finalize(rid, 3000, True, capture_record("CAP-DUP", 3000))

        assert snapshot.captured_total == 3000
        assert snapshot.pending_total == 0
        assert len(snapshot.captures) == 1

    async def test_finalize_without_reserve_is_rejected(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)

        with pytest.raises(LedgerStateError):
            await ledger.finalize(rid, 1000, False)
        with pytest.raises(LedgerStateError):
            await ledger.finalize(rid, 1000, True, capture_record("CAP-X", 1000))

        snapshot = await ledger.snapshot(rid)
        assert snapshot.captured_total == 0
        assert snapshot.captures == []

    async def test_success_requires_record(self, ledger, make_reservation):
        rid = await make_reservation()
        await ledger.reserve(rid, 100)
        with pytest.raises(LedgerStateError):
            await ledger.finalize(rid, 100, True)

    async def test_over_capture_by_gateway_is_capped(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 2000)

        snapshot = await ledger.finalize(rid, 2000, True, capture_record("CAP-BIG", 2500))

        assert snapshot.captured_total == 2000
        assert snapshot.captured_total + snapshot.pending_total <= snapshot.limit

    async def test_finalize_writes_audit_entry(self, ledger, db_session, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 1200)
        await ledger.finalize(rid, 1200, True, capture_record("CAP-AUD", 1200), actor="night_audit")

        entries = await AuditLogRepository(db_session).list_by_reservation(rid, field="captured_total")
        await db_session.commit()
        assert len(entries) == 1
        assert entries[0].before == 0
        assert entries[0].after == 1200
        assert entries[0].actor == "night_audit"


class TestScenarios:
    """End-to-end ledger sequences."""

    async def test_sequence_stays_within_limit(self, ledger, make_reservation):
        """Captured plus pending never exceeds the limit across a mixed sequence."""
        rid = await make_reservation(capture_limit=10000)
        steps = [
            ("reserve", 3000), ("ok", 3000, "A"),
            ("reserve", 5000), ("fail", 5000),
            ("reserve", 6000), ("ok", 6000, "B"),
            ("reserve", 1001),
            ("reserve", 1000), ("ok", 1000, "C"),
        ]
        for step in steps:
            try:
                if step[0] == "reserve":
                    snapshot = await ledger.reserve(rid, step[1])
                elif step[0] == "ok":
                    snapshot = await ledger.finalize(rid, step[1], True, capture_record(step[2], step[1]))
                else:
                    snapshot = await ledger.finalize(rid, step[1], False)
            except LimitExceeded:
                snapshot = await ledger.snapshot(rid)
            assert snapshot.captured_total + snapshot.pending_total <= snapshot.limit

        final = await ledger.snapshot(rid)
        assert final.captured_total == 10000
        assert final.pending_total == 0

    async def test_limit_100_two_charges(self, ledger, make_reservation):
        """Limit 100: charge 60 succeeds, charge 50 fails with remaining 40."""
        rid = await make_reservation(capture_limit=100)
        await ledger.reserve(rid, 60)
        await ledger.finalize(rid, 60, True, capture_record("CAP-60", 60))

        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.reserve(rid, 50)

        assert exc_info.value.remaining == 40
        snapshot = await ledger.snapshot(rid)
        assert snapshot.captured_total == 60
        assert snapshot.pending_total == 0


class TestConcurrency:
    """Concurrent reserves against one reservation."""

    async def test_concurrent_reserves_never_exceed_limit(self, file_db_engine):
        session_factory = get_async_session_factory(file_db_engine)
        async with session_factory() as session:
            rid = await seed_reservation(session, "CNF-CONC", capture_limit=1000)

        async def attempt() -> bool:
            async with session_factory() as session:
                try:
                    await CaptureLedger(session).reserve(rid, 300)
                    return True
                except LimitExceeded:
                    return False

        results = await asyncio.gather(*(attempt() for _ in range(8)))

        assert sum(results) == 3
        async with session_factory() as session:
            snapshot = await CaptureLedger(session).snapshot(rid)
        assert snapshot.pending_total == 900
        assert snapshot.remaining == 100


class TestUpdateLimit:
    """Tests for changing the capture limit."""

    async def test_raise_limit_records_history(self, ledger, db_session, make_reservation):
        rid = await make_reservation(capture_limit=10000)

        snapshot = await ledger.update_limit(rid, 15000, actor="frontdesk")

        assert snapshot.limit == 15000
        assert snapshot.bounds_history[-1]["old"] == 10000
        assert snapshot.bounds_history[-1]["new"] == 15000
        history = await BoundsHistoryRepository(db_session).list_by_reservation(rid)
        await db_session.commit()
        assert history[-1].actor == "frontdesk"

    async def test_lower_below_committed_is_rejected(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 4000)
        await ledger.finalize(rid, 4000, True, capture_record("CAP-L", 4000))
        await ledger.reserve(rid, 2000)

        with pytest.raises(LimitUpdateRejected) as exc_info:
            await ledger.update_limit(rid, 5000)

        assert "pending" in exc_info.value.reason
        assert (await ledger.snapshot(rid)).limit == 10000

    async def test_lower_to_exactly_committed_is_allowed(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=10000)
        await ledger.reserve(rid, 4000)
        snapshot = await ledger.update_limit(rid, 4000)
        assert snapshot.remaining == 0

    @pytest.mark.parametrize("bad_limit", [0, -100])
    async def test_non_positive_limit_is_rejected(self, ledger, make_reservation, bad_limit):
        rid = await make_reservation()
        with pytest.raises(LimitUpdateRejected):
            await ledger.update_limit(rid, bad_limit)

    async def test_open_bounds_only_once(self, ledger, make_reservation):
        rid = await make_reservation(capture_limit=None)

        first = await ledger.open_bounds(rid, 8000, "eur")
        second = await ledger.open_bounds(rid, 9000, "USD")

        assert first.limit == 8000
        assert first.base_currency == "EUR"
        assert second.limit == 8000
        assert len(second.bounds_history) == 1
