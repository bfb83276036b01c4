"""Tests for commission and transfer bookkeeping."""

from datetime import date, datetime, timedelta, timezone

import pytest

from reservation_payments.database import (
    Reservation,
    ReservationRepository,
    AuditLogRepository,
    PaymentLabel,
)
from reservation_payments.exceptions import ReservationNotFound, NoEligibleReservations
from reservation_payments.payouts import (
    PayoutService,
    payment_channel,
    offline_commission_due,
    online_transfer_due,
)

from conftest import seed_reservation


def stay(**fields):
    values = {
        "total_amount": 10000,
        "commission_amount": 1500,
        "captured_total": 0,
        "payment_label": PaymentLabel.NOT_PAID.value,
        "commission_paid": False,
        "transfer_eligible": False,
        "money_transferred": False,
    }
    values.update(fields)
    return Reservation(**values)


class TestChannels:
    """Tests for the online/offline split."""

    def test_uncaptured_stay_is_offline(self):
        assert payment_channel(stay()) == "offline"

    def test_captured_stay_is_online(self):
        assert payment_channel(stay(captured_total=2000)) == "online"

    def test_label_makes_stay_online(self):
        """Imported stays carry only the label."""
        assert payment_channel(stay(payment_label=PaymentLabel.PAID_ONLINE.value)) == "online"
        assert payment_channel(stay(payment_label=PaymentLabel.DEPOSIT_PAID.value)) == "online"

    def test_offline_commission_due(self):
        assert offline_commission_due(stay()) == 1500
        assert offline_commission_due(stay(commission_paid=True)) == 0
        assert offline_commission_due(stay(captured_total=100)) == 0

    def test_online_transfer_due(self):
        online = dict(captured_total=10000, transfer_eligible=True)
        assert online_transfer_due(stay(**online)) == 8500
        assert online_transfer_due(stay(**online, money_transferred=True)) == 0
        assert online_transfer_due(stay(captured_total=10000)) == 0
        assert online_transfer_due(stay()) == 0


class TestPayoutService:
    """Tests for manual overrides and the payout overview."""

    @pytest.fixture
    def payouts(self, db_session):
        return PayoutService(db_session)

    async def test_set_commission_status(self, db_session, payouts):
        rid = await seed_reservation(db_session, "PAY-1")

        outcome = await payouts.set_commission_status(rid, True, actor="ops", note="paid by wire")

        assert outcome["changed"] is True
        assert outcome["reservation"]["commission"]["paid"] is True
        assert outcome["reservation"]["commission"]["status"] == "commission paid"

        entries = await AuditLogRepository(db_session).list_by_reservation(rid, field="commission")
        assert len(entries) == 1
        assert entries[0].actor == "ops"
        assert entries[0].note == "paid by wire"
        assert entries[0].before == {"paid": False, "status": "commission due"}

    async def test_unchanged_status_is_a_no_op(self, db_session, payouts):
        """Setting the current value writes no audit entry."""
        rid = await seed_reservation(db_session, "PAY-2")

        outcome = await payouts.set_commission_status(rid, False)

        assert outcome["changed"] is False
        assert await AuditLogRepository(db_session).list_by_reservation(rid) == []

    async def test_commission_can_be_reverted(self, db_session, payouts):
        rid = await seed_reservation(db_session, "PAY-3")
        await payouts.set_commission_status(rid, True)

        outcome = await payouts.set_commission_status(rid, False, note="wire bounced")

        assert outcome["changed"] is True
        assert outcome["reservation"]["commission"]["paid_at"] is None

    async def test_set_transfer_status(self, db_session, payouts):
        rid = await seed_reservation(db_session, "PAY-4")

        outcome = await payouts.set_transfer_status(rid, True, batch_key="rb_x")

        assert outcome["changed"] is True
        assert outcome["reservation"]["transfer"]["transferred"] is True
        entries = await AuditLogRepository(db_session).list_by_batch("rb_x")
        assert [(e.field, e.before, e.after) for e in entries] == [("money_transferred", False, True)]

    async def test_unknown_reservation(self, payouts):
        with pytest.raises(ReservationNotFound):
            await payouts.set_transfer_status("missing", True)

    async def test_mark_commission_paid(self, db_session, payouts):
        first = await seed_reservation(db_session, "PAY-5")
        second = await seed_reservation(db_session, "PAY-6")
        await payouts.set_commission_status(second, True)

        outcome = await payouts.mark_commission_paid(
            [first, second, first], "hotel_1", actor="ops", paid_at=datetime(2026, 3, 10, 9, 0)
        )

        assert outcome["results"] == [
            {"reservation_id": first, "changed": True},
            {"reservation_id": second, "changed": False},
        ]
        assert outcome["updated_ids"] == [first]
        assert outcome["excluded_ids"] == []
        assert outcome["paid_at"] == "2026-03-10T09:00:00"
        reservation = await ReservationRepository(db_session).get_by_id(first)
        await db_session.commit()
        assert reservation.commission_paid_at == datetime(2026, 3, 10, 9, 0)

    async def test_mark_commission_paid_excludes_ineligible(self, db_session, payouts):
        """Other hotels, unfinished stays, online stays and unknown ids are left untouched."""
        eligible = await seed_reservation(db_session, "PAY-7", reservation_status="early_checked_out")
        other_hotel = await seed_reservation(db_session, "PAY-8", hotel_id="hotel_2")
        in_house = await seed_reservation(db_session, "PAY-9", reservation_status="inhouse")
        online = await seed_reservation(db_session, "PAY-10", payment_label=PaymentLabel.PAID_ONLINE.value)

        outcome = await payouts.mark_commission_paid(
            [eligible, other_hotel, in_house, online, "missing"], "hotel_1"
        )

        assert outcome["updated_ids"] == [eligible]
        assert outcome["excluded_ids"] == [other_hotel, in_house, online, "missing"]
        rows = await ReservationRepository(db_session).list_by_ids([other_hotel, in_house, online])
        await db_session.commit()
        assert [r.commission_paid for r in rows] == [False, False, False]
        assert await AuditLogRepository(db_session).list_by_reservation(other_hotel) == []

    async def test_mark_commission_paid_with_nothing_eligible(self, db_session, payouts):
        rid = await seed_reservation(db_session, "PAY-11", hotel_id="hotel_2")

        with pytest.raises(NoEligibleReservations) as exc_info:
            await payouts.mark_commission_paid([rid, "missing"], "hotel_1")

        assert exc_info.value.details["excluded_ids"] == [rid, "missing"]
        assert await AuditLogRepository(db_session).list_by_reservation(rid) == []

    async def test_mark_commission_paid_normalizes_aware_time(self, db_session, payouts):
        rid = await seed_reservation(db_session, "PAY-12")
        paid_at = datetime(2026, 3, 10, 12, 0, tzinfo=timezone(timedelta(hours=3)))

        outcome = await payouts.mark_commission_paid([rid], "hotel_1", paid_at=paid_at)

        assert outcome["paid_at"] == "2026-03-10T09:00:00"

    async def test_payout_overview(self, db_session, payouts):
        await seed_reservation(db_session, "OV-1", commission_amount=1000)
        await seed_reservation(db_session, "OV-2", commission_amount=500)
        await seed_reservation(
            db_session, "OV-3", total_amount=4000, commission_amount=400,
            payment_label=PaymentLabel.PAID_ONLINE.value,
        )
        await seed_reservation(db_session, "OV-4", commission_amount=700, reservation_status="cancelled")
        await seed_reservation(db_session, "OV-5", commission_amount=900, hotel_id="hotel_2")
        paid = await seed_reservation(db_session, "OV-6", commission_amount=200)
        await payouts.set_commission_status(paid, True)

        overview = await payouts.payout_overview("hotel_1")

        assert overview["hotel_id"] == "hotel_1"
        assert overview["pending"]["offline"]["count"] == 2
        assert overview["pending"]["offline"]["commission_amount"] == 1500
        assert overview["pending"]["online"]["count"] == 1
        assert overview["pending"]["online"]["net_amount"] == 3600
        assert overview["paid"]["offline"]["commission_amount"] == 200
        assert overview["paid"]["transfers"] == {"transferred": 0, "not_transferred": 1}
        assert overview["reconcilable"]["offline_commission_due"] == 1500
        # labelled online but never captured here, so not transfer-eligible
        assert overview["reconcilable"]["online_transfer_due"] == 0

    async def test_payout_overview_all_hotels(self, db_session, payouts):
        await seed_reservation(db_session, "ALL-1", commission_amount=100)
        await seed_reservation(db_session, "ALL-2", commission_amount=100, hotel_id="hotel_2")

        overview = await payouts.payout_overview()

        assert overview["pending"]["all"]["count"] == 2


class TestCandidateListing:
    """Tests for the filtered payouts listing."""

    @pytest.fixture
    def payouts(self, db_session):
        return PayoutService(db_session)

    @pytest.fixture
    async def stays(self, db_session, payouts):
        ids = {
            "offline_due": await seed_reservation(db_session, "LST-1", checkout_date="2026-03-01"),
            "offline_paid": await seed_reservation(db_session, "LST-2", checkout_date="2026-03-05"),
            "online_open": await seed_reservation(
                db_session, "LST-3", checkout_date="2026-03-03",
                payment_label=PaymentLabel.PAID_ONLINE.value,
            ),
            "online_moved": await seed_reservation(
                db_session, "LST-4", checkout_date="2026-02-20",
                payment_label=PaymentLabel.PAID_ONLINE.value,
            ),
            "cancelled": await seed_reservation(
                db_session, "LST-5", checkout_date="2026-03-02", reservation_status="cancelled",
            ),
            "other_hotel": await seed_reservation(
                db_session, "LST-6", checkout_date="2026-03-02", hotel_id="hotel_2",
            ),
        }
        await payouts.set_commission_status(ids["offline_paid"], True)
        await payouts.set_transfer_status(ids["online_moved"], True)
        return ids

    @staticmethod
    def confirmations(listing):
        return [r["confirmation_number"] for r in listing["reservations"]]

    async def test_newest_checkout_first(self, payouts, stays):
        listing = await payouts.list_candidates("hotel_1")

        assert self.confirmations(listing) == ["LST-2", "LST-3", "LST-1", "LST-4"]
        assert listing["pagination"] == {"page": 1, "page_size": 50, "total": 4, "total_pages": 1}
        assert listing["summary"]["offline_count"] == 2
        assert listing["summary"]["online_count"] == 2
        assert listing["summary"]["commission_amount"] == 6000
        assert [r["payment_channel"] for r in listing["reservations"]] == [
            "offline", "online", "offline", "online",
        ]

    async def test_offline_by_commission_flag(self, payouts, stays):
        due = await payouts.list_candidates("hotel_1", channel="offline", commission_paid=False)
        paid = await payouts.list_candidates("hotel_1", channel="offline", commission_paid=True)

        assert self.confirmations(due) == ["LST-1"]
        assert self.confirmations(paid) == ["LST-2"]

    async def test_online_by_transfer_status(self, payouts, stays):
        moved = await payouts.list_candidates("hotel_1", transfer_status="transferred")
        open_ = await payouts.list_candidates("hotel_1", channel="online", transfer_status="not_transferred")

        assert self.confirmations(moved) == ["LST-4"]
        assert self.confirmations(open_) == ["LST-3"]

    async def test_checkout_range_is_end_exclusive(self, payouts, stays):
        listing = await payouts.list_candidates(
            "hotel_1", checkout_from=date(2026, 3, 1), checkout_to=date(2026, 3, 5)
        )

        assert self.confirmations(listing) == ["LST-3", "LST-1"]
        assert listing["filter"]["checkout_to"] == "2026-03-05"

    async def test_pagination(self, payouts, stays):
        listing = await payouts.list_candidates("hotel_1", page=2, page_size=3)

        assert self.confirmations(listing) == ["LST-4"]
        assert listing["pagination"] == {"page": 2, "page_size": 3, "total": 4, "total_pages": 2}
        assert listing["summary"]["count"] == 4

    async def test_all_hotels(self, payouts, stays):
        listing = await payouts.list_candidates()
        assert "LST-6" in self.confirmations(listing)
        assert "LST-5" not in self.confirmations(listing)

    async def test_unknown_filter_values(self, payouts):
        with pytest.raises(ValueError):
            await payouts.list_candidates("hotel_1", channel="cash")
        with pytest.raises(ValueError):
            await payouts.list_candidates("hotel_1", transfer_status="sent")
