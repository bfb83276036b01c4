"""Tests for the reservation-reconcile command line."""

import asyncio
import json

import pytest

from reservation_payments.database import (
    Base,
    CaptureRecord,
    ReservationRepository,
    create_async_engine,
    get_async_session_factory,
)
from reservation_payments.ledger import CaptureLedger
from reservation_payments.reconciliation.cli import create_parser, main

from conftest import seed_reservation


async def _seed(database_url):
    engine = create_async_engine(database_url=database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        async with get_async_session_factory(engine)() as session:
            await seed_reservation(session, "CLI-OFF", commission_amount=2500)
            online = await seed_reservation(
                session, "CLI-ON", total_amount=3000, capture_limit=3000, commission_amount=500
            )
            ledger = CaptureLedger(session)
            await ledger.reserve(online, 3000)
            await ledger.finalize(online, 3000, True, CaptureRecord(
                capture_ref="CAP-CLI", status="COMPLETED", amount=3000, currency="USD", via="MIT",
            ))
    finally:
        await engine.dispose()


async def _flags(database_url):
    engine = create_async_engine(database_url=database_url)
    try:
        async with get_async_session_factory(engine)() as session:
            reservations = await ReservationRepository(session).list_by_hotel("hotel_1")
            return {r.confirmation_number: (r.commission_paid, r.money_transferred) for r in reservations}
    finally:
        await engine.dispose()


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    asyncio.run(_seed(url))
    return url


class TestParser:
    """Tests for argument parsing."""

    def test_reconcile_defaults(self):
        args = create_parser().parse_args(["reconcile", "--hotel", "H1"])

        assert args.hotel == "H1"
        assert args.tolerance is None
        assert args.dry_run is False
        assert args.format == "json"
        assert args.actor == "cli"

    def test_unknown_format_exits(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["reconcile", "--hotel", "H1", "--format", "xml"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "reservation-reconcile" in capsys.readouterr().out

    def test_negative_tolerance(self):
        assert main(["reconcile", "--hotel", "H1", "--tolerance", "-5"]) == 1


class TestCommands:
    """Tests running the commands against a SQLite file."""

    def test_dry_run_writes_nothing(self, database_url, capsys):
        code = main(["--database-url", database_url, "reconcile", "--hotel", "hotel_1", "--dry-run"])

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["dry_run"] is True
        assert report["settled_amount"] == 2500
        assert asyncio.run(_flags(database_url)) == {
            "CLI-OFF": (False, False),
            "CLI-ON": (False, False),
        }

    def test_reconcile_text_report(self, database_url, capsys):
        code = main([
            "--database-url", database_url,
            "reconcile", "--hotel", "hotel_1", "--format", "text", "--actor", "finance",
        ])

        assert code == 0
        out = capsys.readouterr().out
        assert "HOTEL RECONCILIATION SUMMARY" in out
        assert "Status: completed" in out
        assert "Settled Amount: 25.00" in out
        assert asyncio.run(_flags(database_url)) == {
            "CLI-OFF": (True, False),
            "CLI-ON": (False, True),
        }

    def test_report_to_file(self, database_url, tmp_path):
        output = tmp_path / "report.csv"

        code = main([
            "--database-url", database_url,
            "reconcile", "--hotel", "hotel_1", "--format", "csv", "--output", str(output),
        ])

        assert code == 0
        lines = output.read_text().splitlines()
        assert lines[0].startswith("batch_key,hotel_id,side")
        assert len(lines) == 3

    def test_overview(self, database_url, capsys):
        code = main(["--database-url", database_url, "overview", "--hotel", "hotel_1"])

        assert code == 0
        overview = json.loads(capsys.readouterr().out)
        assert overview["reconcilable"] == {"offline_commission_due": 2500, "online_transfer_due": 2500}
