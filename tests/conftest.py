"""Shared test fixtures and configuration."""

import os
import itertools
import pytest
from unittest.mock import patch
from typing import Optional

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENTS_GATEWAY", "simulator")

from reservation_payments.config import Settings
from reservation_payments.database import (
    Base,
    ReservationRepository,
    VaultTokenRepository,
    create_async_engine,
    get_async_session_factory,
)
from reservation_payments.gateway import SimulatorGateway
from reservation_payments.services import ChargeService


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
def settings():
    """Settings with fast gateway retries."""
    return Settings(
        gateway="simulator",
        gateway_timeout_seconds=5.0,
        status_read_attempts=2,
        status_read_backoff_seconds=0.0,
    )


@pytest.fixture
def simulator():
    """Fresh simulator gateway."""
    return SimulatorGateway()


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def file_db_engine(tmp_path):
    """File-backed SQLite database, for tests that need concurrent sessions."""
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


async def seed_reservation(
    session,
    confirmation_number: str,
    hotel_id: str = "hotel_1",
    total_amount: int = 10000,
    capture_limit: Optional[int] = 10000,
    commission_amount: int = 1500,
    reservation_status: str = "checked_out",
    vault_token_ref: Optional[str] = None,
    **kwargs,
) -> str:
    """Insert a reservation (and optionally a vault token) and commit it."""
    repo = ReservationRepository(session)
    reservation = await repo.create(
        hotel_id=hotel_id,
        confirmation_number=confirmation_number,
        total_amount=total_amount,
        capture_limit=capture_limit,
        commission_amount=commission_amount,
        reservation_status=reservation_status,
        **kwargs,
    )
    if vault_token_ref:
        tokens = VaultTokenRepository(session)
        token = await tokens.get_by_gateway_ref(vault_token_ref)
        if token is None:
            token = await tokens.create(
                gateway_token_ref=vault_token_ref,
                owner_ref="cust_test",
                brand="VISA",
                last4="4242",
                expiry="2030-12",
            )
        await repo.attach_vault_token(reservation.id, token.id)
    reservation_id = reservation.id
    await session.commit()
    return reservation_id


@pytest.fixture
def make_reservation(db_session):
    """Factory creating committed reservations with unique confirmation numbers."""
    counter = itertools.count(1)

    async def _make(**kwargs) -> str:
        kwargs.setdefault("confirmation_number", f"CNF{next(counter):05d}")
        return await seed_reservation(db_session, **kwargs)

    return _make


@pytest.fixture
def charge_service(db_session, simulator, settings):
    """ChargeService wired to the simulator."""
    return ChargeService(db_session, gateway=simulator, settings=settings)
