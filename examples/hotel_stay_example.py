"""
End-to-end example of a hotel stay against the simulator gateway.

A guest saves a card at booking, the hotel authorizes the stay, charges
part of it at checkout and an extra later. Two offline-paid stays owe
commission, and reconciliation nets the two money flows.
"""
import asyncio

from reservation_payments.config import Settings
from reservation_payments.database import (
    Base,
    ReservationRepository,
    create_async_engine,
    get_async_session_factory,
)
from reservation_payments.gateway import SimulatorGateway
from reservation_payments.services import ChargeService
from reservation_payments.reconciliation import ReconciliationService


async def run():
    engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    settings = Settings(gateway="simulator")
    async with get_async_session_factory(engine)() as session:
        repo = ReservationRepository(session)
        card_stay = await repo.create(
            hotel_id="seaside_inn",
            hotel_name="Seaside Inn",
            confirmation_number="CNF00042",
            total_amount=12000,  # $120.00 in cents
            capture_limit=12000,
            commission_amount=1800,
            reservation_status="checked_out",
            guest_name="Alex Guest",
            details={"rooms": [{"name": "Double", "quantity": 1, "price": 12000}]},
        )
        for number, total, commission in (("CNF00043", 40000, 6000), ("CNF00044", 28000, 4200)):
            # Paid at the front desk; the hotel owes the commission
            await repo.create(
                hotel_id="seaside_inn",
                confirmation_number=number,
                total_amount=total,
                commission_amount=commission,
                reservation_status="checked_out",
            )
        await session.commit()

        charges = ChargeService(session, gateway=SimulatorGateway(), settings=settings)
        token = await charges.attach_vault_token(card_stay.id, "sim_setup_success")
        print(f"Vaulted {token['brand']} ending {token['last4']}")

        ledger = await charges.authorize_reservation(card_stay.id, amount=8000)
        print(f"Authorization: {ledger.initial_authorization['status']}")

        first = await charges.charge_reservation(card_stay.id, 8000, idempotency_key="checkout-1")
        print(f"Checkout charge via {first.via}: remaining {first.ledger.remaining}")

        extra = await charges.charge_reservation(card_stay.id, 4000, idempotency_key="minibar-1")
        print(f"Minibar charge via {extra.via}: label '{extra.ledger.payment_label}'")

        reconciliation = ReconciliationService(session, settings=settings)
        plan = await reconciliation.plan_hotel("seaside_inn")
        print(f"Plan would settle {plan.settled_amount} ({plan.strategy.value})")

        result = await reconciliation.reconcile_hotel("seaside_inn", actor="example")
        print(reconciliation.generate_report(result, format="detailed_text"))

    await engine.dispose()


if __name__ == "__main__":
    print("=" * 60)
    print("Hotel Stay Example (simulator gateway)")
    print("=" * 60)
    asyncio.run(run())
