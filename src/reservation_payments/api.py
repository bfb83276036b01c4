import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Header, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import verify_api_key, limiter, CHARGE_RATE_LIMIT, ADMIN_RATE_LIMIT
from .database import get_db, init_db, close_db, CaptureVia
from .exceptions import (
    PaymentsError,
    InvalidAmount,
    ReservationNotFound,
    LimitExceeded,
    LimitNotConfigured,
    LimitUpdateRejected,
    IdempotencyConflict,
    LedgerStateError,
    ReconciliationInfeasible,
    NoEligibleReservations,
    GatewayUnavailable,
)
from .gateway import GatewayAdapter, get_gateway
from .reconciliation.api import router as reconciliation_router, payouts_router
from .services import ChargeService, LedgerService

logger = logging.getLogger(__name__)

# Anything not listed is a payment failure (402).
ERROR_STATUS = (
    (ReservationNotFound, 404),
    (IdempotencyConflict, 409),
    (LedgerStateError, 409),
    (GatewayUnavailable, 503),
    (InvalidAmount, 400),
    (LimitExceeded, 400),
    (LimitNotConfigured, 400),
    (LimitUpdateRejected, 400),
    (ReconciliationInfeasible, 400),
    (NoEligibleReservations, 400),
)

_gateway: Optional[GatewayAdapter] = None


def get_gateway_adapter() -> GatewayAdapter:
    """One gateway adapter per process; override in tests."""
    global _gateway
    if _gateway is None:
        _gateway = get_gateway()
    return _gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Reservation Payments - Capture Ledger API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(reconciliation_router)
app.include_router(payouts_router)


def status_for(error: PaymentsError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 402


@app.exception_handler(PaymentsError)
async def payments_error_handler(request: Request, exc: PaymentsError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


class ChargeBody(BaseModel):
    amount: int = Field(..., description="Amount in minor units of the reservation currency")
    idempotency_key: Optional[str] = None
    actor: str = "system"


class AuthorizeBody(BaseModel):
    amount: Optional[int] = None
    vault_token_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    actor: str = "system"


class VaultBody(BaseModel):
    setup_token: str = Field(..., min_length=1)
    actor: str = "system"


class LinkCaptureBody(BaseModel):
    order_ref: str = Field(..., min_length=1)
    amount: Optional[int] = None
    idempotency_key: Optional[str] = None
    actor: str = "system"


class ResolvePendingBody(BaseModel):
    amount: int
    invoice_ref: str = Field(..., min_length=1)
    order_ref: Optional[str] = None
    via: CaptureVia = CaptureVia.MIT
    actor: str = "system"


class LimitBody(BaseModel):
    new_limit: int
    actor: str = "system"


class BoundsBody(BaseModel):
    limit: int
    currency: str = Field(..., min_length=3, max_length=3)
    actor: str = "system"


@app.get("/health")
async def health(gateway: GatewayAdapter = Depends(get_gateway_adapter)):
    return {"status": "healthy", "gateway": gateway.health_check()}


@app.post("/reservations/{reservation_id}/charges")
@limiter.limit(CHARGE_RATE_LIMIT)
async def charge_reservation(
    request: Request,
    reservation_id: str,
    body: ChargeBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    service = ChargeService(db, gateway=gateway)
    result = await service.charge_reservation(
        reservation_id,
        body.amount,
        idempotency_key=idempotency_key or body.idempotency_key,
        actor=body.actor,
    )
    return result.model_dump(mode="json")


@app.post("/reservations/{reservation_id}/authorization")
@limiter.limit(CHARGE_RATE_LIMIT)
async def authorize_reservation(
    request: Request,
    reservation_id: str,
    body: AuthorizeBody,
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    service = ChargeService(db, gateway=gateway)
    snapshot = await service.authorize_reservation(
        reservation_id,
        amount=body.amount,
        vault_token_id=body.vault_token_id,
        idempotency_key=body.idempotency_key,
        actor=body.actor,
    )
    return snapshot.model_dump(mode="json")


@app.delete("/reservations/{reservation_id}/authorization")
async def void_authorization(
    reservation_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    snapshot = await ChargeService(db, gateway=gateway).void_authorization(reservation_id)
    return snapshot.model_dump(mode="json")


@app.post("/reservations/{reservation_id}/vault")
async def attach_vault_token(
    reservation_id: str,
    body: VaultBody,
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    service = ChargeService(db, gateway=gateway)
    return await service.attach_vault_token(reservation_id, body.setup_token, actor=body.actor)


@app.post("/reservations/{reservation_id}/link-captures")
@limiter.limit(CHARGE_RATE_LIMIT)
async def capture_approved_order(
    request: Request,
    reservation_id: str,
    body: LinkCaptureBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    service = ChargeService(db, gateway=gateway)
    result = await service.capture_approved_order(
        reservation_id,
        body.order_ref,
        amount=body.amount,
        idempotency_key=idempotency_key or body.idempotency_key,
        actor=body.actor,
    )
    return result.model_dump(mode="json")


@app.post("/reservations/{reservation_id}/pending-resolutions")
@limiter.limit(ADMIN_RATE_LIMIT)
async def resolve_pending_charge(
    request: Request,
    reservation_id: str,
    body: ResolvePendingBody,
    db: AsyncSession = Depends(get_db),
    gateway: GatewayAdapter = Depends(get_gateway_adapter),
    api_key: str = Depends(verify_api_key),
):
    service = ChargeService(db, gateway=gateway)
    outcome = await service.resolve_pending_charge(
        reservation_id,
        body.amount,
        body.invoice_ref,
        order_ref=body.order_ref,
        via=body.via.value,
        actor=body.actor,
    )
    return {**outcome, "ledger": outcome["ledger"].model_dump(mode="json")}


@app.get("/reservations/{reservation_id}/ledger")
async def get_ledger(
    reservation_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    snapshot = await LedgerService(db).get_ledger(reservation_id)
    return snapshot.model_dump(mode="json")


@app.put("/reservations/{reservation_id}/ledger/limit")
async def update_capture_limit(
    reservation_id: str,
    body: LimitBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    snapshot = await LedgerService(db).update_capture_limit(
        reservation_id, body.new_limit, actor=body.actor
    )
    return snapshot.model_dump(mode="json")


@app.post("/reservations/{reservation_id}/ledger/bounds")
async def open_bounds(
    reservation_id: str,
    body: BoundsBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    snapshot = await LedgerService(db).open_bounds(
        reservation_id, body.limit, body.currency, actor=body.actor
    )
    return snapshot.model_dump(mode="json")
