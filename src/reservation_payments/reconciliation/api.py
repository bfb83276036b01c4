"""API endpoints for reconciliation and payout operations."""

import logging
from datetime import date, datetime
from typing import Optional, List, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..auth import verify_api_key
from ..payouts import PayoutService
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
payouts_router = APIRouter(prefix="/payouts", tags=["payouts"])

REPORT_FORMATS = ("json", "csv", "text", "detailed_text")


class ReconcileHotelBody(BaseModel):
    """Request body for reconciling one hotel."""
    tolerance: Optional[int] = Field(None, ge=0, description="Override of the configured tolerance (minor units)")
    dry_run: bool = Field(default=False, description="Compute the plan without writing")
    actor: str = Field(default="admin", description="Who triggered the run")


class MarkCommissionPaidBody(BaseModel):
    hotel_id: str = Field(..., min_length=1, description="Hotel that paid the commission")
    reservation_ids: List[str] = Field(..., min_length=1)
    paid_at: Optional[datetime] = Field(None, description="When the hotel paid; now when omitted")
    note: Optional[str] = None
    actor: str = Field(default="admin")


class CommissionStatusBody(BaseModel):
    paid: bool
    note: Optional[str] = None
    actor: str = Field(default="admin")


class TransferStatusBody(BaseModel):
    transferred: bool
    note: Optional[str] = None
    actor: str = Field(default="admin")


@router.post("/hotels/{hotel_id}")
async def reconcile_hotel(
    hotel_id: str,
    body: ReconcileHotelBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Run automatic reconciliation for a hotel.

    Marks the chosen offline reservations commission-paid and the chosen
    online reservations transferred. With ``dry_run`` nothing is written.
    """
    service = ReconciliationService(db)
    logger.info(f"Reconciliation requested for hotel {hotel_id} by {body.actor}")
    result = await service.reconcile_hotel(
        hotel_id,
        tolerance=body.tolerance,
        actor=body.actor,
        dry_run=body.dry_run,
    )
    return result.to_full_dict()


@router.get("/hotels/{hotel_id}/plan")
async def plan_hotel(
    hotel_id: str,
    tolerance: Optional[int] = Query(default=None, ge=0),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Preview what a reconciliation run would settle."""
    service = ReconciliationService(db)
    plan = await service.plan_hotel(hotel_id, tolerance=tolerance)
    data = plan.model_dump(mode="json")
    data["remainder"] = plan.remainder
    return data


@router.post("/hotels/{hotel_id}/report")
async def reconcile_hotel_report(
    hotel_id: str,
    body: ReconcileHotelBody,
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Run (or dry-run) reconciliation and return a formatted report."""
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"format must be one of: {', '.join(REPORT_FORMATS)}"
        )

    service = ReconciliationService(db)
    result = await service.reconcile_hotel(
        hotel_id,
        tolerance=body.tolerance,
        actor=body.actor,
        dry_run=body.dry_run,
    )

    if format == "json":
        return result.to_full_dict()
    output = service.generate_report(result, format=format)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.get("/hotels/{hotel_id}/batches")
async def list_batches(
    hotel_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    service = ReconciliationService(db)
    return {"hotel_id": hotel_id, "batches": await service.list_batches(hotel_id, limit=limit)}


@router.get("/batches/{batch_key}")
async def get_batch(
    batch_key: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    service = ReconciliationService(db)
    batch = await service.get_batch(batch_key)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_key} not found")
    return batch


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}


@payouts_router.get("/overview")
async def payout_overview(
    hotel_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Pending and settled amounts for commissions and hotel transfers."""
    return await PayoutService(db).payout_overview(hotel_id)


@payouts_router.get("/candidates")
async def list_candidates(
    hotel_id: Optional[str] = Query(default=None),
    channel: Optional[Literal["online", "offline"]] = Query(default=None),
    commission_paid: Optional[bool] = Query(default=None),
    transfer_status: Optional[Literal["transferred", "not_transferred"]] = Query(default=None),
    checkout_from: Optional[date] = Query(default=None),
    checkout_to: Optional[date] = Query(default=None, description="Exclusive upper bound"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Reservations whose commission or transfer can be settled, newest checkout first."""
    return await PayoutService(db).list_candidates(
        hotel_id=hotel_id,
        channel=channel,
        commission_paid=commission_paid,
        transfer_status=transfer_status,
        checkout_from=checkout_from,
        checkout_to=checkout_to,
        page=page,
        page_size=page_size,
    )


@payouts_router.post("/commission/mark-paid")
async def mark_commission_paid(
    body: MarkCommissionPaidBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Manually mark commissions as paid, e.g. after a bank transfer."""
    return await PayoutService(db).mark_commission_paid(
        body.reservation_ids,
        body.hotel_id,
        actor=body.actor,
        note=body.note,
        paid_at=body.paid_at,
    )


@payouts_router.put("/reservations/{reservation_id}/commission")
async def set_commission_status(
    reservation_id: str,
    body: CommissionStatusBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    return await PayoutService(db).set_commission_status(
        reservation_id, body.paid, actor=body.actor, note=body.note
    )


@payouts_router.put("/reservations/{reservation_id}/transfer")
async def set_transfer_status(
    reservation_id: str,
    body: TransferStatusBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    return await PayoutService(db).set_transfer_status(
        reservation_id, body.transferred, actor=body.actor, note=body.note
    )
