from fastapi import APIRouter, Depends, HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import List, Optional
from ..schemas import (
    CreatePaymentRequestIn,
    CreatePaymentRequestOut,
    InitPaymentIn,
    InitPaymentOut,
    JobRefreshOut,
    PaymentRequestOut,
    PaymentStatusOut,
    SumUpStatusOut,
    UpdatePaymentRequestIn,
)
from ..services import payment_requests as lifecycle
from ..services.exceptions import DuplicateReferenceError, PaymentInitError, PaymentRequestLockedError
from ..services.sumup import SumUpService
from ..db import get_session
from ..models import PaymentRequest
from ..utils import get_actor_id, get_sumup, require_service_api_key

router = APIRouter(tags=["payments"])
staff = [Depends(require_service_api_key)]

async def _get_or_404(session: AsyncSession, payment_request_id: int) -> PaymentRequest:
    payment_request = await lifecycle.get_payment_request(session, payment_request_id)
    if not payment_request:
        raise HTTPException(status_code=404, detail="Payment request not found")
    return payment_request

@router.get("/payment-requests", response_model=List[PaymentRequestOut], dependencies=staff)
async def list_payment_requests(session: AsyncSession = Depends(get_session)):
    return await lifecycle.list_payment_requests(session)

@router.get("/payment-requests/job/{job_id}", response_model=List[PaymentRequestOut], dependencies=staff)
async def list_payment_requests_for_job(job_id: int, session: AsyncSession = Depends(get_session)):
    return await lifecycle.list_payment_requests_for_job(session, job_id)

@router.post("/payment-requests", response_model=CreatePaymentRequestOut, status_code=201, dependencies=staff)
async def create_payment_request(
    payload: CreatePaymentRequestIn,
    session: AsyncSession = Depends(get_session),
    sumup: Optional[SumUpService] = Depends(get_sumup),
    actor_id: int = Depends(get_actor_id),
):
    """Create a payment request and, when SumUp is available, its hosted checkout link."""
    try:
        payment_request, error = await lifecycle.create_payment_request(session, sumup, payload, actor_id)
    except DuplicateReferenceError as e:
        raise HTTPException(status_code=409, detail=str(e))

    out = CreatePaymentRequestOut.model_validate(payment_request)
    out.error = error
    return out

@router.get("/payment-requests/{payment_request_id}", response_model=PaymentRequestOut, dependencies=staff)
async def get_payment_request(payment_request_id: int, session: AsyncSession = Depends(get_session)):
    return await _get_or_404(session, payment_request_id)

@router.get("/payment-requests/{payment_request_id}/status", response_model=PaymentStatusOut, dependencies=staff)
async def payment_request_status(
    payment_request_id: int,
    session: AsyncSession = Depends(get_session),
    sumup: Optional[SumUpService] = Depends(get_sumup),
):
    """Refresh a payment request from SumUp and return it."""
    payment_request = await _get_or_404(session, payment_request_id)
    payment_request, processor_status = await lifecycle.refresh_status(session, sumup, payment_request)

    out = PaymentStatusOut.model_validate(payment_request)
    out.processor_status = processor_status
    return out

@router.put("/payment-requests/{payment_request_id}", response_model=PaymentRequestOut, dependencies=staff)
async def update_payment_request(
    payment_request_id: int,
    payload: UpdatePaymentRequestIn,
    session: AsyncSession = Depends(get_session),
):
    payment_request = await _get_or_404(session, payment_request_id)
    try:
        return await lifecycle.update_payment_request(session, payment_request, payload)
    except PaymentRequestLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))

@router.post("/jobs/{job_id}/payments/refresh", response_model=JobRefreshOut, dependencies=staff)
async def refresh_job_payments(
    job_id: int,
    session: AsyncSession = Depends(get_session),
    sumup: Optional[SumUpService] = Depends(get_sumup),
):
    updated_count, paid_requests = await lifecycle.refresh_job_payment_requests(session, sumup, job_id)
    return JobRefreshOut(
        message=(
            f"Payment status refreshed. {updated_count} requests updated, "
            f"{paid_requests} payments completed."
        ),
        updated_count=updated_count,
        paid_requests=paid_requests,
    )

@router.get("/sumup/status", response_model=SumUpStatusOut, dependencies=staff)
async def sumup_status(sumup: Optional[SumUpService] = Depends(get_sumup)):
    configured = sumup is not None
    return SumUpStatusOut(
        configured=configured,
        message=(
            "SumUp integration is configured and ready"
            if configured
            else "SumUp integration requires SUMUP_CLIENT_ID, SUMUP_CLIENT_SECRET and SUMUP_MERCHANT_CODE"
        ),
    )

# Public: called by the customer-facing payment page
@router.post("/payments/init", response_model=InitPaymentOut)
async def init_payment(
    payload: InitPaymentIn,
    session: AsyncSession = Depends(get_session),
    sumup: Optional[SumUpService] = Depends(get_sumup),
):
    try:
        return await lifecycle.init_payment(session, sumup, payload.checkout_reference.strip())
    except PaymentInitError as e:
        raise HTTPException(status_code=400, detail=str(e))
