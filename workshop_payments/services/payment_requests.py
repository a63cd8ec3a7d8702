"""
Payment request lifecycle.

Rows are written first and the SumUp checkout is attached afterwards, so a
request raised while SumUp is down still exists and can be given a link
later (on refresh or when the customer opens the payment page).
"""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..config import settings
from ..models import PaymentRequest, utcnow
from ..schemas import CheckoutResource, CreatePaymentRequestIn, InitPaymentOut, UpdatePaymentRequestIn
from ..utils import generate_checkout_reference
from .exceptions import (
    CheckoutCreationError,
    DuplicateReferenceError,
    PaymentInitError,
    PaymentRequestLockedError,
    SumUpError,
)
from .sumup import SumUpClient, SumUpService

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "PENDING": "pending",
    "PAID": "paid",
    "FAILED": "failed",
    "EXPIRED": "expired",
}


async def list_payment_requests(session: AsyncSession) -> List[PaymentRequest]:
    res = await session.exec(select(PaymentRequest).order_by(col(PaymentRequest.created_at).desc()))
    return list(res.all())


async def list_payment_requests_for_job(session: AsyncSession, job_id: int) -> List[PaymentRequest]:
    q = (
        select(PaymentRequest)
        .where(PaymentRequest.job_id == job_id)
        .order_by(col(PaymentRequest.created_at).desc())
    )
    res = await session.exec(q)
    return list(res.all())


async def get_payment_request(session: AsyncSession, payment_request_id: int) -> Optional[PaymentRequest]:
    return await session.get(PaymentRequest, payment_request_id)


async def get_by_reference(session: AsyncSession, reference: str) -> Optional[PaymentRequest]:
    res = await session.exec(select(PaymentRequest).where(PaymentRequest.checkout_reference == reference))
    return res.one_or_none()


async def _save(session: AsyncSession, payment_request: PaymentRequest) -> PaymentRequest:
    session.add(payment_request)
    await session.commit()
    await session.refresh(payment_request)
    return payment_request


def _matches(payment_request: PaymentRequest, checkout: CheckoutResource) -> bool:
    return (
        checkout.amount == payment_request.amount
        and checkout.currency.upper() == payment_request.currency.upper()
    )


async def _find_checkout(sumup: SumUpService, payment_request: PaymentRequest) -> Optional[CheckoutResource]:
    """Look up the checkout issued for this request's reference.

    A checkout whose amount or currency differs from the row is not adopted.
    """
    reference = payment_request.checkout_reference
    for checkout in await sumup.checkouts.list_checkouts(reference):
        if checkout.checkout_reference != reference:
            continue
        if _matches(payment_request, checkout):
            return checkout
        logger.error(
            f"Checkout {checkout.id} for {reference} is for {checkout.amount} {checkout.currency}, "
            f"expected {payment_request.amount} {payment_request.currency}"
        )
    return None


async def _create_or_recover_checkout(sumup: SumUpService, payment_request: PaymentRequest) -> CheckoutResource:
    reference = payment_request.checkout_reference
    try:
        return await sumup.checkouts.create_checkout(
            reference,
            payment_request.amount,
            payment_request.currency,
            payment_request.description,
        )
    except CheckoutCreationError as e:
        # 409: a checkout with this reference already exists, e.g. created before a crash
        if e.status_code != 409:
            raise
        logger.warning(f"Checkout for {reference} already exists at SumUp, reconciling")
        existing = await _find_checkout(sumup, payment_request)
        if existing is None:
            raise CheckoutCreationError(
                f"Checkout for {reference} exists at SumUp but no matching checkout was found",
                status_code=e.status_code,
                body=e.body,
            ) from e
        return existing


def _attach_checkout(payment_request: PaymentRequest, checkout: CheckoutResource):
    now = utcnow()
    payment_request.checkout_id = checkout.id
    payment_request.payment_link = (
        SumUpClient.get_hosted_checkout_url(checkout) or SumUpClient.generate_payment_link(checkout.id)
    )
    if payment_request.expires_at is None:
        payment_request.expires_at = now + timedelta(hours=settings.payment_link_ttl_hours)
    payment_request.updated_at = now


def apply_checkout_status(payment_request: PaymentRequest, checkout: CheckoutResource) -> bool:
    """Copy the processor status onto the row. Returns True if the status changed."""
    new_status = STATUS_MAP.get(checkout.status.upper(), payment_request.status)
    if new_status == payment_request.status:
        return False

    now = utcnow()
    payment_request.status = new_status
    payment_request.updated_at = now

    if new_status == "paid":
        payment_request.paid_at = now
        txn = next(
            (t for t in checkout.transactions if (t.status or "").upper() == "SUCCESSFUL"),
            checkout.transactions[0] if checkout.transactions else None,
        )
        if txn is not None:
            payment_request.transaction_id = txn.id
            payment_request.transaction_code = txn.transaction_code
            payment_request.auth_code = txn.auth_code
    return True


async def create_payment_request(
    session: AsyncSession,
    sumup: Optional[SumUpService],
    data: CreatePaymentRequestIn,
    actor_id: int,
) -> Tuple[PaymentRequest, Optional[str]]:
    """Persist a payment request and try to give it a hosted checkout link.

    Returns the row plus an error message when no link could be generated.
    The row is kept either way.
    """
    reference = data.checkout_reference or generate_checkout_reference()
    if await get_by_reference(session, reference):
        raise DuplicateReferenceError(f"Checkout reference {reference} is already in use")

    payment_request = PaymentRequest(
        job_id=data.job_id,
        customer_email=data.customer_email,
        amount=data.amount,
        currency=data.currency.upper(),
        description=data.description,
        checkout_reference=reference,
        created_by=actor_id,
    )
    try:
        payment_request = await _save(session, payment_request)
    except IntegrityError as e:
        # lost a race with another create using the same reference
        await session.rollback()
        raise DuplicateReferenceError(f"Checkout reference {reference} is already in use") from e

    if sumup is None:
        logger.warning(f"SumUp not configured, payment request {payment_request.id} has no payment link")
        return payment_request, "SumUp integration not configured"

    try:
        checkout = await _create_or_recover_checkout(sumup, payment_request)
    except SumUpError as e:
        logger.error(f"SumUp checkout creation failed for {reference}: {e}")
        return payment_request, "Payment link generation failed - SumUp integration unavailable"

    _attach_checkout(payment_request, checkout)
    payment_request = await _save(session, payment_request)
    logger.info(
        f"Payment request {payment_request.id} created for job {payment_request.job_id or 'N/A'} "
        f"({payment_request.amount} {payment_request.currency}, checkout {checkout.id})"
    )
    return payment_request, None


async def refresh_status(
    session: AsyncSession,
    sumup: Optional[SumUpService],
    payment_request: PaymentRequest,
) -> Tuple[PaymentRequest, Optional[str]]:
    """Poll SumUp for the latest checkout status.

    Returns the row and the raw processor status (None when SumUp was not asked).
    SumUp errors propagate to the caller.
    """
    if sumup is None or payment_request.status == "paid":
        return payment_request, None

    if payment_request.checkout_id:
        checkout = await sumup.checkouts.get_checkout(payment_request.checkout_id)
    else:
        checkout = await _find_checkout(sumup, payment_request)
        if checkout is None:
            return payment_request, None
        logger.info(f"Recovered checkout {checkout.id} for {payment_request.checkout_reference}")
        _attach_checkout(payment_request, checkout)

    previous = payment_request.status
    if apply_checkout_status(payment_request, checkout):
        logger.info(f"Payment request {payment_request.id}: {previous} -> {payment_request.status}")

    payment_request = await _save(session, payment_request)
    return payment_request, checkout.status


async def refresh_job_payment_requests(
    session: AsyncSession,
    sumup: Optional[SumUpService],
    job_id: int,
) -> Tuple[int, int]:
    """Refresh every pending request of a job. Returns (updated_count, paid_requests)."""
    updated_count = 0
    paid_requests = 0
    if sumup is None:
        return updated_count, paid_requests

    for payment_request in await list_payment_requests_for_job(session, job_id):
        if payment_request.status != "pending":
            continue

        previous = payment_request.status
        try:
            payment_request, _ = await refresh_status(session, sumup, payment_request)
        except SumUpError as e:
            logger.error(f"Error checking SumUp status for payment request {payment_request.id}: {e}")
            continue

        if payment_request.status != previous:
            updated_count += 1
            if payment_request.status == "paid":
                paid_requests += 1

    return updated_count, paid_requests


async def update_payment_request(
    session: AsyncSession,
    payment_request: PaymentRequest,
    changes: UpdatePaymentRequestIn,
) -> PaymentRequest:
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    if payment_request.status == "paid" and set(fields) - {"status"}:
        raise PaymentRequestLockedError("Paid payment requests can only have their status changed")

    if "currency" in fields:
        fields["currency"] = fields["currency"].upper()

    # the SumUp checkout was issued for the stored amount and currency
    if payment_request.checkout_id and any(
        key in fields and fields[key] != getattr(payment_request, key) for key in ("amount", "currency")
    ):
        raise PaymentRequestLockedError(
            "Amount and currency cannot change once a checkout has been issued; raise a new payment request"
        )
    for key, value in fields.items():
        setattr(payment_request, key, value)

    now = utcnow()
    if fields.get("status") == "paid" and payment_request.paid_at is None:
        payment_request.paid_at = now
    payment_request.updated_at = now
    return await _save(session, payment_request)


async def init_payment(
    session: AsyncSession,
    sumup: Optional[SumUpService],
    reference: str,
) -> InitPaymentOut:
    """Resolve a checkout reference for the public payment page."""
    payment_request = await get_by_reference(session, reference)
    if payment_request is None:
        raise PaymentInitError("Payment request not found")
    if payment_request.status == "paid":
        raise PaymentInitError("This payment request has already been paid")
    if payment_request.status != "pending":
        raise PaymentInitError(f"This payment request is {payment_request.status}")
    if sumup is None:
        raise PaymentInitError("Online payments are not configured")

    if not payment_request.checkout_id:
        try:
            checkout = await _create_or_recover_checkout(sumup, payment_request)
        except SumUpError as e:
            logger.error(f"Could not start checkout for {reference}: {e}")
            raise PaymentInitError("Unable to start payment, please try again later") from e
        _attach_checkout(payment_request, checkout)
        payment_request = await _save(session, payment_request)

    return InitPaymentOut(
        checkout_id=payment_request.checkout_id,
        checkout_reference=payment_request.checkout_reference,
        payment_link=payment_request.payment_link,
        amount=payment_request.amount,
        currency=payment_request.currency,
        description=payment_request.description,
    )
