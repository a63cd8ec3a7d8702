from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

# SumUp API payloads

class SumUpTransaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    transaction_code: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    timestamp: Optional[str] = None
    status: Optional[str] = None
    auth_code: Optional[str] = None

class CheckoutResource(BaseModel):
    """Local projection of a SumUp checkout."""
    model_config = ConfigDict(extra="allow")

    id: str
    checkout_reference: str
    amount: int = Field(..., description="Minor currency units, passed through unmodified")
    currency: str
    status: str  # PENDING, PAID, FAILED, EXPIRED
    description: Optional[str] = None
    date: Optional[str] = None
    valid_until: Optional[str] = None
    merchant_code: Optional[str] = None
    hosted_checkout_url: Optional[str] = None
    transactions: List[SumUpTransaction] = []

# Service API

class CreatePaymentRequestIn(BaseModel):
    job_id: Optional[int] = None
    customer_email: str
    amount: int = Field(..., gt=0, description="Amount in minor units e.g. 1000 for 10.00")
    currency: str = "GBP"
    description: str
    checkout_reference: Optional[str] = None  # generated when omitted

class UpdatePaymentRequestIn(BaseModel):
    customer_email: Optional[str] = None
    amount: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = Field(default=None, pattern="^(pending|paid|failed|expired)$")

class PaymentRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: Optional[int] = None
    customer_email: str
    amount: int
    currency: str
    description: str
    checkout_reference: str
    checkout_id: Optional[str] = None
    payment_link: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_by: int
    transaction_id: Optional[str] = None
    transaction_code: Optional[str] = None
    auth_code: Optional[str] = None

class CreatePaymentRequestOut(PaymentRequestOut):
    error: Optional[str] = None  # set when the row exists but no payment link was generated

class PaymentStatusOut(PaymentRequestOut):
    processor_status: Optional[str] = None

class JobRefreshOut(BaseModel):
    message: str
    updated_count: int
    paid_requests: int

class SumUpStatusOut(BaseModel):
    configured: bool
    message: str

class InitPaymentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    checkout_reference: str = Field(..., alias="checkoutReference", min_length=1)

class InitPaymentOut(BaseModel):
    checkout_id: str
    checkout_reference: str
    payment_link: Optional[str] = None
    amount: int
    currency: str
    description: str
