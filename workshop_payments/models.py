from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class PaymentRequest(SQLModel, table=True):
    __tablename__ = "payment_requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: Optional[int] = Field(default=None, index=True)
    customer_email: str
    amount: int  # minor units, e.g. pence
    currency: str = "GBP"
    description: str

    checkout_reference: str = Field(index=True, unique=True)
    checkout_id: Optional[str] = Field(default=None, index=True)  # SumUp checkout id
    payment_link: Optional[str] = None

    status: str = Field(default="pending", index=True)  # pending, paid, failed, expired

    # all timestamps are timezone-aware UTC
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    created_by: int

    # populated from the SumUp transaction once paid
    transaction_id: Optional[str] = None
    transaction_code: Optional[str] = None
    auth_code: Optional[str] = None
