# models/subscription_model.py
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import date, datetime, timezone

Frequency = Literal["daily", "weekly", "monthly"]
SubscriptionStatus = Literal["active", "paused", "cancelled"]


class RatibaSubscription(BaseModel):
    """Recurring-payment (M-Pesa Ratiba) standing order tracked locally."""
    id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: str
    phone_number: str
    amount: float = Field(..., gt=0)
    frequency: Frequency = "monthly"
    start_date: date
    next_payment_date: date
    status: SubscriptionStatus = "active"
    account_reference: str

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
