# models/customer_model.py
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime, timezone


class Customer(BaseModel):
    """
    Aggregate profile keyed by normalized phone number.
    Totals only ever grow; they move on transitions into `completed`.
    """
    id: Optional[str] = None
    name: str = ""
    phone_number: str
    email: Optional[str] = None
    account_number: str = ""

    total_transactions: int = 0
    total_amount: float = 0.0
    last_transaction_date: Optional[datetime] = None
    status: Literal["active", "inactive"] = "active"

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        populate_by_name = True
