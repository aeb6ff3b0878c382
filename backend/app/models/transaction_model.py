# models/transaction_model.py
from pydantic import BaseModel, Field
from typing import Dict, FrozenSet, Literal, Optional
from datetime import datetime, timezone

# C2B = collection, B2C = disbursement, B2B = business transfer, RATIBA = recurring debit
TransactionType = Literal["C2B", "B2C", "B2B", "RATIBA"]
TransactionStatus = Literal["pending", "completed", "failed", "reversed"]

TERMINAL_STATUSES: FrozenSet[str] = frozenset({"completed", "failed", "reversed"})

# Allowed status moves. Reversal is the only move out of a terminal state.
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"completed", "failed"}),
    "completed": frozenset({"reversed"}),
    "failed": frozenset(),
    "reversed": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def status_for_result_code(result_code) -> TransactionStatus:
    """Result code 0 settles; anything else fails."""
    try:
        return "completed" if int(result_code) == 0 else "failed"
    except (TypeError, ValueError):
        return "failed"


class Transaction(BaseModel):
    """One payment attempt, as stored in the `transactions` collection."""
    id: Optional[str] = None
    transaction_id: str
    type: TransactionType
    amount: float = Field(..., gt=0)
    currency: str = "KES"
    phone_number: str
    account_reference: str
    description: Optional[str] = None
    status: TransactionStatus = "pending"

    customer_id: Optional[str] = None
    customer_name: Optional[str] = None

    # Correlation keys joining the request to its async callback
    conversation_id: Optional[str] = None
    originator_conversation_id: Optional[str] = None

    # Outcome (null until settled)
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    raw_callback_data: Optional[dict] = None
    reversal_callback_data: Optional[dict] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        populate_by_name = True
