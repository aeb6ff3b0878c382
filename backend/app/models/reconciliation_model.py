# models/reconciliation_model.py
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime, timezone

ReconciliationStatus = Literal["reconciled", "pending", "discrepancy"]


class ReconciliationRecord(BaseModel):
    """One row per calendar date; the date is the document id."""
    id: Optional[str] = None
    reconciliation_date: str
    total_transactions: int = 0
    total_amount: float = 0.0
    matched_transactions: int = 0
    unmatched_transactions: int = 0
    discrepancy_amount: float = 0.0
    status: ReconciliationStatus = "pending"
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
