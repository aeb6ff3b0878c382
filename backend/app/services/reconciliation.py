# services/reconciliation.py
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple
from zoneinfo import ZoneInfo

from app.core.config import Settings
from app.models.reconciliation_model import ReconciliationRecord
from app.models.transaction_model import Transaction
from app.services.audit import record_audit
from app.utils.firebase import firestore_run
from app.utils.validators import validate_date

logger = logging.getLogger("malipo.reconciliation")


def today_in(tz_name: str) -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def day_bounds(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """[00:00:00.000, 23:59:59.999] of `day` in the given zone, as UTC instants."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def summarize(transactions: Iterable[Transaction]) -> Dict[str, float]:
    total = matched = unmatched = 0
    total_amount = discrepancy = 0.0
    for txn in transactions:
        total += 1
        total_amount += txn.amount
        if txn.status == "completed":
            matched += 1
        elif txn.status in ("pending", "failed"):
            unmatched += 1
            # Only pending money is at risk
            if txn.status == "pending":
                discrepancy += txn.amount
    return {
        "total_transactions": total,
        "total_amount": total_amount,
        "matched_transactions": matched,
        "unmatched_transactions": unmatched,
        "discrepancy_amount": discrepancy,
    }


def derive_status(unmatched: int, discrepancy_amount: float) -> str:
    if unmatched == 0:
        return "reconciled"
    if discrepancy_amount > 0:
        return "discrepancy"
    return "pending"


async def run_reconciliation(date_str: Optional[str] = None, *, store, settings: Settings) -> Dict:
    """
    Reconcile one calendar day (default: today in the configured zone).
    Re-running a date replaces that date's record.
    """
    date_str = validate_date(date_str)
    day = date.fromisoformat(date_str) if date_str else today_in(settings.TIMEZONE)
    start, end = day_bounds(day, settings.TIMEZONE)

    transactions = await firestore_run(store.transactions_between, start, end)
    totals = summarize(transactions)
    status = derive_status(totals["unmatched_transactions"], totals["discrepancy_amount"])

    pending_count = sum(1 for t in transactions if t.status == "pending")
    failed_count = sum(1 for t in transactions if t.status == "failed")
    notes = (
        f"Auto-reconciliation: {totals['matched_transactions']} completed, "
        f"{pending_count} pending, {failed_count} failed"
    )

    record = await firestore_run(store.upsert_reconciliation, ReconciliationRecord(
        reconciliation_date=day.isoformat(),
        status=status,
        notes=notes,
        **totals,
    ))

    summary = {
        "date": day.isoformat(),
        "totalTransactions": totals["total_transactions"],
        "totalAmount": totals["total_amount"],
        "matchedTransactions": totals["matched_transactions"],
        "unmatchedTransactions": totals["unmatched_transactions"],
        "discrepancyAmount": totals["discrepancy_amount"],
        "status": status,
    }

    await record_audit(
        store,
        action="Reconciliation Completed",
        category="reconciliation",
        details=f"Reconciled {totals['total_transactions']} transactions for {day.isoformat()}",
        metadata=summary,
    )
    logger.info(
        f"📊 Reconciliation {day.isoformat()} → {status} | "
        f"{totals['matched_transactions']}/{totals['total_transactions']} matched, "
        f"KES {totals['discrepancy_amount']:,.2f} at risk"
    )
    return {"reconciliation": record, "summary": summary}


def previous_day(tz_name: str) -> str:
    return (today_in(tz_name) - timedelta(days=1)).isoformat()
