# routers/dashboard_router.py
"""
Read-side endpoints the operator dashboard consumes.
All of them are plain store reads; nothing here mutates state.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from fastapi import APIRouter, Depends, Query

from app.core.config import Settings, get_settings
from app.core.errors import NotFoundError
from app.models.audit_model import AuditCategory
from app.models.transaction_model import Transaction, TransactionStatus, TransactionType
from app.services.ledger_store import LedgerStore, get_store
from app.services.reconciliation import day_bounds, today_in
from app.utils.firebase import firestore_run

router = APIRouter(tags=["Dashboard"])


def dashboard_stats(transactions: Iterable[Transaction], day_start: datetime, day_end: datetime) -> Dict[str, Any]:
    total = completed = pending = today_count = 0
    volume = today_volume = 0.0
    for txn in transactions:
        total += 1
        is_today = day_start <= txn.created_at <= day_end
        if is_today:
            today_count += 1
        if txn.status == "pending":
            pending += 1
        elif txn.status == "completed":
            completed += 1
            volume += txn.amount
            if is_today:
                today_volume += txn.amount

    success_rate = (completed / total) * 100 if total else 0
    return {
        "totalTransactions": total,
        "totalVolume": volume,
        "successRate": round(success_rate, 1),
        "pendingCount": pending,
        "todayTransactions": today_count,
        "todayVolume": today_volume,
    }


@router.get("/dashboard/stats")
async def get_dashboard_stats(
    store: LedgerStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    transactions = await firestore_run(store.list_transactions)
    start, end = day_bounds(today_in(settings.TIMEZONE), settings.TIMEZONE)
    return {"success": True, "stats": dashboard_stats(transactions, start, end)}


@router.get("/transactions")
async def list_transactions(
    type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    store: LedgerStore = Depends(get_store),
):
    transactions = await firestore_run(store.list_transactions, type, status, limit)
    return {"success": True, "transactions": [t.model_dump(mode="json") for t in transactions]}


@router.get("/transactions/{doc_id}")
async def get_transaction(doc_id: str, store: LedgerStore = Depends(get_store)):
    txn = await firestore_run(store.get_transaction, doc_id)
    if txn is None:
        raise NotFoundError(f"Transaction {doc_id} not found")
    return {"success": True, "transaction": txn.model_dump(mode="json")}


@router.get("/audit-logs")
async def list_audit_logs(
    category: Optional[AuditCategory] = None,
    limit: int = Query(100, ge=1, le=1000),
    store: LedgerStore = Depends(get_store),
):
    entries = await firestore_run(store.list_audit_logs, category, limit)
    return {"success": True, "logs": [e.model_dump(mode="json") for e in entries]}


@router.get("/callback-logs")
async def list_callback_logs(
    processed: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
    store: LedgerStore = Depends(get_store),
):
    entries = await firestore_run(store.list_callback_logs, processed, limit)
    return {"success": True, "logs": [e.model_dump(mode="json") for e in entries]}
