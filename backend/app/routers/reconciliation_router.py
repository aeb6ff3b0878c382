# routers/reconciliation_router.py
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.services.ledger_store import LedgerStore, get_store
from app.services.reconciliation import run_reconciliation
from app.utils.firebase import firestore_run

router = APIRouter(tags=["Reconciliation"])


class ReconciliationRequest(BaseModel):
    date: Optional[Any] = None


@router.post("/reconciliation")
async def reconcile(
    payload: Optional[ReconciliationRequest] = None,
    store: LedgerStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    date_str = payload.date if payload else None
    result = await run_reconciliation(date_str, store=store, settings=settings)
    return {
        "success": True,
        "reconciliation": result["reconciliation"].model_dump(mode="json"),
        "summary": result["summary"],
    }


@router.get("/reconciliations")
async def list_reconciliations(
    limit: Optional[int] = Query(None, ge=1, le=500),
    store: LedgerStore = Depends(get_store),
):
    records = await firestore_run(store.list_reconciliations, limit)
    return {"success": True, "reconciliations": [r.model_dump(mode="json") for r in records]}
