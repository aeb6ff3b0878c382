# routers/customer_router.py
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel

from app.models.customer_model import Customer
from app.services.audit import record_audit
from app.services.ledger_store import LedgerStore, get_store
from app.utils.firebase import firestore_run
from app.utils.validators import validate_customer

router = APIRouter(prefix="/customers", tags=["Customers"])
logger = logging.getLogger("malipo")


class CustomerCreate(BaseModel):
    name: Any = None
    phoneNumber: Any = None
    email: Optional[Any] = None
    accountNumber: Optional[Any] = None


@router.get("")
async def list_customers(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    store: LedgerStore = Depends(get_store),
):
    customers = await firestore_run(store.list_customers, limit)
    return {"success": True, "customers": [c.model_dump(mode="json") for c in customers]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(payload: CustomerCreate, request: Request, store: LedgerStore = Depends(get_store)):
    data = validate_customer(payload.name, payload.phoneNumber, payload.email, payload.accountNumber)
    customer = await firestore_run(store.create_customer, Customer(**data))

    await record_audit(
        store,
        action="Customer Created",
        category="configuration",
        details=f"Customer {customer.name} ({customer.phone_number}) added",
        metadata={"customerId": customer.id},
        ip_address=request.client.host if request.client else None,
    )
    logger.info(f"👤 Customer created → {customer.phone_number}")
    return {"success": True, "customer": customer.model_dump(mode="json")}
