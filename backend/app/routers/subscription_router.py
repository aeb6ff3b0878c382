# routers/subscription_router.py → Ratiba standing orders (local records only)
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from app.core.errors import ValidationError
from app.models.subscription_model import RatibaSubscription, SubscriptionStatus
from app.services.audit import record_audit
from app.services.ledger_store import LedgerStore, get_store
from app.utils.firebase import firestore_run
from app.utils.validators import validate_subscription

router = APIRouter(prefix="/subscriptions", tags=["Ratiba"])
logger = logging.getLogger("malipo")

SUBSCRIPTION_STATUSES = ("active", "paused", "cancelled")


class SubscriptionCreate(BaseModel):
    customerName: Any = None
    phoneNumber: Any = None
    amount: Any = None
    frequency: Any = "monthly"
    startDate: Any = None
    accountReference: Any = None
    customerId: Optional[str] = None


class SubscriptionUpdate(BaseModel):
    status: Any = None


def _client_ip(request: Request):
    return request.client.host if request.client else None


@router.get("")
async def list_subscriptions(status: Optional[SubscriptionStatus] = None, store: LedgerStore = Depends(get_store)):
    subs = await firestore_run(store.list_subscriptions, status)
    return {"success": True, "subscriptions": [s.model_dump(mode="json") for s in subs]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subscription(payload: SubscriptionCreate, request: Request, store: LedgerStore = Depends(get_store)):
    data = validate_subscription(
        payload.customerName,
        payload.phoneNumber,
        payload.amount,
        payload.frequency,
        payload.startDate,
        payload.accountReference,
    )
    sub = await firestore_run(store.create_subscription, RatibaSubscription(
        customer_id=payload.customerId,
        next_payment_date=data["start_date"],
        status="active",
        **data,
    ))

    await record_audit(
        store,
        action="Ratiba Subscription Created",
        category="transaction",
        details=f"{sub.frequency.capitalize()} KES {sub.amount:,.0f} for {sub.customer_name} ({sub.phone_number})",
        metadata={"subscriptionId": sub.id, "accountReference": sub.account_reference},
        ip_address=_client_ip(request),
    )
    logger.info(f"🔁 Ratiba subscription created → {sub.id} | {sub.frequency} | {sub.phone_number}")
    return {"success": True, "subscription": sub.model_dump(mode="json")}


@router.patch("/{sub_id}")
async def update_subscription(
    sub_id: str,
    payload: SubscriptionUpdate,
    request: Request,
    store: LedgerStore = Depends(get_store),
):
    if payload.status not in SUBSCRIPTION_STATUSES:
        raise ValidationError({"status": f"Status must be one of {', '.join(SUBSCRIPTION_STATUSES)}"})

    sub = await firestore_run(store.update_subscription_status, sub_id, payload.status)
    await record_audit(
        store,
        action="Ratiba Subscription Updated",
        category="transaction",
        details=f"Subscription {sub_id} set to {payload.status}",
        metadata={"subscriptionId": sub_id, "status": payload.status},
        ip_address=_client_ip(request),
    )
    return {"success": True, "subscription": sub.model_dump(mode="json")}
