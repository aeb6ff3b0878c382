# routers/mpesa_router.py
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.deps import get_mpesa_client, get_payment_initiator
from app.services.mpesa_client import MpesaClient
from app.services.payments import PaymentInitiator
from app.utils.validators import validate_environment

router = APIRouter(tags=["M-Pesa"])


# Field rules and error keys live in app.utils.validators
class AuthRequest(BaseModel):
    environment: Any = "sandbox"


class CollectionRequest(BaseModel):
    phoneNumber: Any = None
    amount: Any = None
    accountReference: Any = None
    transactionDesc: Any = None
    environment: Any = "sandbox"


class DisbursementRequest(BaseModel):
    phoneNumber: Any = None
    amount: Any = None
    occasion: Any = None
    remarks: Any = None
    commandId: Any = "BusinessPayment"
    environment: Any = "sandbox"


class StatusRequest(BaseModel):
    transactionId: Any = None
    environment: Any = "sandbox"


@router.post("/auth")
async def get_access_token(payload: AuthRequest, client: MpesaClient = Depends(get_mpesa_client)):
    environment = validate_environment(payload.environment)
    token = await client.get_access_token(environment)
    return {"success": True, "access_token": token.token, "expires_in": token.expires_in}


@router.post("/collection")
async def initiate_collection(
    payload: CollectionRequest,
    initiator: PaymentInitiator = Depends(get_payment_initiator),
):
    result = await initiator.collection(
        payload.phoneNumber,
        payload.amount,
        payload.accountReference,
        payload.transactionDesc,
        payload.environment,
    )
    return {"success": True, **result}


@router.post("/disbursement")
async def initiate_disbursement(
    payload: DisbursementRequest,
    initiator: PaymentInitiator = Depends(get_payment_initiator),
):
    result = await initiator.disbursement(
        payload.phoneNumber,
        payload.amount,
        payload.occasion,
        payload.remarks,
        payload.commandId,
        payload.environment,
    )
    return {"success": True, **result}


@router.post("/status")
async def query_status(
    payload: StatusRequest,
    initiator: PaymentInitiator = Depends(get_payment_initiator),
):
    result = await initiator.status_query(payload.transactionId, payload.environment)
    return {"success": True, **result}
