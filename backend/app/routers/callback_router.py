# routers/callback_router.py
import json

from fastapi import APIRouter, Depends, Request, status

from app.core.deps import get_callback_ingest
from app.services.callbacks import CallbackIngest

router = APIRouter(prefix="/callback", tags=["Callbacks"])


async def _read_payload(request: Request):
    # Keep whatever arrived, even if it is not JSON
    body = await request.body()
    try:
        return json.loads(body) if body else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {"raw": body.decode("utf-8", errors="replace")}


def _client_ip(request: Request):
    return request.client.host if request.client else None


@router.post("", status_code=status.HTTP_200_OK)
async def mpesa_callback(request: Request, ingest: CallbackIngest = Depends(get_callback_ingest)):
    payload = await _read_payload(request)
    return await ingest.handle_result(payload, _client_ip(request))


@router.post("/timeout", status_code=status.HTTP_200_OK)
async def mpesa_queue_timeout(request: Request, ingest: CallbackIngest = Depends(get_callback_ingest)):
    payload = await _read_payload(request)
    return await ingest.handle_timeout(payload, _client_ip(request))


@router.post("/reversal", status_code=status.HTTP_200_OK)
async def mpesa_reversal(request: Request, ingest: CallbackIngest = Depends(get_callback_ingest)):
    payload = await _read_payload(request)
    return await ingest.handle_reversal(payload, _client_ip(request))
