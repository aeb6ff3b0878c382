# core/deps.py
import logging
from typing import Optional

from fastapi import Depends

from app.core.config import Settings, get_settings
from app.services.callbacks import CallbackIngest
from app.services.ledger_store import LedgerStore, get_store
from app.services.mpesa_client import MpesaClient
from app.services.payments import PaymentInitiator

logger = logging.getLogger("malipo.callbacks")


def get_mpesa_client(settings: Settings = Depends(get_settings)) -> MpesaClient:
    return MpesaClient(settings)


def get_payment_initiator(
    client: MpesaClient = Depends(get_mpesa_client),
    store: LedgerStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> PaymentInitiator:
    return PaymentInitiator(client, store, settings)


def get_callback_store() -> Optional[LedgerStore]:
    """Store for the callback routes; None when Firestore cannot be reached, so they still acknowledge."""
    try:
        return get_store()
    except Exception as e:
        logger.critical(f"🚨 Callback store unavailable: {e}", exc_info=True)
        return None


def get_callback_ingest(
    store: Optional[LedgerStore] = Depends(get_callback_store),
    settings: Settings = Depends(get_settings),
) -> CallbackIngest:
    return CallbackIngest(store, settings)
