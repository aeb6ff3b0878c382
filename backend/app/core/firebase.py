import base64
import json
import logging
from functools import lru_cache
from typing import Any, Dict

from firebase_admin import credentials, firestore, get_app, initialize_app

from app.core.config import settings
from app.core.errors import ConfigurationError

logger = logging.getLogger("malipo.store")


def decode_service_account(encoded: str) -> Dict[str, Any]:
    """FIREBASE_KEY → service-account dict. Raises ConfigurationError on anything unusable."""
    if not encoded:
        raise ConfigurationError("FIREBASE_KEY is not set")
    try:
        info = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"FIREBASE_KEY is not base64-encoded JSON: {e}")
    if not isinstance(info, dict) or not info.get("project_id"):
        raise ConfigurationError("'project_id' missing in Firebase service account JSON")
    return info


def init_firebase() -> None:
    try:
        get_app()
        return
    except ValueError:
        pass

    info = decode_service_account(settings.FIREBASE_KEY)
    initialize_app(credentials.Certificate(info))
    logger.info(f"🔥 Firebase Admin SDK initialized | Project: {info['project_id']}")


@lru_cache(maxsize=1)
def get_db():
    """Firestore client, created on first use so imports never need credentials."""
    init_firebase()
    db = firestore.client()
    logger.info("✅ Firestore client ready")
    return db
