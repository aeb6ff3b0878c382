import logging
from typing import Any, Dict, Optional

from app.models.audit_model import AuditLogEntry
from app.utils.firebase import firestore_run

logger = logging.getLogger("malipo.audit")


async def record_audit(
    store,
    action: str,
    category: str,
    details: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> AuditLogEntry:
    """Append one entry to the audit trail. Store errors propagate to the caller."""
    entry = AuditLogEntry(
        action=action,
        category=category,
        details=details,
        metadata=metadata,
        user_id=user_id,
        ip_address=ip_address,
    )
    saved = await firestore_run(store.add_audit_log, entry)
    logger.debug(f"Audit → [{category}] {action}")
    return saved
