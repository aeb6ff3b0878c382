# models/audit_model.py
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime, timezone

AuditCategory = Literal["transaction", "security", "configuration", "reconciliation"]


class AuditLogEntry(BaseModel):
    """Append-only. Never updated or deleted once written."""
    id: Optional[str] = None
    action: str
    category: AuditCategory
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    details: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallbackLogEntry(BaseModel):
    """Raw capture of every inbound callback, parseable or not."""
    id: Optional[str] = None
    callback_type: str
    payload: Any = None
    ip_address: Optional[str] = None
    signature: Optional[str] = None
    is_valid: bool = True
    processed: bool = False
    error_message: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
