# services/callbacks.py
"""
Callback ingest.

Every inbound provider callback is written to the callback log before anything
else happens, then parsed, matched to its transaction by conversation id and
settled through a guarded store transaction. Nothing raised in here reaches
the provider: the handler always answers with an acknowledgement, because
Safaricom keeps re-delivering anything else.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from app.core.config import Settings
from app.core.errors import UnrecognizedCallbackShape
from app.models.audit_model import CallbackLogEntry
from app.models.transaction_model import status_for_result_code
from app.services.audit import record_audit
from app.services.ledger_store import Settlement
from app.utils.firebase import firestore_run
from app.utils.validators import normalize_phone

logger = logging.getLogger("malipo.callbacks")

ACK_SUCCESS = {"ResultCode": 0, "ResultDesc": "Success"}
ACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}

STK_CALLBACK = "STK_CALLBACK"
RESULT_CALLBACK = "RESULT_CALLBACK"
REVERSAL_CALLBACK = "REVERSAL_RESULT"
TIMEOUT_CALLBACK = "QUEUE_TIMEOUT"
UNKNOWN_CALLBACK = "UNKNOWN"


# ==================== Parsing ====================
def detect_callback_type(payload: Any) -> str:
    if isinstance(payload, dict):
        body = payload.get("Body")
        if isinstance(body, dict) and isinstance(body.get("stkCallback"), dict):
            return STK_CALLBACK
        if isinstance(payload.get("Result"), dict):
            return RESULT_CALLBACK
    return UNKNOWN_CALLBACK


def parse_provider_timestamp(value: Any, tz_name: str) -> Optional[datetime]:
    """
    20191219102115 (STK) or 19.12.2019 10:21:15 (B2C results), provider local time.
    Returns None for anything unreadable.
    """
    if value in (None, ""):
        return None
    text = str(value).strip()
    for fmt in ("%Y%m%d%H%M%S", "%d.%m.%Y %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=ZoneInfo(tz_name))
        except ValueError:
            continue
    logger.warning(f"Unreadable provider timestamp: {value!r}")
    return None


def _as_list(value: Any) -> List[Dict[str, Any]]:
    # Daraja sends a bare object instead of a one-item list now and then
    if isinstance(value, list):
        return [v for v in value if isinstance(v, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _phone_or_none(value: Any) -> Optional[str]:
    try:
        return normalize_phone(value)
    except ValueError:
        return None


def _amount_or_none(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_stk_callback(payload: Dict[str, Any], tz_name: str) -> Settlement:
    callback = payload["Body"]["stkCallback"]
    checkout_request_id = callback.get("CheckoutRequestID")
    if not checkout_request_id or "ResultCode" not in callback:
        raise UnrecognizedCallbackShape("stkCallback without CheckoutRequestID/ResultCode")

    items = {}
    metadata = callback.get("CallbackMetadata")
    if isinstance(metadata, dict):
        for item in _as_list(metadata.get("Item")):
            if "Name" in item:
                items[item["Name"]] = item.get("Value")

    return Settlement(
        conversation_id=str(checkout_request_id),
        status=status_for_result_code(callback.get("ResultCode")),
        result_code=str(callback.get("ResultCode")),
        result_desc=callback.get("ResultDesc") or "",
        receipt_number=items.get("MpesaReceiptNumber"),
        transaction_date=parse_provider_timestamp(items.get("TransactionDate"), tz_name),
        phone_number=_phone_or_none(items.get("PhoneNumber")),
        amount=_amount_or_none(items.get("Amount")),
        raw_payload=payload,
    )


def result_parameters(result: Dict[str, Any]) -> Dict[str, Any]:
    params = result.get("ResultParameters")
    if not isinstance(params, dict):
        return {}
    return {p["Key"]: p.get("Value") for p in _as_list(params.get("ResultParameter")) if "Key" in p}


def parse_result_callback(payload: Dict[str, Any], tz_name: str) -> Settlement:
    result = payload["Result"]
    conversation_id = result.get("ConversationID")
    if not conversation_id or "ResultCode" not in result:
        raise UnrecognizedCallbackShape("Result without ConversationID/ResultCode")

    params = result_parameters(result)
    # "254708374149 - John Doe"
    receiver = str(params.get("ReceiverPartyPublicName") or "")
    phone = _phone_or_none(receiver.split(" - ")[0]) if receiver else None

    return Settlement(
        conversation_id=str(conversation_id),
        status=status_for_result_code(result.get("ResultCode")),
        result_code=str(result.get("ResultCode")),
        result_desc=result.get("ResultDesc") or "",
        receipt_number=params.get("TransactionReceipt") or result.get("TransactionID"),
        transaction_date=parse_provider_timestamp(params.get("TransactionCompletedDateTime"), tz_name),
        phone_number=phone,
        amount=_amount_or_none(params.get("TransactionAmount")),
        raw_payload=payload,
    )


def parse_callback(payload: Any, tz_name: str) -> Settlement:
    kind = detect_callback_type(payload)
    if kind == STK_CALLBACK:
        return parse_stk_callback(payload, tz_name)
    if kind == RESULT_CALLBACK:
        return parse_result_callback(payload, tz_name)
    raise UnrecognizedCallbackShape("Payload is neither an stkCallback nor a Result wrapper")


# ==================== Ingest ====================
class CallbackIngest:

    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings

    async def _open_log(self, callback_type: str, payload: Any, client_ip: Optional[str]) -> Optional[str]:
        try:
            log_id = await firestore_run(self.store.add_callback_log, CallbackLogEntry(
                callback_type=callback_type,
                payload=payload,
                ip_address=client_ip,
                is_valid=True,
                processed=False,
            ))
        except Exception as e:
            logger.critical(f"🚨 Could not persist {callback_type} callback from {client_ip}: {e} | payload={payload!r}")
            return None

        if self.settings.MPESA_VALIDATE_IP and client_ip not in self.settings.MPESA_ALLOWED_IPS:
            # Fail open: flag it and keep going
            logger.warning(f"Callback from unrecognized IP: {client_ip}")
            await self._update_log(log_id, {"is_valid": False})
        return log_id

    async def _update_log(self, log_id: Optional[str], fields: Dict[str, Any]) -> None:
        if not log_id:
            return
        try:
            await firestore_run(self.store.update_callback_log, log_id, fields)
        except Exception as e:
            logger.error(f"Failed to update callback log {log_id}: {e}")

    async def _fail(self, log_id: Optional[str], error: Exception) -> Dict[str, Any]:
        logger.error(f"Callback processing error: {error}", exc_info=True)
        await self._update_log(log_id, {"error_message": str(error)})
        return ACK_ACCEPTED

    def _unstored(self, callback_type: str, payload: Any, client_ip: Optional[str]) -> Dict[str, Any]:
        logger.critical(f"🚨 {callback_type} callback from {client_ip} not recorded, store unavailable | payload={payload!r}")
        return ACK_ACCEPTED

    async def handle_result(self, payload: Any, client_ip: Optional[str] = None) -> Dict[str, Any]:
        """STK callbacks and B2C / status Result callbacks."""
        callback_type = detect_callback_type(payload)
        if self.store is None:
            return self._unstored(callback_type, payload, client_ip)
        log_id = await self._open_log(callback_type, payload, client_ip)
        try:
            try:
                settlement = parse_callback(payload, self.settings.TIMEZONE)
            except UnrecognizedCallbackShape as e:
                logger.warning(f"Unrecognized callback from {client_ip}: {e}")
                await self._update_log(log_id, {"is_valid": False, "error_message": str(e)})
                return ACK_SUCCESS

            outcome = await firestore_run(
                self.store.settle_transaction, settlement, self.settings.CUSTOMER_UPSERT_ON_SETTLE
            )

            log_update: Dict[str, Any] = {"processed": True}
            if outcome.outcome == "applied":
                completed = settlement.status == "completed"
                await record_audit(
                    self.store,
                    action="Payment Completed" if completed else "Payment Failed",
                    category="transaction",
                    details=f"{settlement.result_desc}. Receipt: {settlement.receipt_number or 'N/A'}",
                    metadata={
                        "conversationId": settlement.conversation_id,
                        "transactionId": outcome.transaction_id,
                        "resultCode": settlement.result_code,
                        "mpesaReceiptNumber": settlement.receipt_number,
                        "customerId": outcome.customer_id,
                        "customerCreated": outcome.customer_created,
                    },
                    ip_address=client_ip,
                )
                logger.info(
                    f"{'✅' if completed else '❌'} {outcome.transaction_id} → {settlement.status} "
                    f"| {settlement.result_desc}"
                )
            elif outcome.outcome == "duplicate":
                logger.info(
                    f"♻️ Callback already applied for {settlement.conversation_id} "
                    f"(status {outcome.previous_status})"
                )
            else:
                logger.warning(f"No transaction holds conversation id {settlement.conversation_id}")
                log_update["error_message"] = f"No transaction matches conversation id {settlement.conversation_id}"

            await self._update_log(log_id, log_update)
            return ACK_SUCCESS
        except Exception as e:
            return await self._fail(log_id, e)

    async def handle_reversal(self, payload: Any, client_ip: Optional[str] = None) -> Dict[str, Any]:
        """Reversal results move a completed transaction to reversed; totals are left alone."""
        if self.store is None:
            return self._unstored(REVERSAL_CALLBACK, payload, client_ip)
        log_id = await self._open_log(REVERSAL_CALLBACK, payload, client_ip)
        try:
            result = payload.get("Result") if isinstance(payload, dict) else None
            if not isinstance(result, dict) or "ResultCode" not in result:
                logger.warning(f"Unrecognized reversal callback from {client_ip}")
                await self._update_log(log_id, {"is_valid": False, "error_message": "Unrecognized reversal shape"})
                return ACK_SUCCESS

            if status_for_result_code(result.get("ResultCode")) != "completed":
                logger.warning(f"Reversal request failed at provider: {result.get('ResultDesc')}")
                await self._update_log(log_id, {"processed": True})
                return ACK_SUCCESS

            params = result_parameters(result)
            receipt = params.get("OriginalTransactionID") or result.get("OriginalTransactionID")
            if not receipt:
                await self._update_log(log_id, {"is_valid": False, "error_message": "Reversal without OriginalTransactionID"})
                return ACK_SUCCESS

            outcome = await firestore_run(self.store.reverse_transaction, str(receipt), {
                "reversal_callback_data": payload,
                "result_desc": result.get("ResultDesc") or "",
            })
            log_update: Dict[str, Any] = {"processed": True}
            if outcome.outcome == "applied":
                await record_audit(
                    self.store,
                    action="Payment Reversed",
                    category="transaction",
                    details=f"Receipt {receipt} reversed. {result.get('ResultDesc') or ''}".strip(),
                    metadata={"mpesaReceiptNumber": receipt, "transactionId": outcome.transaction_id},
                    ip_address=client_ip,
                )
                logger.info(f"↩️ {outcome.transaction_id} reversed (receipt {receipt})")
            elif outcome.outcome == "duplicate":
                logger.info(f"Reversal ignored for {receipt}: status is {outcome.previous_status}")
            else:
                log_update["error_message"] = f"No transaction with receipt {receipt}"
            await self._update_log(log_id, log_update)
            return ACK_SUCCESS
        except Exception as e:
            return await self._fail(log_id, e)

    async def handle_timeout(self, payload: Any, client_ip: Optional[str] = None) -> Dict[str, Any]:
        """Queue timeouts leave the transaction pending; reconciliation surfaces it."""
        if self.store is None:
            return self._unstored(TIMEOUT_CALLBACK, payload, client_ip)
        log_id = await self._open_log(TIMEOUT_CALLBACK, payload, client_ip)
        try:
            conversation_id = None
            if isinstance(payload, dict) and isinstance(payload.get("Result"), dict):
                conversation_id = payload["Result"].get("ConversationID")
            logger.warning(f"⏱️ Provider queue timeout for conversation {conversation_id}")
            await self._update_log(log_id, {
                "processed": True,
                "error_message": f"Request timed out in provider queue (conversation {conversation_id})",
            })
            return ACK_SUCCESS
        except Exception as e:
            return await self._fail(log_id, e)
