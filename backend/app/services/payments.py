# services/payments.py
"""
Collection (STK push), disbursement (B2C) and status-query initiators.

Order of work for each operation:
  validate → resolve credentials → token → provider call → pending record → audit.
A validation or configuration failure stops before any network call; a provider
rejection stops before any store write.
"""
import logging
import secrets
import time
from typing import Any, Dict

from app.core.config import Settings
from app.core.errors import PersistenceError, UpstreamPaymentError
from app.models.transaction_model import Transaction
from app.services.audit import record_audit
from app.services.mpesa_client import MpesaClient, accepted, rejection_message, require_initiator
from app.utils.firebase import firestore_run
from app.utils.validators import validate_collection, validate_disbursement, validate_status_query

logger = logging.getLogger("malipo.payments")

CALLBACK_PATH = "callback"
TIMEOUT_PATH = "callback/timeout"


def generate_transaction_id(prefix: str) -> str:
    """STK1729350000123456789A1F3: prefix, nanosecond clock, random tail."""
    return f"{prefix}{time.time_ns()}{secrets.token_hex(2).upper()}"


def correlation_id(response: Dict[str, Any], key: str, operation: str) -> str:
    """The id later callbacks are matched on. Raises when the provider left it out."""
    value = response.get(key)
    if not value:
        logger.critical(f"🚨 Provider accepted {operation} without a {key} | response={response}")
        raise UpstreamPaymentError(f"M-Pesa accepted the {operation} without a {key}", response=response)
    return str(value)


class PaymentInitiator:

    def __init__(self, client: MpesaClient, store, settings: Settings):
        self.client = client
        self.store = store
        self.settings = settings

    async def _persist_pending(self, txn: Transaction) -> Transaction:
        try:
            return await firestore_run(self.store.insert_transaction, txn)
        except PersistenceError:
            # The provider already holds the request; settlement still arrives by callback
            logger.critical(
                f"🚨 Provider accepted {txn.transaction_id} but the pending record was not saved | "
                f"conversation={txn.conversation_id} originator={txn.originator_conversation_id}"
            )
            raise

    async def collection(self, phone_number, amount, account_reference, transaction_desc, environment) -> Dict[str, Any]:
        data = validate_collection(phone_number, amount, account_reference, transaction_desc, environment)
        creds = self.settings.credentials_for(data["environment"])
        token = await self.client.token_for(creds)

        response = await self.client.stk_push(
            creds,
            token,
            phone_number=data["phone_number"],
            amount=data["amount"],
            account_reference=data["account_reference"],
            transaction_desc=data["transaction_desc"],
            callback_url=self.settings.callback_url(CALLBACK_PATH),
        )
        if not accepted(response):
            message = rejection_message(response, "STK push failed")
            logger.warning(f"STK push rejected for {data['phone_number']}: {message}")
            raise UpstreamPaymentError(message, response=response)
        conversation_id = correlation_id(response, "CheckoutRequestID", "STK push")

        txn = await self._persist_pending(Transaction(
            transaction_id=generate_transaction_id("STK"),
            type="C2B",
            amount=data["amount"],
            phone_number=data["phone_number"],
            account_reference=data["account_reference"],
            description=data["transaction_desc"],
            status="pending",
            conversation_id=conversation_id,
            originator_conversation_id=response.get("MerchantRequestID"),
        ))

        await record_audit(
            self.store,
            action="STK Push Initiated",
            category="transaction",
            details=f"STK push of KES {data['amount']:,.0f} to {data['phone_number']}",
            metadata={
                "checkoutRequestId": txn.conversation_id,
                "transactionId": txn.transaction_id,
                "environment": data["environment"],
            },
        )
        logger.info(f"📲 STK push sent → {txn.transaction_id} | KES {data['amount']:,.0f} | {data['phone_number']}")

        return {
            "checkoutRequestId": txn.conversation_id,
            "merchantRequestId": txn.originator_conversation_id,
            "transactionId": txn.transaction_id,
        }

    async def disbursement(self, phone_number, amount, occasion, remarks, command_id, environment) -> Dict[str, Any]:
        data = validate_disbursement(phone_number, amount, occasion, remarks, command_id, environment)
        creds = self.settings.credentials_for(data["environment"])
        require_initiator(creds)
        token = await self.client.token_for(creds)

        response = await self.client.b2c_payment(
            creds,
            token,
            phone_number=data["phone_number"],
            amount=data["amount"],
            command_id=data["command_id"],
            remarks=data["remarks"],
            occasion=data["occasion"],
            result_url=self.settings.callback_url(CALLBACK_PATH),
            timeout_url=self.settings.callback_url(TIMEOUT_PATH),
        )
        if not accepted(response):
            message = rejection_message(response, "B2C request failed")
            logger.warning(f"B2C rejected for {data['phone_number']}: {message}")
            raise UpstreamPaymentError(message, response=response)
        conversation_id = correlation_id(response, "ConversationID", "B2C request")

        txn = await self._persist_pending(Transaction(
            transaction_id=generate_transaction_id("B2C"),
            type="B2C",
            amount=data["amount"],
            phone_number=data["phone_number"],
            account_reference=data["command_id"],
            description=data["remarks"],
            status="pending",
            conversation_id=conversation_id,
            originator_conversation_id=response.get("OriginatorConversationID"),
        ))

        await record_audit(
            self.store,
            action="B2C Payment Initiated",
            category="transaction",
            details=f"B2C {data['command_id']} of KES {data['amount']:,.0f} to {data['phone_number']}",
            metadata={
                "conversationId": txn.conversation_id,
                "transactionId": txn.transaction_id,
                "environment": data["environment"],
            },
        )
        logger.info(f"💸 B2C sent → {txn.transaction_id} | KES {data['amount']:,.0f} | {data['phone_number']}")

        return {
            "conversationId": txn.conversation_id,
            "originatorConversationId": txn.originator_conversation_id,
            "transactionId": txn.transaction_id,
        }

    async def status_query(self, transaction_id, environment) -> Dict[str, Any]:
        data = validate_status_query(transaction_id, environment)
        creds = self.settings.credentials_for(data["environment"])
        require_initiator(creds)
        token = await self.client.token_for(creds)

        response = await self.client.transaction_status(
            creds,
            token,
            transaction_id=data["transaction_id"],
            result_url=self.settings.callback_url(CALLBACK_PATH),
            timeout_url=self.settings.callback_url(TIMEOUT_PATH),
        )
        if not accepted(response):
            message = rejection_message(response, "Transaction status query failed")
            logger.warning(f"Status query rejected for {data['transaction_id']}: {message}")
            raise UpstreamPaymentError(message, response=response)

        await record_audit(
            self.store,
            action="Transaction Status Query",
            category="transaction",
            details=f"Queried status for transaction {data['transaction_id']}",
            metadata={
                "transactionId": data["transaction_id"],
                "responseCode": response.get("ResponseCode"),
                "conversationId": response.get("ConversationID"),
                "environment": data["environment"],
            },
        )
        return {"data": response}
