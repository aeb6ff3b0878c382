"""
Pytest configuration and fixtures.

Firestore and Daraja are never touched: the store is an in-memory double with
the same method surface as LedgerStore, and provider traffic goes through an
httpx.MockTransport that records every request.
"""
import json
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from app.core.config import Settings, get_settings
from app.core.deps import get_callback_store, get_mpesa_client
from app.core.errors import ConflictError, NotFoundError
from app.models.audit_model import AuditLogEntry, CallbackLogEntry
from app.models.customer_model import Customer
from app.models.reconciliation_model import ReconciliationRecord
from app.models.subscription_model import RatibaSubscription
from app.models.transaction_model import Transaction, can_transition
from app.services.ledger_store import Settlement, SettlementOutcome, get_store
from app.services.mpesa_client import B2C_PATH, OAUTH_PATH, STATUS_PATH, STK_PUSH_PATH, MpesaClient


# ==================== In-memory store ====================
class InMemoryLedgerStore:
    """Stand-in for LedgerStore. `mutations` counts writes per collection."""

    def __init__(self):
        self.transactions: Dict[str, Transaction] = {}
        self.customers: Dict[str, Customer] = {}
        self.reconciliations: Dict[str, ReconciliationRecord] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.callback_logs: Dict[str, CallbackLogEntry] = {}
        self.subscriptions: Dict[str, RatibaSubscription] = {}
        self.mutations: Counter = Counter()
        self._lock = threading.Lock()
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    @property
    def total_mutations(self) -> int:
        return sum(self.mutations.values())

    # Transactions
    def insert_transaction(self, txn: Transaction) -> Transaction:
        with self._lock:
            txn.id = self._next_id("txn")
            self.transactions[txn.id] = txn.model_copy(deep=True)
            self.mutations["transactions"] += 1
            return txn

    def get_transaction(self, doc_id: str) -> Optional[Transaction]:
        txn = self.transactions.get(doc_id)
        return txn.model_copy(deep=True) if txn else None

    def list_transactions(self, type=None, status=None, limit=None) -> List[Transaction]:
        rows = [t for t in self.transactions.values()
                if (not type or t.type == type) and (not status or t.status == status)]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[:limit] if limit else rows

    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]:
        return [t for t in self.transactions.values() if start <= t.created_at <= end]

    def by_conversation(self, conversation_id: str) -> Optional[Transaction]:
        for txn in self.transactions.values():
            if txn.conversation_id == conversation_id:
                return txn
        return None

    def settle_transaction(self, settlement: Settlement, upsert_customer: bool = True) -> SettlementOutcome:
        with self._lock:
            matches = [t for t in self.transactions.values() if t.conversation_id == settlement.conversation_id]
            if not matches:
                return SettlementOutcome(outcome="unmatched")
            pending = [t for t in matches if t.status == "pending"]
            if not pending:
                return SettlementOutcome(outcome="duplicate", transaction_id=matches[0].transaction_id,
                                         previous_status=matches[0].status)

            txn = pending[0]
            now = datetime.now(timezone.utc)
            outcome = SettlementOutcome(outcome="applied", transaction_id=txn.transaction_id,
                                        previous_status="pending", new_status=settlement.status)
            phone = settlement.phone_number or txn.phone_number
            amount = settlement.amount if settlement.amount is not None else txn.amount

            if settlement.status == "completed" and phone:
                customer = self.customers.get(phone)
                if customer is not None:
                    customer.total_transactions += 1
                    customer.total_amount += amount
                    customer.last_transaction_date = now
                    self.mutations["customers"] += 1
                    outcome.customer_id = phone
                elif upsert_customer:
                    self.customers[phone] = Customer(
                        id=phone, phone_number=phone, account_number=phone,
                        total_transactions=1, total_amount=amount, last_transaction_date=now,
                    )
                    self.mutations["customers"] += 1
                    outcome.customer_id = phone
                    outcome.customer_created = True

            txn.status = settlement.status
            txn.result_code = settlement.result_code
            txn.result_desc = settlement.result_desc
            txn.mpesa_receipt_number = settlement.receipt_number
            txn.transaction_date = settlement.transaction_date
            txn.raw_callback_data = settlement.raw_payload
            txn.updated_at = now
            if outcome.customer_id:
                txn.customer_id = outcome.customer_id
            self.mutations["transactions"] += 1
            return outcome

    def reverse_transaction(self, receipt_number: str, fields: Dict[str, Any]) -> SettlementOutcome:
        with self._lock:
            txn = next((t for t in self.transactions.values() if t.mpesa_receipt_number == receipt_number), None)
            if txn is None:
                return SettlementOutcome(outcome="unmatched")
            if not can_transition(txn.status, "reversed"):
                return SettlementOutcome(outcome="duplicate", transaction_id=txn.transaction_id,
                                         previous_status=txn.status)
            previous = txn.status
            for key, value in fields.items():
                setattr(txn, key, value)
            txn.status = "reversed"
            self.mutations["transactions"] += 1
            return SettlementOutcome(outcome="applied", transaction_id=txn.transaction_id,
                                     previous_status=previous, new_status="reversed")

    # Customers
    def get_customer(self, phone: str) -> Optional[Customer]:
        return self.customers.get(phone)

    def create_customer(self, customer: Customer) -> Customer:
        if customer.phone_number in self.customers:
            raise ConflictError(f"Customer {customer.phone_number} already exists")
        customer.id = customer.phone_number
        self.customers[customer.phone_number] = customer.model_copy(deep=True)
        self.mutations["customers"] += 1
        return customer

    def list_customers(self, limit=None) -> List[Customer]:
        rows = sorted(self.customers.values(), key=lambda c: c.created_at, reverse=True)
        return rows[:limit] if limit else rows

    # Reconciliation
    def upsert_reconciliation(self, record: ReconciliationRecord) -> ReconciliationRecord:
        existing = self.reconciliations.get(record.reconciliation_date)
        saved = record.model_copy(update={"id": record.reconciliation_date})
        if existing is not None:
            saved.created_at = existing.created_at
        self.reconciliations[record.reconciliation_date] = saved
        self.mutations["reconciliations"] += 1
        return saved

    def list_reconciliations(self, limit=None) -> List[ReconciliationRecord]:
        rows = sorted(self.reconciliations.values(), key=lambda r: r.reconciliation_date, reverse=True)
        return rows[:limit] if limit else rows

    # Audit trail
    def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            entry.id = self._next_id("audit")
            self.audit_logs.append(entry)
            self.mutations["audit_logs"] += 1
            return entry

    def list_audit_logs(self, category=None, limit: int = 100) -> List[AuditLogEntry]:
        rows = [e for e in self.audit_logs if not category or e.category == category]
        rows.sort(key=lambda e: e.timestamp, reverse=True)
        return rows[:limit]

    def audit_actions(self) -> List[str]:
        return [e.action for e in self.audit_logs]

    # Callback log
    def add_callback_log(self, entry: CallbackLogEntry) -> str:
        with self._lock:
            log_id = self._next_id("cb")
            entry.id = log_id
            self.callback_logs[log_id] = entry
            self.mutations["callback_logs"] += 1
            return log_id

    def update_callback_log(self, log_id: str, fields: Dict[str, Any]) -> None:
        entry = self.callback_logs[log_id]
        for key, value in fields.items():
            setattr(entry, key, value)

    def list_callback_logs(self, processed=None, limit: int = 100) -> List[CallbackLogEntry]:
        rows = [e for e in self.callback_logs.values() if processed is None or e.processed == processed]
        rows.sort(key=lambda e: e.received_at, reverse=True)
        return rows[:limit]

    # Ratiba subscriptions
    def create_subscription(self, subscription: RatibaSubscription) -> RatibaSubscription:
        subscription.id = self._next_id("sub")
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        self.mutations["ratiba_subscriptions"] += 1
        return subscription

    def list_subscriptions(self, status=None) -> List[RatibaSubscription]:
        return [s for s in self.subscriptions.values() if not status or s.status == status]

    def update_subscription_status(self, sub_id: str, status: str) -> RatibaSubscription:
        sub = self.subscriptions.get(sub_id)
        if sub is None:
            raise NotFoundError(f"Subscription {sub_id} not found")
        sub.status = status
        self.mutations["ratiba_subscriptions"] += 1
        return sub.model_copy(deep=True)

    def ping(self) -> None:
        return None


# ==================== Fake Daraja ====================
class FakeDaraja:
    """Records every request; answers per path with canned JSON."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: Dict[str, Callable[[httpx.Request], httpx.Response]] = {
            OAUTH_PATH.split("?")[0]: lambda r: httpx.Response(
                200, json={"access_token": "fake-token", "expires_in": "3599"}),
            STK_PUSH_PATH: lambda r: httpx.Response(200, json={
                "MerchantRequestID": "MR1",
                "CheckoutRequestID": "CR1",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }),
            B2C_PATH: lambda r: httpx.Response(200, json={
                "ConversationID": "AG_20240315_1",
                "OriginatorConversationID": "OC-1",
                "ResponseCode": "0",
                "ResponseDescription": "Accept the service request successfully.",
            }),
            STATUS_PATH: lambda r: httpx.Response(200, json={
                "ConversationID": "AG_20240315_STATUS",
                "OriginatorConversationID": "OC-S",
                "ResponseCode": "0",
                "ResponseDescription": "Accept the service request successfully.",
            }),
        }

    def respond(self, path: str, status_code: int = 200, json_body: Any = None, text: Optional[str] = None):
        key = path.split("?")[0]
        if text is not None:
            self.responses[key] = lambda r: httpx.Response(status_code, text=text)
        else:
            self.responses[key] = lambda r: httpx.Response(status_code, json=json_body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses[request.url.path](request)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path.split("?")[0]]

    @staticmethod
    def body(request: httpx.Request) -> Dict[str, Any]:
        return json.loads(request.content)


# ==================== Fixtures ====================
@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        MPESA_SANDBOX_CONSUMER_KEY="sandbox-key",
        MPESA_SANDBOX_CONSUMER_SECRET="sandbox-secret",
        MPESA_SANDBOX_SECURITY_CREDENTIAL="sandbox-credential",
        MPESA_CALLBACK_BASE_URL="https://malipo.test/api",
        MPESA_VALIDATE_IP=False,
        CUSTOMER_UPSERT_ON_SETTLE=True,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest.fixture
def mpesa_client(test_settings, daraja) -> MpesaClient:
    return MpesaClient(test_settings, transport=httpx.MockTransport(daraja.handler))


@pytest_asyncio.fixture
async def client(test_settings, store, mpesa_client) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client against the app with the store, settings and provider swapped out."""
    from main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_callback_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


def stk_callback(checkout_request_id: str = "CR1", result_code: int = 0, amount: float = 500,
                 receipt: str = "NLJ7RT61SV", phone: int = 254712345678,
                 result_desc: str = "The service request is processed successfully.") -> Dict[str, Any]:
    callback: Dict[str, Any] = {
        "MerchantRequestID": "MR1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20240315102115},
            {"Name": "PhoneNumber", "Value": phone},
        ]}
    return {"Body": {"stkCallback": callback}}


def b2c_result(conversation_id: str = "AG_20240315_1", result_code: int = 0, amount: float = 1500,
               receipt: str = "NLJ41HAY6Q", single_parameter: bool = False) -> Dict[str, Any]:
    params = [
        {"Key": "TransactionAmount", "Value": amount},
        {"Key": "TransactionReceipt", "Value": receipt},
        {"Key": "ReceiverPartyPublicName", "Value": "254708374149 - John Doe"},
        {"Key": "TransactionCompletedDateTime", "Value": "15.03.2024 10:21:15"},
    ]
    result: Dict[str, Any] = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
        "OriginatorConversationID": "OC-1",
        "ConversationID": conversation_id,
        "TransactionID": receipt,
    }
    if result_code == 0:
        result["ResultParameters"] = {"ResultParameter": params[1] if single_parameter else params}
    return {"Result": result}


def pending_transaction(conversation_id: str = "CR1", amount: float = 500, phone: str = "254712345678",
                        type: str = "C2B", status: str = "pending", **extra) -> Transaction:
    return Transaction(
        transaction_id=f"STK-{conversation_id}",
        type=type,
        amount=amount,
        phone_number=phone,
        account_reference="INV-1",
        description="Invoice 1",
        status=status,
        conversation_id=conversation_id,
        originator_conversation_id="MR1",
        **extra,
    )
