# services/ledger_store.py
"""
Firestore access for the payment core.

All collections the core reads or writes go through LedgerStore. Calls are
blocking; async callers wrap them with app.utils.firebase.firestore_run.
Any SDK failure surfaces as PersistenceError.
"""
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from app.core.config import settings
from app.core.errors import ConflictError, MalipoError, NotFoundError, PersistenceError
from app.core.firebase import get_db
from app.models.audit_model import AuditLogEntry, CallbackLogEntry
from app.models.customer_model import Customer
from app.models.reconciliation_model import ReconciliationRecord
from app.models.subscription_model import RatibaSubscription
from app.models.transaction_model import Transaction, can_transition

logger = logging.getLogger("malipo.store")

TRANSACTIONS = "transactions"
CUSTOMERS = "customers"
RECONCILIATIONS = "reconciliations"
AUDIT_LOGS = "audit_logs"
CALLBACK_LOGS = "callback_logs"
SUBSCRIPTIONS = "ratiba_subscriptions"


@dataclass
class Settlement:
    """Parsed outcome of one provider result callback."""
    conversation_id: str
    status: str
    result_code: str
    result_desc: str
    receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    phone_number: Optional[str] = None
    amount: Optional[float] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementOutcome:
    # applied   → the guarded transition happened
    # duplicate → a transaction matched but was no longer in the expected state
    # unmatched → nothing holds this correlation id
    outcome: Literal["applied", "duplicate", "unmatched"]
    transaction_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    customer_id: Optional[str] = None
    customer_created: bool = False


def _store_call(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except MalipoError:
            raise
        except Exception as e:
            logger.error(f"Store call {fn.__name__} failed: {e}", exc_info=True)
            raise PersistenceError(f"Store operation {fn.__name__} failed: {e}") from e
    return wrapper


def _with_id(snapshot) -> Dict[str, Any]:
    data = snapshot.to_dict() or {}
    data["id"] = snapshot.id
    return data


def _customer_defaults(phone: str, now: datetime) -> Dict[str, Any]:
    return Customer(
        id=phone,
        phone_number=phone,
        account_number=phone,
        created_at=now,
        updated_at=now,
    ).model_dump(exclude={"id"})


@firestore.transactional
def _settle_in_transaction(transaction, db, settlement: Settlement, upsert_customer: bool,
                           timeout: Optional[float] = None) -> SettlementOutcome:
    # Firestore transactions require all reads before any write
    query = db.collection(TRANSACTIONS).where(
        filter=FieldFilter("conversation_id", "==", settlement.conversation_id)
    )
    snapshots = list(transaction.get(query, timeout=timeout))
    if not snapshots:
        return SettlementOutcome(outcome="unmatched")

    pending = [s for s in snapshots if (s.to_dict() or {}).get("status") == "pending"]
    if not pending:
        current = snapshots[0].to_dict() or {}
        return SettlementOutcome(
            outcome="duplicate",
            transaction_id=current.get("transaction_id"),
            previous_status=current.get("status"),
        )

    snap = pending[0]
    txn = snap.to_dict()
    now = datetime.now(timezone.utc)

    phone = settlement.phone_number or txn.get("phone_number")
    amount = settlement.amount if settlement.amount is not None else txn.get("amount", 0)

    customer_ref = None
    customer_exists = False
    if settlement.status == "completed" and phone:
        customer_ref = db.collection(CUSTOMERS).document(phone)
        customer_exists = customer_ref.get(transaction=transaction, timeout=timeout).exists

    update = {
        "status": settlement.status,
        "result_code": settlement.result_code,
        "result_desc": settlement.result_desc,
        "mpesa_receipt_number": settlement.receipt_number,
        "transaction_date": settlement.transaction_date,
        "raw_callback_data": settlement.raw_payload,
        "updated_at": now,
    }

    outcome = SettlementOutcome(
        outcome="applied",
        transaction_id=txn.get("transaction_id"),
        previous_status="pending",
        new_status=settlement.status,
    )

    if customer_ref is not None:
        if customer_exists:
            transaction.update(customer_ref, {
                "total_transactions": firestore.Increment(1),
                "total_amount": firestore.Increment(amount),
                "last_transaction_date": now,
                "updated_at": now,
            })
            outcome.customer_id = phone
        elif upsert_customer:
            new_customer = _customer_defaults(phone, now)
            new_customer.update({
                "name": txn.get("customer_name") or "",
                "total_transactions": 1,
                "total_amount": amount,
                "last_transaction_date": now,
            })
            transaction.set(customer_ref, new_customer)
            outcome.customer_id = phone
            outcome.customer_created = True

    if outcome.customer_id:
        update["customer_id"] = outcome.customer_id

    transaction.update(snap.reference, update)
    return outcome


@firestore.transactional
def _reverse_in_transaction(transaction, db, receipt_number: str, fields: Dict[str, Any],
                           timeout: Optional[float] = None) -> SettlementOutcome:
    query = db.collection(TRANSACTIONS).where(
        filter=FieldFilter("mpesa_receipt_number", "==", receipt_number)
    ).limit(1)
    snapshots = list(transaction.get(query, timeout=timeout))
    if not snapshots:
        return SettlementOutcome(outcome="unmatched")

    snap = snapshots[0]
    txn = snap.to_dict()
    if not can_transition(txn.get("status"), "reversed"):
        return SettlementOutcome(
            outcome="duplicate",
            transaction_id=txn.get("transaction_id"),
            previous_status=txn.get("status"),
        )

    transaction.update(snap.reference, {
        **fields,
        "status": "reversed",
        "updated_at": datetime.now(timezone.utc),
    })
    return SettlementOutcome(
        outcome="applied",
        transaction_id=txn.get("transaction_id"),
        previous_status=txn.get("status"),
        new_status="reversed",
    )


class LedgerStore:
    def __init__(self, db, timeout: float = 10.0):
        self.db = db
        self.timeout = timeout

    # ------------------- Transactions -------------------
    @_store_call
    def insert_transaction(self, txn: Transaction) -> Transaction:
        _, ref = self.db.collection(TRANSACTIONS).add(
            txn.model_dump(exclude={"id"}), timeout=self.timeout
        )
        txn.id = ref.id
        return txn

    @_store_call
    def get_transaction(self, doc_id: str) -> Optional[Transaction]:
        snap = self.db.collection(TRANSACTIONS).document(doc_id).get(timeout=self.timeout)
        return Transaction(**_with_id(snap)) if snap.exists else None

    @_store_call
    def list_transactions(self, type: Optional[str] = None, status: Optional[str] = None,
                          limit: Optional[int] = None) -> List[Transaction]:
        query = self.db.collection(TRANSACTIONS)
        if type:
            query = query.where(filter=FieldFilter("type", "==", type))
        if status:
            query = query.where(filter=FieldFilter("status", "==", status))
        query = query.order_by("created_at", direction=firestore.Query.DESCENDING)
        if limit:
            query = query.limit(limit)
        return [Transaction(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    @_store_call
    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]:
        query = self.db.collection(TRANSACTIONS)\
            .where(filter=FieldFilter("created_at", ">=", start))\
            .where(filter=FieldFilter("created_at", "<=", end))
        return [Transaction(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    @_store_call
    def settle_transaction(self, settlement: Settlement, upsert_customer: bool = True) -> SettlementOutcome:
        """Guarded pending → terminal move plus the customer aggregate, in one Firestore transaction."""
        return _settle_in_transaction(self.db.transaction(), self.db, settlement, upsert_customer, self.timeout)

    @_store_call
    def reverse_transaction(self, receipt_number: str, fields: Dict[str, Any]) -> SettlementOutcome:
        return _reverse_in_transaction(self.db.transaction(), self.db, receipt_number, fields, self.timeout)

    # ------------------- Customers -------------------
    @_store_call
    def get_customer(self, phone: str) -> Optional[Customer]:
        snap = self.db.collection(CUSTOMERS).document(phone).get(timeout=self.timeout)
        return Customer(**_with_id(snap)) if snap.exists else None

    @_store_call
    def create_customer(self, customer: Customer) -> Customer:
        ref = self.db.collection(CUSTOMERS).document(customer.phone_number)
        if ref.get(timeout=self.timeout).exists:
            raise ConflictError(f"Customer {customer.phone_number} already exists")
        ref.set(customer.model_dump(exclude={"id"}), timeout=self.timeout)
        customer.id = ref.id
        return customer

    @_store_call
    def list_customers(self, limit: Optional[int] = None) -> List[Customer]:
        query = self.db.collection(CUSTOMERS).order_by("created_at", direction=firestore.Query.DESCENDING)
        if limit:
            query = query.limit(limit)
        return [Customer(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    # ------------------- Reconciliation -------------------
    @_store_call
    def upsert_reconciliation(self, record: ReconciliationRecord) -> ReconciliationRecord:
        ref = self.db.collection(RECONCILIATIONS).document(record.reconciliation_date)
        existing = ref.get(timeout=self.timeout)
        data = record.model_dump(exclude={"id"})
        if existing.exists:
            data["created_at"] = (existing.to_dict() or {}).get("created_at", record.created_at)
        ref.set(data, timeout=self.timeout)
        return ReconciliationRecord(id=ref.id, **data)

    @_store_call
    def list_reconciliations(self, limit: Optional[int] = None) -> List[ReconciliationRecord]:
        query = self.db.collection(RECONCILIATIONS)\
            .order_by("reconciliation_date", direction=firestore.Query.DESCENDING)
        if limit:
            query = query.limit(limit)
        return [ReconciliationRecord(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    # ------------------- Audit trail -------------------
    @_store_call
    def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        _, ref = self.db.collection(AUDIT_LOGS).add(entry.model_dump(exclude={"id"}), timeout=self.timeout)
        entry.id = ref.id
        return entry

    @_store_call
    def list_audit_logs(self, category: Optional[str] = None, limit: int = 100) -> List[AuditLogEntry]:
        query = self.db.collection(AUDIT_LOGS)
        if category:
            query = query.where(filter=FieldFilter("category", "==", category))
        query = query.order_by("timestamp", direction=firestore.Query.DESCENDING).limit(limit)
        return [AuditLogEntry(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    # ------------------- Callback log -------------------
    @_store_call
    def add_callback_log(self, entry: CallbackLogEntry) -> str:
        _, ref = self.db.collection(CALLBACK_LOGS).add(entry.model_dump(exclude={"id"}), timeout=self.timeout)
        return ref.id

    @_store_call
    def update_callback_log(self, log_id: str, fields: Dict[str, Any]) -> None:
        self.db.collection(CALLBACK_LOGS).document(log_id).update(fields, timeout=self.timeout)

    @_store_call
    def list_callback_logs(self, processed: Optional[bool] = None, limit: int = 100) -> List[CallbackLogEntry]:
        query = self.db.collection(CALLBACK_LOGS)
        if processed is not None:
            query = query.where(filter=FieldFilter("processed", "==", processed))
        query = query.order_by("received_at", direction=firestore.Query.DESCENDING).limit(limit)
        return [CallbackLogEntry(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    # ------------------- Ratiba subscriptions -------------------
    @_store_call
    def create_subscription(self, subscription: RatibaSubscription) -> RatibaSubscription:
        data = subscription.model_dump(exclude={"id"})
        # Firestore has no plain date type
        data["start_date"] = subscription.start_date.isoformat()
        data["next_payment_date"] = subscription.next_payment_date.isoformat()
        _, ref = self.db.collection(SUBSCRIPTIONS).add(data, timeout=self.timeout)
        subscription.id = ref.id
        return subscription

    @_store_call
    def list_subscriptions(self, status: Optional[str] = None) -> List[RatibaSubscription]:
        query = self.db.collection(SUBSCRIPTIONS)
        if status:
            query = query.where(filter=FieldFilter("status", "==", status))
        query = query.order_by("created_at", direction=firestore.Query.DESCENDING)
        return [RatibaSubscription(**_with_id(doc)) for doc in query.stream(timeout=self.timeout)]

    @_store_call
    def update_subscription_status(self, sub_id: str, status: str) -> RatibaSubscription:
        ref = self.db.collection(SUBSCRIPTIONS).document(sub_id)
        snap = ref.get(timeout=self.timeout)
        if not snap.exists:
            raise NotFoundError(f"Subscription {sub_id} not found")
        ref.update({"status": status, "updated_at": datetime.now(timezone.utc)}, timeout=self.timeout)
        return RatibaSubscription(**{**_with_id(snap), "status": status})

    # ------------------- Health -------------------
    @_store_call
    def ping(self) -> None:
        self.db.collection("system").document("healthcheck").set(
            {"ping": datetime.now(timezone.utc)}, merge=True, timeout=self.timeout
        )


def get_store() -> LedgerStore:
    """FastAPI dependency; tests override it with an in-memory store."""
    return LedgerStore(get_db(), timeout=settings.STORE_TIMEOUT)
