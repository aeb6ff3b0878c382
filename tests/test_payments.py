"""
Collection, disbursement and status-query initiator tests.
"""
import pytest

from app.core.errors import (
    ConfigurationError,
    PersistenceError,
    UpstreamPaymentError,
    ValidationError,
)
from app.services.mpesa_client import B2C_PATH, OAUTH_PATH, STATUS_PATH, STK_PUSH_PATH
from app.services.payments import PaymentInitiator, generate_transaction_id


@pytest.fixture
def initiator(mpesa_client, store, test_settings) -> PaymentInitiator:
    return PaymentInitiator(mpesa_client, store, test_settings)


class TestCollection:

    @pytest.mark.asyncio
    async def test_accepted_push_creates_one_pending_row_and_one_audit(self, initiator, store, daraja) -> None:
        result = await initiator.collection("0712345678", 500, "INV-1", "Invoice 1", "sandbox")

        assert result["checkoutRequestId"] == "CR1"
        assert result["merchantRequestId"] == "MR1"
        assert result["transactionId"].startswith("STK")

        [txn] = store.transactions.values()
        assert txn.status == "pending"
        assert txn.type == "C2B"
        assert txn.phone_number == "254712345678"
        assert txn.amount == 500
        assert txn.conversation_id == "CR1"
        assert txn.originator_conversation_id == "MR1"
        assert txn.transaction_id == result["transactionId"]

        assert store.audit_actions() == ["STK Push Initiated"]
        assert len(daraja.calls_to(OAUTH_PATH)) == 1
        assert len(daraja.calls_to(STK_PUSH_PATH)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, 150_001])
    async def test_out_of_bounds_amount_has_no_side_effects(self, initiator, store, daraja, amount) -> None:
        with pytest.raises(ValidationError) as exc:
            await initiator.collection("0712345678", amount, "INV-1", "Invoice 1", "sandbox")

        assert "amount" in exc.value.errors
        assert daraja.requests == []
        assert store.total_mutations == 0

    @pytest.mark.asyncio
    async def test_provider_rejection_creates_nothing(self, initiator, store, daraja) -> None:
        daraja.respond(STK_PUSH_PATH, 400, {
            "requestId": "1234-5678",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        })

        with pytest.raises(UpstreamPaymentError) as exc:
            await initiator.collection("0712345678", 500, "INV-1", "Invoice 1", "sandbox")

        assert exc.value.message == "Bad Request - Invalid PhoneNumber"
        assert store.total_mutations == 0

    @pytest.mark.asyncio
    async def test_nonzero_response_code_uses_description(self, initiator, store, daraja) -> None:
        daraja.respond(STK_PUSH_PATH, 200, {"ResponseCode": "1", "ResponseDescription": "System busy"})

        with pytest.raises(UpstreamPaymentError) as exc:
            await initiator.collection("0712345678", 500, "INV-1", "Invoice 1", "sandbox")

        assert exc.value.message == "System busy"
        assert store.transactions == {}

    @pytest.mark.asyncio
    async def test_store_failure_after_acceptance_is_surfaced(self, initiator, store) -> None:
        def broken_insert(txn):
            raise PersistenceError("Firestore unavailable")

        store.insert_transaction = broken_insert

        with pytest.raises(PersistenceError):
            await initiator.collection("0712345678", 500, "INV-1", "Invoice 1", "sandbox")
        assert store.audit_logs == []

    @pytest.mark.asyncio
    async def test_accepted_without_checkout_request_id_saves_nothing(self, initiator, store, daraja) -> None:
        daraja.respond(STK_PUSH_PATH, 200, {"MerchantRequestID": "MR1", "ResponseCode": "0"})

        with pytest.raises(UpstreamPaymentError) as exc:
            await initiator.collection("0712345678", 500, "INV-1", "Invoice 1", "sandbox")

        assert "CheckoutRequestID" in exc.value.message
        assert store.total_mutations == 0


class TestDisbursement:

    @pytest.mark.asyncio
    async def test_accepted_payout(self, initiator, store, daraja) -> None:
        result = await initiator.disbursement("+254708374149", 1500, "March", "Salary", "SalaryPayment", "sandbox")

        assert result["conversationId"] == "AG_20240315_1"
        assert result["transactionId"].startswith("B2C")

        [txn] = store.transactions.values()
        assert txn.type == "B2C"
        assert txn.phone_number == "254708374149"
        assert txn.conversation_id == "AG_20240315_1"

        body = daraja.body(daraja.calls_to(B2C_PATH)[0])
        assert body["InitiatorName"] == "testapi"
        assert body["SecurityCredential"] == "sandbox-credential"
        assert body["CommandID"] == "SalaryPayment"
        assert body["PartyB"] == "254708374149"
        assert body["Occassion"] == "March"
        assert body["ResultURL"] == "https://malipo.test/api/callback"
        assert body["QueueTimeOutURL"] == "https://malipo.test/api/callback/timeout"
        assert store.audit_actions() == ["B2C Payment Initiated"]

    @pytest.mark.asyncio
    async def test_missing_security_credential(self, mpesa_client, store, daraja, test_settings) -> None:
        settings = test_settings.model_copy(update={"MPESA_SANDBOX_SECURITY_CREDENTIAL": None})
        initiator = PaymentInitiator(mpesa_client, store, settings)

        with pytest.raises(ConfigurationError) as exc:
            await initiator.disbursement("0712345678", 100, "Gift", "Promo", "PromotionPayment", "sandbox")

        assert str(exc.value) == "Security credential not configured"
        assert daraja.requests == []
        assert store.total_mutations == 0

    @pytest.mark.asyncio
    async def test_below_minimum_has_no_side_effects(self, initiator, store, daraja) -> None:
        with pytest.raises(ValidationError):
            await initiator.disbursement("0712345678", 5, "Gift", "Promo", "PromotionPayment", "sandbox")
        assert daraja.requests == []
        assert store.total_mutations == 0

    @pytest.mark.asyncio
    async def test_accepted_without_conversation_id_saves_nothing(self, initiator, store, daraja) -> None:
        daraja.respond(B2C_PATH, 200, {"OriginatorConversationID": "OC-1", "ResponseCode": "0"})

        with pytest.raises(UpstreamPaymentError) as exc:
            await initiator.disbursement("0712345678", 1500, "March", "Salary", "SalaryPayment", "sandbox")

        assert "ConversationID" in exc.value.message
        assert store.total_mutations == 0


class TestStatusQuery:

    @pytest.mark.asyncio
    async def test_query_writes_audit_only(self, initiator, store, daraja) -> None:
        result = await initiator.status_query("NLJ7RT61SV", "sandbox")

        assert result["data"]["ResponseCode"] == "0"
        assert store.transactions == {}
        assert store.audit_actions() == ["Transaction Status Query"]

        body = daraja.body(daraja.calls_to(STATUS_PATH)[0])
        assert body["CommandID"] == "TransactionStatusQuery"
        assert body["TransactionID"] == "NLJ7RT61SV"
        assert body["IdentifierType"] == "4"


def test_transaction_ids_are_unique() -> None:
    ids = {generate_transaction_id("STK") for _ in range(1000)}
    assert len(ids) == 1000
    assert all(i.startswith("STK") for i in ids)
