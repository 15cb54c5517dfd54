"""Tests for provider callback ingestion."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from zira_api.modules.mpesa.callbacks import DarajaCallbackHandler, KopoKopoCallbackHandler
from zira_api.modules.mpesa.errors import ValidationError
from zira_api.modules.mpesa.models import MpesaTransaction, PaymentRecord
from zira_api.modules.mpesa.schemas import TransactionStatus


@pytest.fixture
def make_transaction(db_session, account_id):
    def _make(checkout_request_id="ws_1", amount="10", invoice_id=None, provider="mpesa"):
        txn = MpesaTransaction(
            account_id=account_id,
            provider=provider,
            checkout_request_id=checkout_request_id,
            phone_number="254712345678",
            amount=Decimal(amount),
            invoice_id=invoice_id,
            status="pending",
        )
        db_session.add(txn)
        db_session.commit()
        db_session.refresh(txn)
        return txn

    return _make


def stk_callback(checkout_request_id="ws_1", result_code=0, amount=10, receipt="ABC123", desc="Success"):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def kopokopo_callback(payment_id="k2-1", status="Success", amount="150.0", reference="OJJ7G6XN6D"):
    return {
        "data": {
            "id": payment_id,
            "type": "incoming_payment",
            "attributes": {
                "initiation_time": "2024-01-15T10:30:00.000+03:00",
                "status": status,
                "event": {
                    "type": "Incoming Payment Request",
                    "resource": {
                        "id": "resource-1",
                        "reference": reference,
                        "amount": amount,
                        "currency": "KES",
                        "status": "Received",
                    },
                    "errors": None,
                },
            },
        }
    }


class TestDarajaCallback:
    """Callbacks move pending transactions to a terminal status once."""

    def test_success_completes_and_settles_invoice(self, db_session, make_transaction, seed_invoice):
        invoice = seed_invoice("10", date(2024, 1, 15))
        make_transaction(invoice_id=invoice.id)

        result = DarajaCallbackHandler(db_session).handle(stk_callback())

        assert result.processed is True
        assert result.status is TransactionStatus.COMPLETED
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "completed"
        assert txn.result_code == 0
        assert txn.mpesa_receipt_number == "ABC123"
        db_session.refresh(invoice)
        assert invoice.status == "paid"

    def test_duplicate_callback_is_ignored(self, db_session, make_transaction, seed_invoice):
        invoice = seed_invoice("10", date(2024, 1, 15))
        make_transaction(invoice_id=invoice.id)
        handler = DarajaCallbackHandler(db_session)
        handler.handle(stk_callback())

        second = handler.handle(stk_callback(result_code=1, desc="Failed"))

        assert second.processed is False
        assert second.message == "Already processed"
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "completed"
        assert len(db_session.execute(select(PaymentRecord)).scalars().all()) == 1

    def test_cancelled_by_payer(self, db_session, make_transaction):
        make_transaction()

        result = DarajaCallbackHandler(db_session).handle(
            stk_callback(result_code=1032, desc="Request cancelled by user")
        )

        assert result.status is TransactionStatus.CANCELLED
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.result_desc == "Request cancelled by user"
        assert txn.mpesa_receipt_number is None

    def test_amount_mismatch_fails_transaction(self, db_session, make_transaction, seed_invoice):
        invoice = seed_invoice("10", date(2024, 1, 15))
        make_transaction(invoice_id=invoice.id)

        result = DarajaCallbackHandler(db_session).handle(stk_callback(amount=5))

        assert result.status is TransactionStatus.FAILED
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "failed"
        assert txn.result_desc.startswith("Amount mismatch")
        assert txn.mpesa_receipt_number is None
        db_session.refresh(invoice)
        assert invoice.status == "pending"

    def test_unknown_transaction(self, db_session):
        result = DarajaCallbackHandler(db_session).handle(stk_callback("ws_unknown"))
        assert result.processed is False

    def test_paid_invoice_does_not_fail_callback(self, db_session, make_transaction, seed_invoice):
        invoice = seed_invoice("10", date(2024, 1, 15), status="paid")
        make_transaction(invoice_id=invoice.id)

        result = DarajaCallbackHandler(db_session).handle(stk_callback())

        assert result.processed is True
        assert result.status is TransactionStatus.COMPLETED
        assert db_session.execute(select(PaymentRecord)).first() is None

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_1", "ResultCode": "abc"}}},
        ],
    )
    def test_malformed_payload(self, db_session, payload):
        with pytest.raises(ValidationError):
            DarajaCallbackHandler(db_session).handle(payload)


class TestKopoKopoCallback:
    def test_success(self, db_session, make_transaction):
        make_transaction("k2-1", amount="150", provider="kopokopo")

        result = KopoKopoCallbackHandler(db_session).handle(kopokopo_callback())

        assert result.processed is True
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "completed"
        assert txn.mpesa_receipt_number == "OJJ7G6XN6D"

    def test_failure(self, db_session, make_transaction):
        make_transaction("k2-1", amount="150", provider="kopokopo")
        payload = kopokopo_callback(status="Failed")
        payload["data"]["attributes"]["failure_reason"] = "Insufficient funds"

        KopoKopoCallbackHandler(db_session).handle(payload)

        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "failed"
        assert txn.result_desc == "Insufficient funds"

    def test_pending_status_is_not_applied(self, db_session, make_transaction):
        make_transaction("k2-1", amount="150", provider="kopokopo")

        result = KopoKopoCallbackHandler(db_session).handle(kopokopo_callback(status="Pending"))

        assert result.processed is False
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.status == "pending"

    def test_missing_id(self, db_session):
        with pytest.raises(ValidationError):
            KopoKopoCallbackHandler(db_session).handle({"data": {}})
