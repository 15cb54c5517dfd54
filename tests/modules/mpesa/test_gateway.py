"""Tests for transaction status reads against the payment network."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from zira_api.modules.mpesa.callbacks import DarajaCallbackHandler
from zira_api.modules.mpesa.credentials import CredentialStore
from zira_api.modules.mpesa.errors import GatewayError, GatewayErrorKind
from zira_api.modules.mpesa.gateway import MpesaGateway
from zira_api.modules.mpesa.models import MpesaTransaction, PaymentRecord
from zira_api.modules.mpesa.schemas import SaveConfigRequest, TillGatewayCredentials, TransactionStatus


def json_response(status_code, body, method="POST"):
    return httpx.Response(status_code, json=body, request=httpx.Request(method, "https://example.test"))


def success_callback(checkout_request_id, amount=10, receipt="QBX7Y8Z9AB"):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }


@pytest.fixture
def mock_http():
    with patch("zira_api.modules.mpesa.providers.base.httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value.__aenter__.return_value = mock_client
        mock_client_class.return_value.__aexit__.return_value = False
        mock_client.get.return_value = json_response(
            200, {"access_token": "daraja-token", "expires_in": "3599"}, method="GET"
        )
        yield mock_client


@pytest.fixture
def gateway(db_session, settings):
    return MpesaGateway(db_session, settings)


@pytest.fixture
def pending_txn(db_session, account_id):
    def _make(checkout_request_id="ws_CO_1", invoice_id=None, config_id=None, amount="10"):
        txn = MpesaTransaction(
            account_id=account_id,
            config_id=config_id,
            checkout_request_id=checkout_request_id,
            phone_number="254712345678",
            amount=Decimal(amount),
            invoice_id=invoice_id,
            status=TransactionStatus.PENDING.value,
        )
        db_session.add(txn)
        db_session.commit()
        return txn

    return _make


class TestReadStatus:
    @pytest.mark.asyncio
    async def test_stored_status_without_query(self, gateway, pending_txn, mock_http):
        pending_txn()

        view = await gateway.read_status("ws_CO_1")

        assert view.status is TransactionStatus.PENDING
        mock_http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_query_completes_and_settles_invoice(self, gateway, pending_txn, seed_invoice, db_session, mock_http):
        invoice = seed_invoice("10", date(2024, 1, 15))
        pending_txn(invoice_id=invoice.id)
        mock_http.post.return_value = json_response(
            200,
            {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "The service request is processed successfully."},
        )

        view = await gateway.read_status("ws_CO_1", query_gateway=True)

        assert view.status is TransactionStatus.COMPLETED
        assert view.result_code == 0
        db_session.refresh(invoice)
        assert invoice.status == "paid"
        record = db_session.execute(select(PaymentRecord)).scalar_one()
        assert record.invoice_id == invoice.id
        assert record.payment_reference == "ws_CO_1"

    @pytest.mark.asyncio
    async def test_late_callback_records_receipt(self, gateway, pending_txn, seed_invoice, db_session, mock_http):
        invoice = seed_invoice("10", date(2024, 1, 15))
        pending_txn(invoice_id=invoice.id)
        mock_http.post.return_value = json_response(200, {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "ok"})
        await gateway.read_status("ws_CO_1", query_gateway=True)

        result = DarajaCallbackHandler(db_session).handle(success_callback("ws_CO_1"))

        assert result.processed is True
        txn = db_session.execute(select(MpesaTransaction)).scalar_one()
        assert txn.mpesa_receipt_number == "QBX7Y8Z9AB"
        records = db_session.execute(select(PaymentRecord)).scalars().all()
        assert len(records) == 1
        assert records[0].payment_reference == "QBX7Y8Z9AB"

        again = DarajaCallbackHandler(db_session).handle(success_callback("ws_CO_1"))
        assert again.processed is False
        assert again.message == "Already processed"

    @pytest.mark.asyncio
    async def test_still_processing_stays_pending(self, gateway, pending_txn, db_session, mock_http):
        pending_txn()
        mock_http.post.return_value = json_response(
            500,
            {"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )

        view = await gateway.read_status("ws_CO_1", query_gateway=True)

        assert view.status is TransactionStatus.PENDING
        assert view.result_code is None

    @pytest.mark.asyncio
    async def test_cancelled_query_does_not_settle(self, gateway, pending_txn, seed_invoice, db_session, mock_http):
        invoice = seed_invoice("10", date(2024, 1, 15))
        pending_txn(invoice_id=invoice.id)
        mock_http.post.return_value = json_response(
            200, {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
        )

        view = await gateway.read_status("ws_CO_1", query_gateway=True)

        assert view.status is TransactionStatus.CANCELLED
        db_session.refresh(invoice)
        assert invoice.status == "pending"
        assert db_session.execute(select(PaymentRecord)).first() is None

    @pytest.mark.asyncio
    async def test_terminal_rows_are_not_queried(self, gateway, pending_txn, db_session, mock_http):
        txn = pending_txn()
        txn.status = TransactionStatus.FAILED.value
        txn.result_code = 1
        db_session.commit()

        view = await gateway.read_status("ws_CO_1", query_gateway=True)

        assert view.status is TransactionStatus.FAILED
        mock_http.get.assert_not_called()
        mock_http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_paid_invoice_does_not_fail_the_read(self, gateway, pending_txn, seed_invoice, db_session, mock_http):
        invoice = seed_invoice("10", date(2024, 1, 15), status="paid")
        pending_txn(invoice_id=invoice.id)
        mock_http.post.return_value = json_response(200, {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "ok"})

        view = await gateway.read_status("ws_CO_1", query_gateway=True)

        assert view.status is TransactionStatus.COMPLETED
        assert db_session.execute(select(PaymentRecord)).first() is None

    @pytest.mark.asyncio
    async def test_unreachable_provider_raises_network_error(self, gateway, pending_txn, mock_http):
        pending_txn()
        mock_http.post.side_effect = httpx.ConnectTimeout("timed out")

        with pytest.raises(GatewayError) as exc_info:
            await gateway.read_status("ws_CO_1", query_gateway=True)

        assert exc_info.value.kind is GatewayErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_kopokopo_query(self, gateway, pending_txn, db_session, account_id, mock_http):
        config = CredentialStore(db_session).save_config(
            account_id,
            SaveConfigRequest(
                credentials=TillGatewayCredentials(
                    till_number="855087",
                    client_id="kopokopo-client-id",
                    client_secret="kopokopo-client-secret",
                ),
                verify=False,
            ),
        )
        pending_txn(checkout_request_id="247b1bd8", config_id=config.id)
        mock_http.post.return_value = json_response(200, {"access_token": "k2-token", "expires_in": 3600})
        mock_http.get.return_value = json_response(
            200,
            {
                "data": {
                    "id": "247b1bd8",
                    "attributes": {
                        "status": "Success",
                        "event": {"resource": {"reference": "OJJ7G6XN6D", "amount": "10.0"}},
                    },
                }
            },
            method="GET",
        )

        view = await gateway.read_status("247b1bd8", query_gateway=True)

        assert view.status is TransactionStatus.COMPLETED
        assert view.mpesa_receipt_number == "OJJ7G6XN6D"
        assert mock_http.get.call_args.args[0].endswith("/api/v1/incoming_payments/247b1bd8")
