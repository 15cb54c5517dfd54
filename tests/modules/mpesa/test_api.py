"""Integration tests for the M-Pesa API endpoints."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from zira_api.modules.mpesa.models import InboundPayment, MpesaTransaction

PAYBILL_CONFIG = {
    "credentials": {
        "kind": "paybill",
        "shortcode": "600100",
        "consumer_key": "merchant-consumer-key",
        "consumer_secret": "merchant-consumer-secret",
        "passkey": "merchant-passkey-0123456789",
    },
    "environment": "sandbox",
    "display_name": "Main paybill",
    "verify": False,
}


@pytest.fixture
def headers(account_id):
    return {"X-Account-ID": str(account_id), "X-Session-ID": "tab-1"}


@pytest.fixture
def mock_http():
    with patch("zira_api.modules.mpesa.providers.base.httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value.__aenter__.return_value = mock_client
        mock_client_class.return_value.__aexit__.return_value = False
        yield mock_client


def token_ok():
    return httpx.Response(
        200,
        json={"access_token": "merchant-token", "expires_in": "3599"},
        request=httpx.Request("GET", "https://sandbox.safaricom.co.ke/oauth/v1/generate"),
    )


class TestAccountContext:
    def test_missing_account_header(self, client: TestClient):
        response = client.get("/api/v1/mpesa/configs")
        assert response.status_code == 401

    def test_invalid_account_header(self, client: TestClient):
        response = client.get("/api/v1/mpesa/configs", headers={"X-Account-ID": "not-a-uuid"})
        assert response.status_code == 400


class TestConfigEndpoints:
    """Test suite for configuration endpoints."""

    def test_save_and_list_never_return_secrets(self, client: TestClient, headers):
        response = client.post("/api/v1/mpesa/configs", json=PAYBILL_CONFIG, headers=headers)

        assert response.status_code == 201
        saved = response.json()
        assert saved["provider_type"] == "paybill"
        assert saved["is_verified"] is False

        response = client.get("/api/v1/mpesa/configs", headers=headers)
        assert response.status_code == 200
        configs = response.json()
        assert len(configs) == 1
        assert configs[0]["shortcode"] == "600100"
        assert configs[0]["state"] == "unverified"
        assert configs[0]["has_credentials"] is True
        body = response.text
        for secret in ("merchant-consumer-key", "merchant-consumer-secret", "merchant-passkey-0123456789"):
            assert secret not in body
        assert "secrets" not in configs[0]

    def test_invalid_secret_length(self, client: TestClient, headers):
        payload = {**PAYBILL_CONFIG, "credentials": {**PAYBILL_CONFIG["credentials"], "passkey": "short"}}

        response = client.post("/api/v1/mpesa/configs", json=payload, headers=headers)

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_unverified_config_cannot_be_activated(self, client: TestClient, headers):
        config_id = client.post("/api/v1/mpesa/configs", json=PAYBILL_CONFIG, headers=headers).json()["config_id"]

        response = client.post(f"/api/v1/mpesa/configs/{config_id}/activate", headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_save_with_verification_then_activate(self, client: TestClient, headers, mock_http):
        mock_http.get.return_value = token_ok()

        response = client.post(
            "/api/v1/mpesa/configs", json={**PAYBILL_CONFIG, "verify": True}, headers=headers
        )
        assert response.status_code == 201
        saved = response.json()
        assert saved["is_verified"] is True
        assert saved["verification_error"] is None

        response = client.post(f"/api/v1/mpesa/configs/{saved['config_id']}/activate", headers=headers)
        assert response.status_code == 200
        assert response.json()["state"] == "active"

        response = client.post("/api/v1/mpesa/configs/platform-default", headers=headers)
        assert response.status_code == 200
        assert response.json()[0]["state"] == "verified_inactive"

    def test_failed_verification_is_reported(self, client: TestClient, headers, mock_http):
        mock_http.get.return_value = httpx.Response(
            400,
            json={"errorMessage": "Invalid credentials"},
            request=httpx.Request("GET", "https://sandbox.safaricom.co.ke/oauth/v1/generate"),
        )
        config_id = client.post("/api/v1/mpesa/configs", json=PAYBILL_CONFIG, headers=headers).json()["config_id"]

        response = client.post(f"/api/v1/mpesa/configs/{config_id}/verify", headers=headers)

        assert response.status_code == 200
        result = response.json()
        assert result["success"] is False
        assert "consumer key" in result["error"]

    def test_delete_config(self, client: TestClient, headers):
        config_id = client.post("/api/v1/mpesa/configs", json=PAYBILL_CONFIG, headers=headers).json()["config_id"]

        assert client.delete(f"/api/v1/mpesa/configs/{config_id}", headers=headers).status_code == 204
        assert client.get("/api/v1/mpesa/configs", headers=headers).json() == []
        assert client.delete(f"/api/v1/mpesa/configs/{config_id}", headers=headers).status_code == 404


class TestDraftEndpoints:
    def test_draft_merge_and_clear(self, client: TestClient, headers):
        client.put("/api/v1/mpesa/configs/draft", json={"till_number": "855087"}, headers=headers)
        client.put("/api/v1/mpesa/configs/draft", json={"kopokopo_client_id": "abc"}, headers=headers)

        response = client.get("/api/v1/mpesa/configs/draft", headers=headers)
        assert response.status_code == 200
        assert response.json() == {
            "fields": {"till_number": "855087", "kopokopo_client_id": "abc"},
            "editing": True,
        }

        other_tab = {**headers, "X-Session-ID": "tab-2"}
        assert client.get("/api/v1/mpesa/configs/draft", headers=other_tab).json()["fields"] is None

        assert client.delete("/api/v1/mpesa/configs/draft", headers=headers).status_code == 204
        assert client.get("/api/v1/mpesa/configs/draft", headers=headers).json() == {
            "fields": None,
            "editing": False,
        }

    def test_save_config_clears_draft(self, client: TestClient, headers):
        client.put("/api/v1/mpesa/configs/draft", json={"shortcode": "600100"}, headers=headers)

        client.post("/api/v1/mpesa/configs", json=PAYBILL_CONFIG, headers=headers)

        assert client.get("/api/v1/mpesa/configs/draft", headers=headers).json()["fields"] is None


class TestPaymentEndpoints:
    def test_dry_run_reports_platform_default(self, client: TestClient, headers, mock_http):
        response = client.post(
            "/api/v1/mpesa/stk-push",
            json={"phone": "0712345678", "amount": "10", "dry_run": True},
            headers=headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is True
        assert body["business_shortcode"] == "174379"
        assert body["transaction_type"] == "CustomerPayBillOnline"
        assert body["using_account_config"] is False
        mock_http.get.assert_not_called()
        mock_http.post.assert_not_called()

    def test_invalid_phone(self, client: TestClient, headers, mock_http):
        response = client.post(
            "/api/v1/mpesa/stk-push", json={"phone": "12345", "amount": "10"}, headers=headers
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"
        mock_http.get.assert_not_called()

    def test_push_starts_status_polling(self, client: TestClient, headers, settings, monkeypatch, mock_http):
        monkeypatch.setattr(settings, "MPESA_SERVER_POLLING", True)
        watcher = MagicMock()
        watcher.close = AsyncMock()
        client.app.state.status_watcher = watcher
        mock_http.get.return_value = token_ok()
        mock_http.post.return_value = httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_api_push",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
            },
            request=httpx.Request("POST", "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"),
        )

        response = client.post(
            "/api/v1/mpesa/stk-push", json={"phone": "0712345678", "amount": "10"}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["correlation_id"] == "ws_CO_api_push"
        watcher.watch.assert_called_once_with("ws_CO_api_push")

    def test_dry_run_does_not_poll(self, client: TestClient, headers, settings, monkeypatch, mock_http):
        monkeypatch.setattr(settings, "MPESA_SERVER_POLLING", True)
        watcher = MagicMock()
        watcher.close = AsyncMock()
        client.app.state.status_watcher = watcher

        response = client.post(
            "/api/v1/mpesa/stk-push",
            json={"phone": "0712345678", "amount": "10", "dry_run": True},
            headers=headers,
        )

        assert response.status_code == 200
        watcher.watch.assert_not_called()

    def test_foreign_invoice_is_forbidden(self, client: TestClient, headers, seed_invoice, mock_http):
        invoice = seed_invoice("1500", date(2024, 2, 1), owner_id=uuid4())

        response = client.post(
            "/api/v1/mpesa/stk-push",
            json={"phone": "0712345678", "amount": "1500", "invoice_id": str(invoice.id)},
            headers=headers,
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"
        mock_http.post.assert_not_called()

    def test_unknown_invoice_is_not_found(self, client: TestClient, headers, mock_http):
        response = client.post(
            "/api/v1/mpesa/stk-push",
            json={"phone": "0712345678", "amount": "10", "invoice_id": str(uuid4()), "dry_run": True},
            headers=headers,
        )

        assert response.status_code == 404

    def test_unknown_transaction(self, client: TestClient, headers):
        response = client.get("/api/v1/mpesa/transactions/ws_missing", headers=headers)
        assert response.status_code == 404

    def test_callback_updates_transaction_status(self, client: TestClient, headers, db_session, account_id):
        db_session.add(
            MpesaTransaction(
                account_id=account_id,
                checkout_request_id="ws_api_1",
                phone_number="254712345678",
                amount=Decimal("10"),
                status="pending",
            )
        )
        db_session.commit()

        response = client.post(
            "/api/v1/mpesa/callbacks/daraja",
            json={
                "Body": {
                    "stkCallback": {
                        "MerchantRequestID": "29115-34620561-1",
                        "CheckoutRequestID": "ws_api_1",
                        "ResultCode": 0,
                        "ResultDesc": "The service request is processed successfully.",
                        "CallbackMetadata": {
                            "Item": [
                                {"Name": "Amount", "Value": 10},
                                {"Name": "MpesaReceiptNumber", "Value": "ABC123"},
                            ]
                        },
                    }
                }
            },
        )
        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0

        response = client.get("/api/v1/mpesa/transactions/ws_api_1", headers=headers)
        assert response.status_code == 200
        assert response.json() == {
            "status": "completed",
            "result_code": 0,
            "result_desc": "The service request is processed successfully.",
            "mpesa_receipt_number": "ABC123",
        }


class TestAllocationEndpoints:
    def test_candidates_and_allocation(self, client: TestClient, headers, db_session, account_id, seed_invoice):
        jan = seed_invoice("1000", date(2024, 1, 15))
        seed_invoice("500", date(2024, 2, 1))
        payment = InboundPayment(
            account_id=account_id,
            source="jenga",
            amount=Decimal("1000"),
            customer_name="Jane Wanjiku",
            transaction_reference="JNG-REF-0001",
        )
        db_session.add(payment)
        db_session.commit()
        payment_id = str(payment.id)

        response = client.get("/api/v1/mpesa/allocations/payments", headers=headers)
        assert [p["id"] for p in response.json()] == [payment_id]

        response = client.get(f"/api/v1/mpesa/allocations/payments/{payment_id}/candidates", headers=headers)
        assert response.status_code == 200
        candidates = response.json()
        assert candidates["preselected_invoice_id"] == str(jan.id)
        assert len(candidates["candidates"]) == 2

        response = client.post(
            "/api/v1/mpesa/allocations",
            json={"payment_id": payment_id, "invoice_id": str(jan.id)},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json()["invoice_id"] == str(jan.id)

        response = client.post(
            "/api/v1/mpesa/allocations",
            json={"payment_id": payment_id, "invoice_id": str(jan.id)},
            headers=headers,
        )
        assert response.status_code == 409

        assert client.get("/api/v1/mpesa/allocations/payments", headers=headers).json() == []
