"""Safaricom Daraja provider for paybill and buy-goods tills."""

from __future__ import annotations

import base64
import logging
from datetime import timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from ..errors import GatewayError, classify_gateway_error
from ..phone import mask_phone
from ..schemas import TransactionStatus
from .base import AccessToken, BaseMpesaProvider, StkPushResult, StkQueryResult

logger = logging.getLogger(__name__)

PAYBILL_TRANSACTION_TYPE = "CustomerPayBillOnline"
BUY_GOODS_TRANSACTION_TYPE = "CustomerBuyGoodsOnline"

# Daraja field limits
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

# Returned by stkpushquery while the payer has not answered yet
STILL_PROCESSING_CODES = ("500.001.1001",)

# ResultCode 1032: request cancelled by the payer
CANCELLED_RESULT_CODE = 1032


class DarajaProvider(BaseMpesaProvider):
    """Safaricom Daraja (M-Pesa Express) provider.

    Serves both paybill (``CustomerPayBillOnline``) and buy-goods till
    (``CustomerBuyGoodsOnline``) merchants; ``buy_goods`` in the config picks
    the latter.
    """

    @property
    def provider_name(self) -> str:
        return "daraja"

    @property
    def transaction_type(self) -> str:
        if self.config.get("buy_goods"):
            return BUY_GOODS_TRANSACTION_TYPE
        return PAYBILL_TRANSACTION_TYPE

    def _get_base_url(self) -> str:
        if self.is_test_mode():
            return "https://sandbox.safaricom.co.ke"
        return "https://api.safaricom.co.ke"

    def _token_identity(self) -> str:
        return str(self.get_credential("consumer_key", ""))

    async def _request_token(self, client: httpx.AsyncClient) -> AccessToken:
        consumer_key = self.get_credential("consumer_key")
        consumer_secret = self.get_credential("consumer_secret")
        if not consumer_key or not consumer_secret:
            raise ValueError("Daraja consumer_key and consumer_secret required")

        response = await client.get(
            f"{self._get_base_url()}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(consumer_key, consumer_secret),
        )
        response.raise_for_status()
        result = response.json()
        expires_in = int(result.get("expires_in", 3599))
        return AccessToken(
            value=result["access_token"],
            expires_at=self.clock() + timedelta(seconds=expires_in),
        )

    def _password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        passkey = self.get_credential("passkey")
        if not passkey:
            raise ValueError("Daraja passkey required")
        raw = f"{self.business_shortcode}{passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _timestamp(self) -> str:
        return self.clock().astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")

    @staticmethod
    def _whole_amount(amount: Decimal) -> int:
        """Daraja only moves whole shillings."""
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    async def initiate_stk_push(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StkPushResult:
        """Submit ``processrequest`` to Daraja.

        Args:
            phone: Normalised phone (2547XXXXXXXX)
            amount: Amount, rounded to whole shillings
            account_reference: Shown to the payer, truncated to 12 characters
            description: Truncated to 13 characters
            callback_url: Where Daraja posts the outcome
            metadata: Unused by Daraja

        Returns:
            StkPushResult carrying the CheckoutRequestID
        """
        whole_amount = self._whole_amount(amount)
        callback = callback_url or self.config.get("callback_url")
        if not callback:
            raise GatewayError("Daraja callback URL not configured")

        token = await self.ensure_token()
        timestamp = self._timestamp()
        try:
            password = self._password(timestamp)
        except ValueError as e:
            raise GatewayError(str(e), kind=classify_gateway_error(str(e))) from e

        payload = {
            "BusinessShortCode": self.business_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self.business_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback,
            "AccountReference": (account_reference or self.business_shortcode)[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc": (description or "Payment")[:TRANSACTION_DESC_MAX],
        }

        logger.info(
            "Daraja STK push: shortcode=%s type=%s phone=%s amount=%s",
            self.business_shortcode,
            self.transaction_type,
            mask_phone(phone),
            whole_amount,
        )
        response = await self._send(
            "POST",
            f"{self._get_base_url()}/mpesa/stkpush/v1/processrequest",
            "stk push",
            headers={"Authorization": f"Bearer {token}"},
            json=payload,
        )
        body = self._raise_for_response(response, "stk push")

        if str(body.get("ResponseCode", "")) != "0" or not body.get("CheckoutRequestID"):
            message = str(body.get("ResponseDescription") or body.get("errorMessage") or "STK push rejected")
            logger.warning("Daraja STK push rejected: %s", body)
            raise GatewayError(
                f"Daraja stk push rejected: {message}",
                kind=classify_gateway_error(message),
            )

        return StkPushResult(
            checkout_request_id=body["CheckoutRequestID"],
            merchant_request_id=body.get("MerchantRequestID"),
            business_shortcode=self.business_shortcode,
            transaction_type=self.transaction_type,
            customer_message=body.get("CustomerMessage"),
            raw=body,
        )

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        token = await self.ensure_token()
        timestamp = self._timestamp()
        try:
            password = self._password(timestamp)
        except ValueError as e:
            raise GatewayError(str(e), kind=classify_gateway_error(str(e))) from e

        response = await self._send(
            "POST",
            f"{self._get_base_url()}/mpesa/stkpushquery/v1/query",
            "stk query",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "BusinessShortCode": self.business_shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "CheckoutRequestID": checkout_request_id,
            },
        )

        if response.status_code >= 400:
            try:
                error_code = str(response.json().get("errorCode", ""))
            except ValueError:
                error_code = ""
            if error_code in STILL_PROCESSING_CODES:
                return StkQueryResult(status=None)
        body = self._raise_for_response(response, "stk query")

        if "ResultCode" not in body:
            return StkQueryResult(status=None)

        result_code = int(body["ResultCode"])
        if result_code == 0:
            status = TransactionStatus.COMPLETED
        elif result_code == CANCELLED_RESULT_CODE:
            status = TransactionStatus.CANCELLED
        else:
            status = TransactionStatus.FAILED
        return StkQueryResult(
            status=status,
            result_code=result_code,
            result_desc=body.get("ResultDesc"),
        )
