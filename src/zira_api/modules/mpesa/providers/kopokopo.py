"""Kopo Kopo provider for tills relayed through the K2 Connect API."""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any

import httpx

from ..errors import GatewayError
from ..phone import mask_phone
from ..schemas import TransactionStatus
from .base import AccessToken, BaseMpesaProvider, StkPushResult, StkQueryResult

logger = logging.getLogger(__name__)

PAYMENT_CHANNEL = "M-PESA STK Push"
TRANSACTION_TYPE = "KopoKopoStkPush"

_STATUS_MAP = {
    "success": TransactionStatus.COMPLETED,
    "received": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.CANCELLED,
}


def till_reference(till_number: str) -> str:
    """Kopo Kopo online tills are addressed as ``K<number>``."""
    till = till_number.strip()
    return till if till.upper().startswith("K") else f"K{till}"


class KopoKopoProvider(BaseMpesaProvider):
    """Kopo Kopo K2 Connect provider.

    Authenticates with OAuth client credentials and starts STK pushes through
    the incoming payments API. The id of the created incoming payment doubles
    as the checkout request id.
    """

    @property
    def provider_name(self) -> str:
        return "kopokopo"

    @property
    def transaction_type(self) -> str:
        return TRANSACTION_TYPE

    @property
    def business_shortcode(self) -> str:
        return till_reference(str(self.config.get("shortcode") or ""))

    def _get_base_url(self) -> str:
        if self.is_test_mode():
            return "https://sandbox.kopokopo.com"
        return "https://api.kopokopo.com"

    def _token_identity(self) -> str:
        return str(self.get_credential("client_id", ""))

    async def _request_token(self, client: httpx.AsyncClient) -> AccessToken:
        client_id = self.get_credential("client_id")
        client_secret = self.get_credential("client_secret")
        if not client_id or not client_secret:
            raise ValueError("Kopo Kopo client_id and client_secret required")

        response = await client.post(
            f"{self._get_base_url()}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        result = response.json()
        expires_in = int(result.get("expires_in", 3600))
        return AccessToken(
            value=result["access_token"],
            expires_at=self.clock() + timedelta(seconds=expires_in),
        )

    async def initiate_stk_push(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StkPushResult:
        callback = callback_url or self.config.get("callback_url")
        if not callback:
            raise GatewayError("Kopo Kopo callback URL not configured")

        token = await self.ensure_token()
        payload = {
            "payment_channel": PAYMENT_CHANNEL,
            "till_number": self.business_shortcode,
            "subscriber": {"phone_number": f"+{phone.lstrip('+')}"},
            "amount": {"currency": "KES", "value": str(amount)},
            "metadata": {
                "reference": account_reference,
                "notes": description,
                **(metadata or {}),
            },
            "_links": {"callback_url": callback},
        }

        logger.info(
            "Kopo Kopo STK push: till=%s phone=%s amount=%s",
            self.business_shortcode,
            mask_phone(phone),
            amount,
        )
        response = await self._send(
            "POST",
            f"{self._get_base_url()}/api/v1/incoming_payments",
            "stk push",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            json=payload,
        )
        body = self._raise_for_response(response, "stk push")

        location = response.headers.get("location") or response.headers.get("Location")
        if not location:
            logger.warning("Kopo Kopo STK push response had no Location header: %s", body)
            raise GatewayError("Kopo Kopo stk push returned no payment location")

        return StkPushResult(
            checkout_request_id=location.rstrip("/").rsplit("/", 1)[-1],
            merchant_request_id=location,
            business_shortcode=self.business_shortcode,
            transaction_type=self.transaction_type,
            raw=body,
        )

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        token = await self.ensure_token()
        response = await self._send(
            "GET",
            f"{self._get_base_url()}/api/v1/incoming_payments/{checkout_request_id}",
            "stk query",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        body = self._raise_for_response(response, "stk query")
        return parse_incoming_payment(body)


def parse_incoming_payment(body: dict[str, Any]) -> StkQueryResult:
    """Read the outcome from an incoming payment resource or callback body."""
    attributes = (body.get("data") or {}).get("attributes") or {}
    status = _STATUS_MAP.get(str(attributes.get("status", "")).lower())
    if status is None:
        return StkQueryResult(status=None)

    event = attributes.get("event") or {}
    resource = event.get("resource") or {}
    if status is TransactionStatus.COMPLETED:
        return StkQueryResult(
            status=status,
            result_code=0,
            result_desc="Payment successful",
            mpesa_receipt_number=resource.get("reference") or resource.get("id"),
        )
    errors = event.get("errors")
    return StkQueryResult(
        status=status,
        result_code=1,
        result_desc=attributes.get("failure_reason") or (str(errors) if errors else "Payment failed"),
    )
