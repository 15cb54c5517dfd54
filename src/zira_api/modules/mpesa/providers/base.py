"""Base M-Pesa provider.

Every provider variant inherits from BaseMpesaProvider and implements the
OAuth token request, the STK push and the status query for its network.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import httpx

from ..errors import AuthError, GatewayError, classify_gateway_error
from ..schemas import Environment, TransactionStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccessToken:
    """Cached OAuth access token.

    Attributes:
        value: Bearer token
        expires_at: Absolute expiry reported by the provider
    """

    value: str
    expires_at: datetime

    def is_near_expiry(self, margin_seconds: int, now: datetime) -> bool:
        return now + timedelta(seconds=margin_seconds) >= self.expires_at


class TokenCache:
    """Access tokens shared across provider instances, keyed by credential set."""

    def __init__(self) -> None:
        self._tokens: dict[str, AccessToken] = {}

    def get(self, key: str) -> AccessToken | None:
        return self._tokens.get(key)

    def put(self, key: str, token: AccessToken) -> None:
        self._tokens[key] = token

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)

    def clear(self) -> None:
        self._tokens.clear()


token_cache = TokenCache()


@dataclass
class StkPushResult:
    """Result from submitting an STK push.

    Attributes:
        checkout_request_id: Correlation id used to poll for the outcome
        merchant_request_id: Provider-side request id
        business_shortcode: Shortcode the payer will see
        transaction_type: Network transaction type
        customer_message: Message shown to the payer by the provider
        raw: Provider response body, for logs only
    """

    checkout_request_id: str
    merchant_request_id: str | None = None
    business_shortcode: str | None = None
    transaction_type: str | None = None
    customer_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StkQueryResult:
    """Outcome reported by a remote status query. ``status`` None means still processing."""

    status: TransactionStatus | None
    result_code: int | None = None
    result_desc: str | None = None
    mpesa_receipt_number: str | None = None


class BaseMpesaProvider(ABC):
    """Abstract base class for M-Pesa providers."""

    def __init__(
        self,
        credentials: dict[str, Any],
        environment: Environment | str = Environment.SANDBOX,
        config: dict[str, Any] | None = None,
        *,
        refresh_margin_seconds: int = 60,
        timeout: float = 30.0,
        cache: TokenCache | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize the provider.

        Args:
            credentials: Decrypted secrets and identifiers
            environment: sandbox or production
            config: Non-secret settings (shortcode, callback url, ...)
            refresh_margin_seconds: Tokens expiring within this margin are refreshed
            timeout: HTTP timeout in seconds
            cache: Token cache, defaults to the process-wide cache
            clock: Source of the current UTC time
        """
        self.credentials = credentials
        self.environment = Environment.normalize(getattr(environment, "value", environment))
        self.config = config or {}
        self.refresh_margin_seconds = refresh_margin_seconds
        self.timeout = timeout
        self.cache = cache if cache is not None else token_cache
        self.clock = clock

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g. 'daraja')."""

    @property
    @abstractmethod
    def transaction_type(self) -> str:
        """Network transaction type reported back to callers."""

    @property
    def business_shortcode(self) -> str:
        return str(self.config.get("shortcode") or "")

    @abstractmethod
    def _get_base_url(self) -> str:
        """API base URL for the configured environment."""

    @abstractmethod
    def _token_identity(self) -> str:
        """Public part of the credential set identifying a token."""

    @abstractmethod
    async def _request_token(self, client: httpx.AsyncClient) -> AccessToken:
        """Request a fresh access token from the provider.

        Raises:
            httpx.HTTPError: On transport or HTTP status failure
        """

    @abstractmethod
    async def initiate_stk_push(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StkPushResult:
        """Submit an STK push to the payer's phone.

        Raises:
            AuthError: If the access token cannot be obtained
            GatewayError: If the provider rejects the request
        """

    @abstractmethod
    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        """Ask the provider for the outcome of an STK push."""

    def is_test_mode(self) -> bool:
        return self.environment is Environment.SANDBOX

    def get_credential(self, key: str, default: Any = None) -> Any:
        return self.credentials.get(key, default)

    def _cache_key(self) -> str:
        digest = hashlib.sha256(self._token_identity().encode()).hexdigest()[:24]
        return f"{self.provider_name}:{self.environment.value}:{digest}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    async def ensure_token(self, force: bool = False) -> str:
        """Return a usable access token, refreshing one that is near expiry.

        A refused refresh is a hard failure; no retry is attempted.

        Raises:
            AuthError: If the provider refuses to issue a token
            GatewayError: If the provider cannot be reached
        """
        key = self._cache_key()
        cached = self.cache.get(key)
        if cached and not force and not cached.is_near_expiry(self.refresh_margin_seconds, self.clock()):
            return cached.value

        self.cache.invalidate(key)
        try:
            async with self._client() as client:
                token = await self._request_token(client)
        except httpx.HTTPStatusError as e:
            logger.warning(
                "%s token refresh refused: status=%s body=%s",
                self.provider_name,
                e.response.status_code,
                e.response.text[:500],
            )
            raise AuthError(
                f"{self.provider_name} token request failed with status {e.response.status_code}"
            ) from e
        except httpx.TransportError as e:
            logger.warning("%s token request could not reach provider: %r", self.provider_name, e)
            raise GatewayError(
                f"{self.provider_name} token request failed: {e!r}",
                kind=classify_gateway_error("network error"),
            ) from e
        except (KeyError, ValueError) as e:
            logger.warning("%s token response malformed: %r", self.provider_name, e)
            raise AuthError(f"{self.provider_name} token response malformed") from e

        self.cache.put(key, token)
        logger.debug("%s token refreshed, expires at %s", self.provider_name, token.expires_at)
        return token.value

    async def test_connection(self) -> None:
        """Force a token request to prove the credentials work."""
        await self.ensure_token(force=True)

    async def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        """Issue one API request with ``method`` being ``GET`` or ``POST``.

        Raises:
            GatewayError: With kind ``network`` if the provider cannot be reached
        """
        try:
            async with self._client() as client:
                send = client.post if method == "POST" else client.get
                return await send(url, **kwargs)
        except httpx.TransportError as e:
            logger.warning("%s %s could not reach provider: %r", self.provider_name, operation, e)
            raise GatewayError(
                f"{self.provider_name} {operation} failed: {e!r}",
                kind=classify_gateway_error("network error"),
            ) from e

    def _raise_for_response(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        """Return the JSON body or raise a classified error."""
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code >= 400:
            message = str(
                body.get("errorMessage")
                or body.get("error_message")
                or body.get("message")
                or body.get("error")
                or response.text[:200]
            )
            logger.warning(
                "%s %s failed: status=%s body=%s",
                self.provider_name,
                operation,
                response.status_code,
                body,
            )
            kind = classify_gateway_error(message, response.status_code)
            if response.status_code == 401:
                self.cache.invalidate(self._cache_key())
                raise AuthError(f"{self.provider_name} {operation} unauthorized: {message}")
            raise GatewayError(f"{self.provider_name} {operation} failed: {message}", kind=kind)
        return body
