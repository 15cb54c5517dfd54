"""Payment error taxonomy and gateway error classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus


class GatewayErrorKind(str, Enum):
    AUTH_FAILURE = "auth_failure"
    INVALID_SHORTCODE = "invalid_shortcode"
    INVALID_PASSKEY = "invalid_passkey"
    NETWORK = "network"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[GatewayErrorKind, str] = {
    GatewayErrorKind.AUTH_FAILURE: (
        "M-Pesa authentication failed. Please check your consumer key and secret."
    ),
    GatewayErrorKind.INVALID_SHORTCODE: (
        "The paybill or till number was rejected. Please check your shortcode."
    ),
    GatewayErrorKind.INVALID_PASSKEY: (
        "The passkey was rejected. Please check your M-Pesa passkey."
    ),
    GatewayErrorKind.NETWORK: (
        "Could not reach M-Pesa. Please check your connection and try again."
    ),
    GatewayErrorKind.UNKNOWN: "The payment request failed. Please try again.",
}

# Error ids returned by the gateway boundary
ERROR_ID_KINDS: dict[str, GatewayErrorKind] = {
    "MPESA_TOKEN_FAILED": GatewayErrorKind.AUTH_FAILURE,
    "MPESA_DECRYPTION_FAILED": GatewayErrorKind.AUTH_FAILURE,
    "AUTH_INVALID_JWT": GatewayErrorKind.AUTH_FAILURE,
    "MPESA_STK_FAILED": GatewayErrorKind.UNKNOWN,
    "MPESA_CONFIG_MISSING": GatewayErrorKind.UNKNOWN,
}


@dataclass(slots=True)
class MpesaError(Exception):
    """Base error for the payment core.

    ``detail`` is the operator-facing diagnostic and goes to logs.
    ``user_message`` is what a payer or landlord is shown.
    """

    detail: str
    status_code: HTTPStatus = HTTPStatus.BAD_REQUEST
    user_message: str | None = None

    code = "payment_error"

    def __str__(self) -> str:  # pragma: no cover
        return self.detail

    @property
    def public_message(self) -> str:
        return self.user_message or self.detail


@dataclass(slots=True)
class ValidationError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.UNPROCESSABLE_ENTITY

    code = "validation_error"


@dataclass(slots=True)
class NotFoundError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.NOT_FOUND

    code = "not_found"


@dataclass(slots=True)
class AuthError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED
    user_message: str | None = _USER_MESSAGES[GatewayErrorKind.AUTH_FAILURE]

    code = "auth_error"


@dataclass(slots=True)
class ForbiddenError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.FORBIDDEN
    user_message: str | None = "You are not authorized to make this payment."

    code = "forbidden"


@dataclass(slots=True)
class EncryptionError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    user_message: str | None = "Payment credentials could not be processed securely."

    code = "encryption_error"


@dataclass(slots=True)
class GatewayError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.BAD_GATEWAY
    user_message: str | None = None
    kind: GatewayErrorKind = GatewayErrorKind.UNKNOWN

    code = "gateway_error"

    def __post_init__(self) -> None:
        if self.user_message is None:
            self.user_message = user_message_for(self.kind)


@dataclass(slots=True)
class ConflictError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.CONFLICT

    code = "conflict"


@dataclass(slots=True)
class PollTimeoutError(MpesaError):
    status_code: HTTPStatus = HTTPStatus.GATEWAY_TIMEOUT
    user_message: str | None = (
        "Payment verification timed out. Please check the transaction status manually."
    )

    code = "timeout"


@dataclass(slots=True)
class AllocationError(MpesaError):
    """Multi-step allocation stopped midway.

    ``completed_steps`` lists the steps that had been applied before the
    failure so an operator can reconcile them.
    """

    status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    user_message: str | None = "The payment could not be allocated. No changes were saved."
    completed_steps: list[str] = field(default_factory=list)

    code = "allocation_error"


def classify_gateway_error(message: str | None, status_code: int | None = None) -> GatewayErrorKind:
    """Map a raw gateway error message and HTTP status onto a ``GatewayErrorKind``."""
    text = (message or "").lower()

    if text.upper() in ERROR_ID_KINDS:
        return ERROR_ID_KINDS[text.upper()]

    if status_code == 401 or "oauth" in text or "token" in text or "401" in text:
        return GatewayErrorKind.AUTH_FAILURE
    if "passkey" in text or "password" in text:
        return GatewayErrorKind.INVALID_PASSKEY
    if "shortcode" in text or "short code" in text or "till" in text:
        return GatewayErrorKind.INVALID_SHORTCODE
    if (
        "network" in text
        or "timeout" in text
        or "timed out" in text
        or "connect" in text
        or status_code in (502, 503, 504)
    ):
        return GatewayErrorKind.NETWORK
    return GatewayErrorKind.UNKNOWN


def user_message_for(kind: GatewayErrorKind) -> str:
    return _USER_MESSAGES[kind]
