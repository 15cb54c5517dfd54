"""M-Pesa Pydantic schemas for request/response validation."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Enums
class ProviderType(str, Enum):
    """Merchant account variants."""

    PAYBILL = "paybill"
    TILL_DIRECT = "till_direct"  # Safaricom till via Daraja
    TILL_GATEWAY = "till_gateway"  # Till relayed through Kopo Kopo


class Environment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"

    @classmethod
    def normalize(cls, value: str | None) -> "Environment":
        """Map loose environment strings ('PROD', 'production', ...) onto the enum."""
        if value and "prod" in str(value).lower():
            return cls.PRODUCTION
        return cls.SANDBOX


class ConfigState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED_INACTIVE = "verified_inactive"
    ACTIVE = "active"


class ConfigSelectionPolicy(str, Enum):
    CUSTOM = "custom"
    PLATFORM_DEFAULT = "platform_default"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class PaymentType(str, Enum):
    RENT = "rent"
    TEST = "test"
    SERVICE_CHARGE = "service_charge"
    SUBSCRIPTION = "subscription"


class FlowState(str, Enum):
    """States a payment flow moves through from the payer's point of view."""

    IDLE = "idle"
    SENDING = "sending"
    WAITING_ON_CUSTOMER = "waiting_on_customer"
    VERIFYING = "verifying"
    SUCCESS = "success"
    FAILED = "failed"


# Provider credential variants (tagged union on ``kind``)


class PaybillCredentials(BaseModel):
    """Safaricom paybill. Secrets may be blank on re-save to keep the stored ones."""

    kind: Literal["paybill"] = "paybill"
    shortcode: str = Field(..., min_length=5, max_length=20)
    consumer_key: str | None = None
    consumer_secret: str | None = None
    passkey: str | None = None


class TillDirectCredentials(BaseModel):
    """Safaricom buy-goods till called directly through Daraja."""

    kind: Literal["till_direct"] = "till_direct"
    shortcode: str = Field(..., min_length=5, max_length=20, description="Till number")
    consumer_key: str | None = None
    consumer_secret: str | None = None
    passkey: str | None = None


class TillGatewayCredentials(BaseModel):
    """Till relayed through Kopo Kopo using OAuth client credentials."""

    kind: Literal["till_gateway"] = "till_gateway"
    till_number: str = Field(..., min_length=5, max_length=20)
    client_id: str = Field(..., min_length=10)
    client_secret: str | None = None


ProviderCredentials = Annotated[
    Union[PaybillCredentials, TillDirectCredentials, TillGatewayCredentials],
    Field(discriminator="kind"),
]


# Request Schemas


class SaveConfigRequest(BaseModel):
    """Create or re-save the configuration for one provider variant."""

    credentials: ProviderCredentials
    environment: Environment = Environment.SANDBOX
    callback_url: str | None = None
    display_name: str | None = Field(default=None, max_length=100)
    verify: bool = Field(
        default=True,
        description="Run the connectivity test right after saving",
    )


class VerifyConfigRequest(BaseModel):
    """Optional freshly typed OAuth secret, only when rotating it."""

    client_secret: str | None = None


class PaymentInitiationRequest(BaseModel):
    phone: str
    amount: Decimal
    account_reference: str = Field(default="", max_length=64)
    description: str = Field(default="", max_length=255)
    invoice_id: UUID | None = None
    policy: ConfigSelectionPolicy | None = Field(
        default=None,
        description="Force a credential set; None resolves from the account's active config",
    )
    payment_type: PaymentType = PaymentType.RENT
    dry_run: bool = False


class AllocateRequest(BaseModel):
    payment_id: UUID
    invoice_id: UUID


# Response Schemas


class ConfigSummary(BaseModel):
    """Non-sensitive view of a merchant configuration. Never carries secrets."""

    id: UUID
    provider_type: ProviderType
    shortcode: str
    client_id: str | None = None
    environment: Environment
    display_name: str | None = None
    callback_url: str | None = None
    is_active: bool
    is_verified: bool
    state: ConfigState
    has_credentials: bool
    last_verified_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(use_enum_values=True)


class SaveConfigResponse(BaseModel):
    config_id: UUID
    provider_type: ProviderType
    shortcode: str
    environment: Environment
    is_verified: bool
    verification_error: str | None = None


class VerificationResult(BaseModel):
    success: bool
    error: str | None = None


class InitiationResponse(BaseModel):
    request_id: str | None = None
    correlation_id: str | None = None
    transaction_id: UUID | None = None
    dry_run: bool = False
    business_shortcode: str | None = None
    transaction_type: str | None = None
    environment: Environment | None = None
    using_account_config: bool | None = None


class TransactionStatusView(BaseModel):
    status: TransactionStatus
    result_code: int | None = None
    result_desc: str | None = None
    mpesa_receipt_number: str | None = None

    model_config = ConfigDict(use_enum_values=False)


class OutstandingInvoice(BaseModel):
    id: UUID
    invoice_number: str
    amount: Decimal
    due_date: date
    tenant_id: UUID | None = None
    lease_id: UUID
    unit_number: str | None = None
    property_name: str | None = None


class UnallocatedPayment(BaseModel):
    id: UUID
    source: str
    amount: Decimal
    customer_name: str | None = None
    customer_mobile: str | None = None
    reference: str | None = None
    transaction_reference: str
    created_at: datetime | None = None


class AllocationCandidates(BaseModel):
    payment_id: UUID
    amount: Decimal
    candidates: list[OutstandingInvoice]
    preselected_invoice_id: UUID | None = None


class AllocationResponse(BaseModel):
    payment_id: UUID
    invoice_id: UUID
    payment_record_id: UUID


class DraftResponse(BaseModel):
    """In-progress configuration edit, or ``fields=None`` when there is none."""

    fields: dict[str, Any] | None = None
    editing: bool = False


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
