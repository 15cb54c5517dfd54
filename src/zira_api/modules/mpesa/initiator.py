"""STK-Push Initiator."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from .allocation import find_invoice_owner
from .errors import AuthError, ForbiddenError, GatewayError, ValidationError, classify_gateway_error
from .gateway import GatewayRequest, MpesaGateway
from .models import MpesaTransaction
from .phone import mask_phone, normalize_phone
from .schemas import (
    InitiationResponse,
    PaymentInitiationRequest,
    ProviderType,
    TransactionStatus,
)
from .state import ConfigStateMachine

logger = logging.getLogger(__name__)


class StkPushInitiator:
    """Validates a payment request, resolves credentials and starts the STK push.

    Validation and configuration conflicts are raised before the gateway is
    contacted. Gateway failures come back classified, with a short
    user-facing message.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        gateway: MpesaGateway | None = None,
        state: ConfigStateMachine | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.gateway = gateway or MpesaGateway(db, self.settings)
        self.state = state or ConfigStateMachine(db, self.settings)

    def validate_amount(self, amount: Decimal | int | str) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid amount {amount!r}", user_message="Please enter a valid amount.") from e

        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Non-positive amount {amount!r}", user_message="Amount must be greater than zero.")
        if value < self.settings.MPESA_MIN_AMOUNT:
            raise ValidationError(
                f"Amount {value} below minimum {self.settings.MPESA_MIN_AMOUNT}",
                user_message=f"The minimum M-Pesa amount is KES {self.settings.MPESA_MIN_AMOUNT}.",
            )
        if value > self.settings.MPESA_MAX_AMOUNT:
            raise ValidationError(
                f"Amount {value} above maximum {self.settings.MPESA_MAX_AMOUNT}",
                user_message=f"The maximum M-Pesa amount is KES {self.settings.MPESA_MAX_AMOUNT}.",
            )
        return value

    def payee_account(self, account_id: UUID | None, invoice_id: UUID | None) -> UUID | None:
        """Account whose configuration collects the payment.

        An invoice payment is collected by the landlord owning the invoiced
        property. Only that landlord or the invoice's tenant may start it.

        Raises:
            NotFoundError: Unknown invoice.
            ForbiddenError: The caller is neither owner nor tenant.
        """
        if invoice_id is None:
            return account_id

        invoice, owner_id = find_invoice_owner(self.db, invoice_id)
        if account_id is None or account_id not in (owner_id, invoice.tenant_id):
            raise ForbiddenError(f"Account {account_id} may not pay invoice {invoice_id}")
        return owner_id

    async def initiate(
        self,
        account_id: UUID | None,
        request: PaymentInitiationRequest,
    ) -> InitiationResponse:
        """Start an STK push for ``request``.

        Raises:
            ValidationError: Bad phone number or amount.
            NotFoundError: Unknown invoice.
            ForbiddenError: The caller may not pay the invoice.
            ConflictError: The account's configuration may not take payments.
            AuthError: The gateway session could not be refreshed.
            GatewayError: The gateway rejected the request.
        """
        phone = normalize_phone(request.phone, self.settings.MPESA_COUNTRY_CODE)
        amount = self.validate_amount(request.amount)
        payee = self.payee_account(account_id, request.invoice_id)
        resolved = self.state.resolve_for_payment(payee, request.policy)

        # Daraja only moves whole shillings; record what is actually charged
        if resolved.provider_type in (ProviderType.PAYBILL, ProviderType.TILL_DIRECT):
            amount = amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)

        gateway_request = GatewayRequest(
            phone=phone,
            amount=amount,
            account_reference=request.account_reference,
            transaction_desc=request.description,
            invoice_id=request.invoice_id,
            payment_type=request.payment_type,
            dry_run=request.dry_run,
        )

        provider = self.gateway.build_provider(resolved)
        if not request.dry_run:
            await self.gateway.refresh_session(provider)

        response = await self.gateway.invoke(gateway_request, resolved, provider=provider)
        if not response.success:
            kind = response.kind or classify_gateway_error(response.error_id or response.error)
            if response.error_id == "MPESA_TOKEN_FAILED":
                raise AuthError(f"{response.error_id}: {response.error}")
            raise GatewayError(f"{response.error_id}: {response.error}", kind=kind)

        data = response.data
        if request.dry_run:
            return InitiationResponse(
                dry_run=True,
                business_shortcode=data.get("BusinessShortCode"),
                transaction_type=data.get("TransactionType"),
                environment=data.get("Environment"),
                using_account_config=data.get("UsingAccountConfig"),
            )

        checkout_request_id = data["CheckoutRequestID"]
        txn = MpesaTransaction(
            account_id=account_id,
            config_id=None if resolved.is_platform_default else resolved.config.id,
            provider="kopokopo" if resolved.provider_type is ProviderType.TILL_GATEWAY else "mpesa",
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            phone_number=phone,
            amount=amount,
            account_reference=request.account_reference or None,
            description=request.description or None,
            invoice_id=request.invoice_id,
            payment_type=request.payment_type.value,
            status=TransactionStatus.PENDING.value,
        )
        self.db.add(txn)
        self.db.commit()
        self.db.refresh(txn)

        logger.info(
            "STK push sent: checkout=%s phone=%s amount=%s account_config=%s",
            checkout_request_id,
            mask_phone(phone),
            amount,
            not resolved.is_platform_default,
        )
        return InitiationResponse(
            request_id=data.get("MerchantRequestID"),
            correlation_id=checkout_request_id,
            transaction_id=txn.id,
            business_shortcode=data.get("BusinessShortCode"),
            transaction_type=data.get("TransactionType"),
            environment=data.get("Environment"),
            using_account_config=data.get("UsingAccountConfig"),
        )
