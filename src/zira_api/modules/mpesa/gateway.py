"""Gateway invocation boundary.

Turns a payment request plus a resolved credential set into a provider call
and reports ``{success, data, error}`` the way the serverless payment function
of the hosted backend did. Also serves transaction status reads and the OAuth
connectivity test.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from .credentials import CredentialStore
from .errors import (
    AuthError,
    ConflictError,
    EncryptionError,
    GatewayError,
    GatewayErrorKind,
    NotFoundError,
    user_message_for,
)
from .models import MerchantPaymentConfig, MpesaTransaction
from .phone import mask_phone
from .providers import BaseMpesaProvider, DarajaProvider, KopoKopoProvider, TokenCache
from .schemas import (
    Environment,
    PaymentType,
    ProviderType,
    TransactionStatus,
    TransactionStatusView,
    VerificationResult,
)
from .settlement import apply_outcome, settle_transaction
from .state import ResolvedConfig

logger = logging.getLogger(__name__)


@dataclass
class GatewayRequest:
    phone: str
    amount: Decimal
    account_reference: str
    transaction_desc: str
    invoice_id: UUID | None = None
    payment_type: PaymentType = PaymentType.RENT
    dry_run: bool = False


@dataclass
class GatewayResponse:
    """Outcome of a gateway call.

    ``data`` carries ``CheckoutRequestID``, ``MerchantRequestID``,
    ``BusinessShortCode`` and ``TransactionType`` on success. ``error`` is a
    user-safe message and ``error_id`` one of the ``MPESA_*`` ids.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_id: str | None = None
    kind: GatewayErrorKind | None = None


class MpesaGateway:
    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        store: CredentialStore | None = None,
        cache: TokenCache | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = store or CredentialStore(db)
        self.cache = cache

    # === Providers ===

    def build_provider(
        self,
        resolved: ResolvedConfig,
        secret_overrides: dict[str, str] | None = None,
    ) -> BaseMpesaProvider:
        """Instantiate the provider for a resolved credential set.

        Raises:
            GatewayError: Platform default credentials are not configured.
            EncryptionError: Stored secrets cannot be decrypted.
        """
        options = {
            "refresh_margin_seconds": self.settings.MPESA_TOKEN_REFRESH_MARGIN_SECONDS,
            "timeout": self.settings.MPESA_HTTP_TIMEOUT_SECONDS,
            "cache": self.cache,
        }

        if resolved.is_platform_default:
            if not self.settings.platform_credentials_configured:
                raise GatewayError(
                    "MPESA_CONFIG_MISSING: platform default credentials not configured",
                    user_message="M-Pesa payments are not available right now.",
                )
            return DarajaProvider(
                credentials={
                    "consumer_key": self.settings.MPESA_PLATFORM_CONSUMER_KEY,
                    "consumer_secret": self.settings.MPESA_PLATFORM_CONSUMER_SECRET,
                    "passkey": self.settings.MPESA_PLATFORM_PASSKEY,
                },
                environment=resolved.environment,
                config={
                    "shortcode": self.settings.MPESA_PLATFORM_SHORTCODE,
                    "callback_url": self.settings.MPESA_CALLBACK_URL,
                },
                **options,
            )

        config = resolved.config
        secrets = self.store.read_secrets(config)
        secrets.update(secret_overrides or {})

        provider_type = ProviderType(config.provider_type)
        if provider_type is ProviderType.TILL_GATEWAY:
            secrets["client_id"] = config.client_id
            return KopoKopoProvider(
                credentials=secrets,
                environment=resolved.environment,
                config={
                    "shortcode": config.shortcode,
                    "callback_url": self.settings.KOPOKOPO_CALLBACK_URL or config.callback_url,
                },
                **options,
            )
        if provider_type in (ProviderType.PAYBILL, ProviderType.TILL_DIRECT):
            return DarajaProvider(
                credentials=secrets,
                environment=resolved.environment,
                config={
                    "shortcode": config.shortcode,
                    "callback_url": config.callback_url or self.settings.MPESA_CALLBACK_URL,
                    "buy_goods": provider_type is ProviderType.TILL_DIRECT,
                },
                **options,
            )
        raise GatewayError(f"Unsupported provider type {provider_type}")  # pragma: no cover

    def resolved_for_config(self, config: MerchantPaymentConfig | None) -> ResolvedConfig:
        if config is None:
            return ResolvedConfig(
                config=None,
                provider_type=ProviderType.PAYBILL,
                environment=Environment.normalize(self.settings.MPESA_PLATFORM_ENVIRONMENT),
            )
        return ResolvedConfig(
            config=config,
            provider_type=ProviderType(config.provider_type),
            environment=Environment.normalize(config.environment),
        )

    # === Invocation ===

    async def refresh_session(self, provider: BaseMpesaProvider) -> None:
        """Make sure the provider holds a token outside the refresh margin.

        Raises:
            AuthError: The provider refused to issue a token.
        """
        await provider.ensure_token()

    async def invoke(
        self,
        request: GatewayRequest,
        resolved: ResolvedConfig,
        provider: BaseMpesaProvider | None = None,
    ) -> GatewayResponse:
        """Submit an STK push, or report the effective target on dry run.

        Provider failures are folded into an unsuccessful response; they are
        logged here with full detail and never raised past this boundary.
        """
        try:
            provider = provider or self.build_provider(resolved)
        except EncryptionError as e:
            logger.error("Cannot decrypt credentials for config %s: %s", resolved.config and resolved.config.id, e.detail)
            return GatewayResponse(
                success=False,
                error=e.public_message,
                error_id="MPESA_DECRYPTION_FAILED",
                kind=GatewayErrorKind.AUTH_FAILURE,
            )
        except GatewayError as e:
            logger.error("Gateway configuration error: %s", e.detail)
            return GatewayResponse(
                success=False,
                error=e.public_message,
                error_id="MPESA_CONFIG_MISSING",
                kind=e.kind,
            )

        base_data = {
            "BusinessShortCode": provider.business_shortcode,
            "TransactionType": provider.transaction_type,
            "Environment": provider.environment.value,
            "UsingAccountConfig": not resolved.is_platform_default,
        }
        if request.dry_run:
            logger.info(
                "Dry run: shortcode=%s type=%s account_config=%s",
                provider.business_shortcode,
                provider.transaction_type,
                not resolved.is_platform_default,
            )
            return GatewayResponse(success=True, data={**base_data, "DryRun": True})

        try:
            result = await provider.initiate_stk_push(
                phone=request.phone,
                amount=request.amount,
                account_reference=request.account_reference,
                description=request.transaction_desc,
                metadata={
                    "invoice_id": str(request.invoice_id) if request.invoice_id else None,
                    "payment_type": request.payment_type.value,
                },
            )
        except AuthError as e:
            logger.warning("STK push auth failure for %s: %s", mask_phone(request.phone), e.detail)
            return GatewayResponse(
                success=False,
                error=e.public_message,
                error_id="MPESA_TOKEN_FAILED",
                kind=GatewayErrorKind.AUTH_FAILURE,
            )
        except GatewayError as e:
            logger.warning("STK push failed for %s: %s", mask_phone(request.phone), e.detail)
            return GatewayResponse(
                success=False,
                error=e.public_message,
                error_id="MPESA_STK_FAILED",
                kind=e.kind,
            )

        return GatewayResponse(
            success=True,
            data={
                **base_data,
                "CheckoutRequestID": result.checkout_request_id,
                "MerchantRequestID": result.merchant_request_id,
                "BusinessShortCode": result.business_shortcode or provider.business_shortcode,
                "TransactionType": result.transaction_type or provider.transaction_type,
                "CustomerMessage": result.customer_message,
            },
        )

    # === Status ===

    def get_transaction(self, checkout_request_id: str, account_id: UUID | None = None) -> MpesaTransaction:
        stmt = select(MpesaTransaction).where(MpesaTransaction.checkout_request_id == checkout_request_id)
        if account_id is not None:
            stmt = stmt.where(MpesaTransaction.account_id == account_id)
        txn = self.db.execute(stmt).scalar_one_or_none()
        if txn is None:
            raise NotFoundError(f"Transaction {checkout_request_id} not found")
        return txn

    async def read_status(
        self,
        checkout_request_id: str,
        account_id: UUID | None = None,
        query_gateway: bool = False,
    ) -> TransactionStatusView:
        """Read a transaction's status by correlation id.

        With ``query_gateway`` a still-pending row is refreshed from the
        provider's status query; terminal rows are never queried again.
        """
        txn = self.get_transaction(checkout_request_id, account_id)

        if query_gateway and txn.status == TransactionStatus.PENDING.value:
            config = self.db.get(MerchantPaymentConfig, txn.config_id) if txn.config_id else None
            provider = self.build_provider(self.resolved_for_config(config))
            outcome = await provider.query_status(checkout_request_id)
            if outcome.status is not None and apply_outcome(
                self.db,
                txn,
                outcome.status,
                result_code=outcome.result_code,
                result_desc=outcome.result_desc,
                receipt_number=outcome.mpesa_receipt_number,
            ):
                self.db.commit()
                if outcome.status is TransactionStatus.COMPLETED:
                    try:
                        settle_transaction(self.db, checkout_request_id)
                    except (ConflictError, NotFoundError) as e:
                        logger.warning(
                            "Transaction %s completed but invoice not settled: %s",
                            checkout_request_id,
                            e.detail,
                        )
                self.db.refresh(txn)

        return TransactionStatusView(
            status=TransactionStatus(txn.status),
            result_code=txn.result_code,
            result_desc=txn.result_desc,
            mpesa_receipt_number=txn.mpesa_receipt_number,
        )

    # === Connectivity test ===

    async def test_oauth(
        self,
        config: MerchantPaymentConfig,
        client_secret: str | None = None,
    ) -> VerificationResult:
        """Request a fresh token with the stored (or rotated) credentials."""
        overrides = {"client_secret": client_secret} if client_secret else None
        try:
            provider = self.build_provider(self.resolved_for_config(config), secret_overrides=overrides)
            await provider.test_connection()
        except AuthError as e:
            logger.warning("OAuth test failed for config %s: %s", config.id, e.detail)
            return VerificationResult(success=False, error=e.public_message)
        except GatewayError as e:
            logger.warning("OAuth test could not complete for config %s: %s", config.id, e.detail)
            return VerificationResult(success=False, error=e.public_message)
        except EncryptionError as e:
            logger.error("OAuth test could not decrypt config %s: %s", config.id, e.detail)
            return VerificationResult(success=False, error=user_message_for(GatewayErrorKind.AUTH_FAILURE))

        logger.info("OAuth test succeeded for config %s", config.id)
        return VerificationResult(success=True)
