"""M-Pesa service layer used by the HTTP router."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from .allocation import PaymentAllocationMatcher
from .callbacks import CallbackResult, DarajaCallbackHandler, KopoKopoCallbackHandler
from .credentials import CredentialStore
from .drafts import DraftManager
from .gateway import MpesaGateway
from .initiator import StkPushInitiator
from .schemas import (
    AllocateRequest,
    AllocationCandidates,
    AllocationResponse,
    ConfigSummary,
    InitiationResponse,
    PaymentInitiationRequest,
    ProviderType,
    SaveConfigRequest,
    SaveConfigResponse,
    TransactionStatusView,
    UnallocatedPayment,
    VerificationResult,
)
from .state import ConfigStateMachine

logger = logging.getLogger(__name__)


class MpesaService:
    """Facade over the payment core for one request."""

    def __init__(self, db: Session, settings: Settings | None = None):
        """Initialize the service.

        Args:
            db: Database session
            settings: Application settings, defaults to the process settings
        """
        self.db = db
        self.settings = settings or get_settings()
        self.store = CredentialStore(db)
        self.state = ConfigStateMachine(db, self.settings)
        self.gateway = MpesaGateway(db, self.settings, store=self.store)
        self.initiator = StkPushInitiator(db, self.settings, gateway=self.gateway, state=self.state)
        self.allocation = PaymentAllocationMatcher(db)

    # === Configurations ===

    async def list_configs(self, account_id: UUID) -> list[ConfigSummary]:
        return self.store.load_config_summaries(account_id)

    async def save_config(
        self,
        account_id: UUID,
        request: SaveConfigRequest,
        drafts: DraftManager | None = None,
    ) -> SaveConfigResponse:
        """Save credentials and, when requested, verify them right away.

        A failed verification still keeps the saved configuration; it stays
        unverified until ``verify_config`` succeeds.
        """
        config = self.store.save_config(account_id, request)

        verification_error = None
        if request.verify:
            result = await self._verify(config)
            verification_error = result.error

        if drafts is not None:
            await drafts.clear_draft()

        return SaveConfigResponse(
            config_id=config.id,
            provider_type=ProviderType(config.provider_type),
            shortcode=config.shortcode,
            environment=config.environment,
            is_verified=config.is_verified,
            verification_error=verification_error,
        )

    async def delete_config(self, account_id: UUID, config_id: UUID) -> None:
        self.store.delete_config(account_id, config_id)

    async def verify_config(
        self,
        account_id: UUID,
        config_id: UUID,
        client_secret: str | None = None,
    ) -> VerificationResult:
        config = self.store.get_config(account_id, config_id)
        return await self._verify(config, client_secret)

    async def _verify(self, config, client_secret: str | None = None) -> VerificationResult:
        result = await self.gateway.test_oauth(config, client_secret=client_secret)
        if result.success:
            if client_secret:
                self.store.rotate_secrets(config, {"client_secret": client_secret.strip()})
            self.state.mark_verified(config)
        else:
            self.state.mark_unverified(config)
        return result

    async def activate_config(self, account_id: UUID, config_id: UUID) -> ConfigSummary:
        config = self.state.activate(account_id, config_id)
        return self.store.summarize(config)

    async def switch_to_platform_default(self, account_id: UUID) -> list[ConfigSummary]:
        self.state.switch_to_platform_default(account_id)
        return self.store.load_config_summaries(account_id)

    # === Payments ===

    async def initiate_payment(
        self,
        account_id: UUID,
        request: PaymentInitiationRequest,
    ) -> InitiationResponse:
        return await self.initiator.initiate(account_id, request)

    async def get_transaction_status(
        self,
        account_id: UUID,
        checkout_request_id: str,
        query_gateway: bool = False,
    ) -> TransactionStatusView:
        return await self.gateway.read_status(
            checkout_request_id,
            account_id=account_id,
            query_gateway=query_gateway,
        )

    # === Allocation ===

    async def list_unallocated_payments(self, account_id: UUID) -> list[UnallocatedPayment]:
        return self.allocation.list_unallocated_payments(account_id)

    async def allocation_candidates(self, account_id: UUID, payment_id: UUID) -> AllocationCandidates:
        return self.allocation.candidates_for(account_id, payment_id)

    async def allocate(self, account_id: UUID, request: AllocateRequest) -> AllocationResponse:
        return self.allocation.allocate(account_id, request.payment_id, request.invoice_id)

    # === Callbacks ===

    async def handle_daraja_callback(self, payload: dict[str, Any]) -> CallbackResult:
        return DarajaCallbackHandler(self.db).handle(payload)

    async def handle_kopokopo_callback(self, payload: dict[str, Any]) -> CallbackResult:
        return KopoKopoCallbackHandler(self.db).handle(payload)
