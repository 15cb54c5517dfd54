"""Configuration state machine.

Per configuration: ``unverified`` -> ``verified_inactive`` -> ``active``.
Exactly one configuration per account may be active; when none is, payments
run on the platform default credential set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from .credentials import CredentialStore, derive_state
from .errors import ConflictError
from .models import MerchantPaymentConfig
from .schemas import ConfigSelectionPolicy, ConfigState, Environment, ProviderType

logger = logging.getLogger(__name__)


@dataclass
class ResolvedConfig:
    """Credential set chosen for a payment.

    ``config`` is None when the platform default applies.
    """

    config: MerchantPaymentConfig | None
    provider_type: ProviderType
    environment: Environment

    @property
    def is_platform_default(self) -> bool:
        return self.config is None


class ConfigStateMachine:
    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.store = CredentialStore(db)

    def get_active(self, account_id: UUID) -> MerchantPaymentConfig | None:
        stmt = select(MerchantPaymentConfig).where(
            and_(
                MerchantPaymentConfig.account_id == account_id,
                MerchantPaymentConfig.is_active.is_(True),
            )
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def activate(self, account_id: UUID, config_id: UUID) -> MerchantPaymentConfig:
        """Make ``config_id`` the single active configuration of the account.

        Deactivating the siblings and activating the target happen in one
        database transaction.

        Raises:
            NotFoundError: Unknown configuration.
            ConflictError: The configuration is not ``verified_inactive``.
        """
        config = self.store.get_config(account_id, config_id)
        state = derive_state(config)
        if state is not ConfigState.VERIFIED_INACTIVE:
            raise ConflictError(
                f"Cannot activate config {config_id} in state {state.value}",
                user_message=(
                    "Only verified configurations can be activated. "
                    "Please test the connection first."
                    if state is ConfigState.UNVERIFIED
                    else "This configuration is already active."
                ),
            )

        try:
            self.db.execute(
                update(MerchantPaymentConfig)
                .where(MerchantPaymentConfig.account_id == account_id)
                .values(is_active=False)
                .execution_options(synchronize_session="fetch")
            )
            config.is_active = True
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(config)
        logger.info("Activated %s config %s", config.provider_type, config.id)
        return config

    def switch_to_platform_default(self, account_id: UUID) -> int:
        """Deactivate every configuration of the account, keeping them stored.

        Returns:
            Number of configurations that were active.
        """
        result = self.db.execute(
            update(MerchantPaymentConfig)
            .where(
                and_(
                    MerchantPaymentConfig.account_id == account_id,
                    MerchantPaymentConfig.is_active.is_(True),
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        logger.info("Account %s switched to platform default", account_id)
        return result.rowcount or 0

    def mark_verified(self, config: MerchantPaymentConfig, verified_at: datetime | None = None) -> None:
        """Record a successful connectivity test. Active status is kept."""
        config.is_verified = True
        config.last_verified_at = verified_at or datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(config)

    def mark_unverified(self, config: MerchantPaymentConfig) -> None:
        config.is_verified = False
        self.db.commit()
        self.db.refresh(config)

    def resolve_for_payment(
        self,
        account_id: UUID | None,
        policy: ConfigSelectionPolicy | None = None,
    ) -> ResolvedConfig:
        """Pick the credential set a tenant-facing payment must use.

        Raises:
            ConflictError: The account's resolved configuration is not both
                active and verified.
        """
        platform = ResolvedConfig(
            config=None,
            provider_type=ProviderType.PAYBILL,
            environment=Environment.normalize(self.settings.MPESA_PLATFORM_ENVIRONMENT),
        )
        if policy is ConfigSelectionPolicy.PLATFORM_DEFAULT or account_id is None:
            return platform

        active = self.get_active(account_id)
        if active is None:
            if policy is ConfigSelectionPolicy.CUSTOM:
                raise ConflictError(
                    f"Account {account_id} has no active M-Pesa configuration",
                    user_message="No active M-Pesa configuration. Please activate one first.",
                )
            return platform

        if not active.is_verified:
            raise ConflictError(
                f"Active config {active.id} is not verified",
                user_message=(
                    "M-Pesa payments are unavailable until the merchant's "
                    "configuration has been verified."
                ),
            )

        return ResolvedConfig(
            config=active,
            provider_type=ProviderType(active.provider_type),
            environment=Environment.normalize(active.environment),
        )
