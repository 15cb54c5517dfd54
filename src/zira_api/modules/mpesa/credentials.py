"""Credential Store Adapter.

Persists merchant configuration metadata and write-only encrypted secrets.
Summaries returned to clients are built from metadata columns only; the
``secrets`` column is read exclusively by :meth:`CredentialStore.read_secrets`,
which is used by the gateway when it has to call the payment network.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import MerchantPaymentConfig
from .schemas import (
    ConfigState,
    ConfigSummary,
    PaybillCredentials,
    ProviderType,
    SaveConfigRequest,
    TillDirectCredentials,
    TillGatewayCredentials,
)
from .utils.encryption import CredentialsEncryption, get_encryption_handler

logger = logging.getLogger(__name__)

DARAJA_SECRET_FIELDS = ("consumer_key", "consumer_secret", "passkey")
GATEWAY_SECRET_FIELDS = ("client_secret",)

# Minimum lengths enforced whenever a secret is supplied
SECRET_MIN_LENGTHS = {
    "consumer_key": 10,
    "consumer_secret": 10,
    "passkey": 20,
    "client_secret": 10,
}


def secret_fields_for(provider_type: ProviderType | str) -> tuple[str, ...]:
    if ProviderType(provider_type) is ProviderType.TILL_GATEWAY:
        return GATEWAY_SECRET_FIELDS
    return DARAJA_SECRET_FIELDS


def derive_state(config: MerchantPaymentConfig) -> ConfigState:
    if not config.is_verified:
        return ConfigState.UNVERIFIED
    if config.is_active:
        return ConfigState.ACTIVE
    return ConfigState.VERIFIED_INACTIVE


class CredentialStore:
    """Saves, lists and deletes merchant payment configurations."""

    def __init__(self, db: Session, encryption: CredentialsEncryption | None = None):
        self.db = db
        self._encryption = encryption

    @property
    def encryption(self) -> CredentialsEncryption:
        # Created lazily so listing works without an encryption key
        if self._encryption is None:
            self._encryption = get_encryption_handler()
        return self._encryption

    # === Save ===

    def save_config(self, account_id: UUID, request: SaveConfigRequest) -> MerchantPaymentConfig:
        """Create or re-save the configuration for one provider variant.

        Blank secret fields on an existing configuration keep the stored
        secret. Every save leaves the configuration unverified.

        Raises:
            ValidationError: If a required field is missing or too short.
            EncryptionError: If secrets cannot be encrypted.
        """
        credentials = request.credentials
        provider_type = ProviderType(credentials.kind)

        existing = self._find(account_id, provider_type)
        supplied = self._supplied_secrets(credentials)
        self._validate_secrets(provider_type, supplied, existing)

        if isinstance(credentials, (PaybillCredentials, TillDirectCredentials)):
            shortcode = credentials.shortcode.strip()
            client_id = None
        elif isinstance(credentials, TillGatewayCredentials):
            shortcode = credentials.till_number.strip()
            client_id = credentials.client_id.strip()
        else:  # pragma: no cover - guarded by the discriminated union
            raise ValidationError(f"Unsupported provider type: {credentials.kind}")

        encrypted = {name: self.encryption.encrypt({name: value}) for name, value in supplied.items()}

        if existing is None:
            config = MerchantPaymentConfig(
                account_id=account_id,
                provider_type=provider_type.value,
                secrets=encrypted,
            )
            self.db.add(config)
        else:
            config = existing
            # Reassign so the JSON column is flagged as modified
            config.secrets = {**(existing.secrets or {}), **encrypted}

        config.shortcode = shortcode
        config.client_id = client_id
        config.environment = request.environment.value
        config.display_name = request.display_name
        config.callback_url = request.callback_url
        config.is_verified = False

        self.db.commit()
        self.db.refresh(config)

        logger.info(
            "Saved %s config %s (new=%s, secrets_replaced=%s)",
            provider_type.value,
            config.id,
            existing is None,
            sorted(supplied),
        )
        return config

    # === Read ===

    def load_config_summaries(self, account_id: UUID) -> list[ConfigSummary]:
        stmt = (
            select(MerchantPaymentConfig)
            .where(MerchantPaymentConfig.account_id == account_id)
            .order_by(MerchantPaymentConfig.created_at)
        )
        configs = self.db.execute(stmt).scalars().all()
        return [self.summarize(c) for c in configs]

    def get_config(self, account_id: UUID, config_id: UUID) -> MerchantPaymentConfig:
        stmt = select(MerchantPaymentConfig).where(
            and_(
                MerchantPaymentConfig.id == config_id,
                MerchantPaymentConfig.account_id == account_id,
            )
        )
        config = self.db.execute(stmt).scalar_one_or_none()
        if config is None:
            raise NotFoundError(f"M-Pesa configuration {config_id} not found")
        return config

    @staticmethod
    def summarize(config: MerchantPaymentConfig) -> ConfigSummary:
        stored = config.secrets or {}
        return ConfigSummary(
            id=config.id,
            provider_type=ProviderType(config.provider_type),
            shortcode=config.shortcode,
            client_id=config.client_id,
            environment=config.environment,
            display_name=config.display_name,
            callback_url=config.callback_url,
            is_active=config.is_active,
            is_verified=config.is_verified,
            state=derive_state(config),
            has_credentials=all(name in stored for name in secret_fields_for(config.provider_type)),
            last_verified_at=config.last_verified_at,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )

    def read_secrets(self, config: MerchantPaymentConfig) -> dict[str, Any]:
        """Decrypt the stored secrets of ``config``. Gateway use only."""
        secrets: dict[str, Any] = {}
        for handle in (config.secrets or {}).values():
            secrets.update(self.encryption.decrypt(handle))
        return secrets

    def rotate_secrets(self, config: MerchantPaymentConfig, secrets: dict[str, str]) -> None:
        """Store freshly verified secrets without touching the verified flag."""
        for name, value in secrets.items():
            minimum = SECRET_MIN_LENGTHS.get(name, 1)
            if len(value) < minimum:
                raise ValidationError(f"{name} shorter than {minimum} characters")
        encrypted = {name: self.encryption.encrypt({name: value}) for name, value in secrets.items()}
        config.secrets = {**(config.secrets or {}), **encrypted}
        self.db.commit()
        logger.info("Rotated %s for config %s", sorted(secrets), config.id)

    # === Delete ===

    def delete_config(self, account_id: UUID, config_id: UUID) -> None:
        """Delete a configuration.

        Removing the active configuration leaves the account on the platform
        default; no sibling is activated in its place.
        """
        config = self.get_config(account_id, config_id)
        was_active = config.is_active
        self.db.delete(config)
        self.db.commit()
        logger.info("Deleted M-Pesa config %s (was_active=%s)", config_id, was_active)

    # === Helpers ===

    def _find(self, account_id: UUID, provider_type: ProviderType) -> MerchantPaymentConfig | None:
        stmt = select(MerchantPaymentConfig).where(
            and_(
                MerchantPaymentConfig.account_id == account_id,
                MerchantPaymentConfig.provider_type == provider_type.value,
            )
        )
        return self.db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _supplied_secrets(credentials: Any) -> dict[str, str]:
        supplied = {}
        for name in secret_fields_for(credentials.kind):
            value = getattr(credentials, name, None)
            if value is not None and value.strip():
                supplied[name] = value.strip()
        return supplied

    @staticmethod
    def _validate_secrets(
        provider_type: ProviderType,
        supplied: dict[str, str],
        existing: MerchantPaymentConfig | None,
    ) -> None:
        stored = set((existing.secrets or {}).keys()) if existing is not None else set()
        for name in secret_fields_for(provider_type):
            if name not in supplied:
                if name not in stored:
                    raise ValidationError(
                        f"{name} is required for {provider_type.value}",
                        user_message=f"Please enter the {name.replace('_', ' ')}.",
                    )
                continue
            minimum = SECRET_MIN_LENGTHS[name]
            if len(supplied[name]) < minimum:
                raise ValidationError(
                    f"{name} shorter than {minimum} characters",
                    user_message=(
                        f"The {name.replace('_', ' ')} looks too short "
                        f"(at least {minimum} characters expected)."
                    ),
                )
