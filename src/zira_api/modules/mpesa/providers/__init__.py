"""M-Pesa provider implementations."""

from .base import (
    AccessToken,
    BaseMpesaProvider,
    StkPushResult,
    StkQueryResult,
    TokenCache,
    token_cache,
)
from .daraja import DarajaProvider
from .kopokopo import KopoKopoProvider

__all__ = [
    "AccessToken",
    "BaseMpesaProvider",
    "StkPushResult",
    "StkQueryResult",
    "TokenCache",
    "token_cache",
    "DarajaProvider",
    "KopoKopoProvider",
]
