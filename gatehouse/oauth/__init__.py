"""OAuth federation with external identity providers."""

from .federation import OAuthFederation
from .providers import (
    GOOGLE,
    LINKEDIN,
    MICROSOFT,
    ProviderRegistry,
    ProviderSpec,
    default_registry,
    register_provider,
)
from .transport import RetryPolicy, send_with_retry

__all__ = [
    "OAuthFederation",
    "ProviderRegistry",
    "ProviderSpec",
    "GOOGLE",
    "MICROSOFT",
    "LINKEDIN",
    "default_registry",
    "register_provider",
    "RetryPolicy",
    "send_with_retry",
]
