"""Configuration system for the identity service."""

from .loader import (
    load_settings,
    parse_settings,
    require_signing_keys,
    resolve_config_path,
    substitute_env_vars,
)
from .schema import (
    ApiKeyConfig,
    GatehouseSettings,
    LoggingConfig,
    MagicLinkConfig,
    NotificationConfig,
    OAuthClientConfig,
    OAuthConfig,
    ServerConfig,
    StoreConfig,
    TokenConfig,
)

__all__ = [
    # Schema models
    "GatehouseSettings",
    "TokenConfig",
    "OAuthConfig",
    "OAuthClientConfig",
    "MagicLinkConfig",
    "ApiKeyConfig",
    "NotificationConfig",
    "StoreConfig",
    "LoggingConfig",
    "ServerConfig",
    # Loading functions
    "load_settings",
    "parse_settings",
    "require_signing_keys",
    "resolve_config_path",
    "substitute_env_vars",
]
