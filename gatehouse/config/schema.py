"""Configuration schema models using Pydantic."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")


class TokenConfig(BaseModel):
    """Signing and lifetime settings for access/refresh tokens."""

    access_secret: Optional[str] = Field(None, description="Access token signing secret")
    refresh_secret: Optional[str] = Field(
        None, description="Refresh token signing secret (defaults to access secret)"
    )
    algorithm: str = Field("HS256", description="JWT signing algorithm")
    access_token_ttl: int = Field(3600, description="Access token lifetime in seconds")
    refresh_token_ttl: int = Field(
        7 * 24 * 3600, description="Refresh token lifetime in seconds"
    )
    issuer: Optional[str] = None
    audience: Optional[str] = None

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v):
        if v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm: {v}")
        return v

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def validate_ttl(cls, v):
        if v <= 0:
            raise ValueError("Token lifetimes must be positive")
        return v

    @property
    def effective_refresh_secret(self) -> Optional[str]:
        return self.refresh_secret or self.access_secret


class OAuthClientConfig(BaseModel):
    """Client registration at one OAuth provider."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


BUILTIN_PROVIDERS = ("google", "microsoft", "linkedin")


class OAuthConfig(BaseModel):
    """
    Client registrations per provider plus shared transport settings.

    The built-in providers have their own keys; any other mapping under the
    ``oauth`` section (or under ``providers``) registers a client for a
    provider added with ``register_provider``.
    """

    google: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    microsoft: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    linkedin: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    providers: dict[str, OAuthClientConfig] = Field(default_factory=dict)
    timeout_seconds: float = Field(10.0, description="Per-request timeout ceiling")
    max_retries: int = Field(2, description="Retries for transient failures")
    backoff_base: float = Field(0.5, description="First retry delay in seconds")

    @model_validator(mode="before")
    @classmethod
    def collect_providers(cls, data):
        if not isinstance(data, dict):
            return data
        extra = {
            name: value
            for name, value in data.items()
            if name not in cls.model_fields and isinstance(value, dict)
        }
        if not extra:
            return data
        collected = {name: value for name, value in data.items() if name not in extra}
        collected["providers"] = {**extra, **(data.get("providers") or {})}
        return collected

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("OAuth timeout must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v):
        if not 0 <= v <= 5:
            raise ValueError("OAuth max_retries must be between 0 and 5")
        return v

    def client(self, provider: str) -> OAuthClientConfig:
        if provider in BUILTIN_PROVIDERS:
            return getattr(self, provider)
        return self.providers.get(provider) or OAuthClientConfig()

    def configured_providers(self) -> list[str]:
        names = [*BUILTIN_PROVIDERS, *(n for n in self.providers if n not in BUILTIN_PROVIDERS)]
        return [name for name in names if self.client(name).is_configured]


class MagicLinkConfig(BaseModel):
    ttl_minutes: int = Field(30, description="Magic link lifetime in minutes")
    frontend_url: str = Field("http://localhost:3000", description="Base URL of the web app")
    verify_path: str = Field("/verify-email", description="Path that consumes the token")
    token_bytes: int = Field(48, description="Entropy of generated tokens in bytes")

    @field_validator("ttl_minutes")
    @classmethod
    def validate_ttl(cls, v):
        if v < 1:
            raise ValueError("Magic link TTL must be at least one minute")
        return v

    @field_validator("token_bytes")
    @classmethod
    def validate_token_bytes(cls, v):
        if v < 16:
            raise ValueError("Magic link tokens need at least 16 bytes of entropy")
        return v


class ApiKeyConfig(BaseModel):
    max_keys_per_owner: int = Field(10, description="Active keys allowed per owner")

    @field_validator("max_keys_per_owner")
    @classmethod
    def validate_max_keys(cls, v):
        if v < 1:
            raise ValueError("max_keys_per_owner must be at least 1")
        return v


class NotificationConfig(BaseModel):
    service_url: Optional[str] = Field(
        None, description="Notification service base URL; log-only delivery when unset"
    )
    template_id: str = Field("magic-link", description="Magic link email template")
    organization_name: str = "Clave HR"
    timeout_seconds: float = 5.0
    max_retries: int = 2


class StoreConfig(BaseModel):
    backend: Literal["memory", "ommi"] = "memory"
    connection_string: str = "sqlite:///:memory:"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    debug: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5002
    api_prefix: str = "/api"


class GatehouseSettings(BaseModel):
    """Root configuration for the identity service."""

    environment: str = Field("development", description="Deployment environment name")
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    magic_link: MagicLinkConfig = Field(default_factory=MagicLinkConfig)
    api_keys: ApiKeyConfig = Field(default_factory=ApiKeyConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"
