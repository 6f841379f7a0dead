"""Core data types for the identity and access engine."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .exceptions import AuthError


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Interpret naive timestamps as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ValidationError(AuthError):
    """Raised when a data type is constructed with invalid values."""

    code = "validation_error"
    status_code = 400
    public_message = "Invalid request"


class PrincipalStatus(Enum):
    """Lifecycle status of a principal."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TokenType(Enum):
    """Discriminator embedded in every signed token."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class Principal:
    """An identity record (user)."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    organization_id: str | None = None
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    email_verified: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    def __post_init__(self):
        """Validate principal after creation."""
        if not self.id or not self.id.strip():
            raise ValidationError("Principal ID cannot be empty")
        if not self.email or "@" not in self.email:
            raise ValidationError("Principal email must be a valid address")

    @property
    def is_active(self) -> bool:
        return self.status is PrincipalStatus.ACTIVE


@dataclass
class OAuthLink:
    """Association between a principal and a federated identity."""

    id: str
    principal_id: str
    provider: str
    email: str
    provider_user_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    profile: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None


@dataclass
class MagicLinkToken:
    """A single-use passwordless login token."""

    id: str
    email: str
    token: str
    expires_at: datetime
    used: bool = False
    used_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token row; only the digest of the token is kept."""

    id: str
    principal_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    device_info: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class ApiKeySpec:
    """Owner-supplied attributes for a new API key."""

    name: str
    description: str | None = None
    expires_at: datetime | None = None
    rate_limit_per_minute: int | None = None
    allowed_ips: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("API key name cannot be empty")
        if self.rate_limit_per_minute is not None and self.rate_limit_per_minute < 1:
            raise ValidationError("Rate limit must be at least 1 request per minute")
        if self.expires_at is not None:
            if not isinstance(self.expires_at, datetime):
                raise ValidationError("API key expiry must be a datetime")
            self.expires_at = as_utc(self.expires_at)


@dataclass
class ApiKey:
    """Durable API key record. The raw key is never stored."""

    id: str
    owner_id: str
    name: str
    key_hash: str
    key_prefix: str
    description: str | None = None
    is_active: bool = True
    expires_at: datetime | None = None
    rate_limit_per_minute: int | None = None
    allowed_ips: list[str] = field(default_factory=list)
    usage_count: int = 0
    last_used_at: datetime | None = None
    last_used_ip: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def allows_ip(self, client_ip: str | None) -> bool:
        """No allow-list means unrestricted; otherwise an exact match is required."""
        if not self.allowed_ips:
            return True
        return client_ip is not None and client_ip in self.allowed_ips


@dataclass
class Role:
    """A named, tenant-agnostic role definition."""

    name: str
    description: str | None = None
    permissions: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Role name cannot be empty")


@dataclass
class Permission:
    """A named capability."""

    name: str
    description: str | None = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Permission name cannot be empty")


@dataclass(frozen=True)
class RoleAssignment:
    """A role held by a principal, globally or within one tenant."""

    principal_id: str
    role_name: str
    organization_id: str | None = None

    @property
    def is_global(self) -> bool:
        return self.organization_id is None


@dataclass(frozen=True)
class TokenClaims:
    """Decoded and verified claims of an access or refresh token."""

    sub: str
    type: TokenType
    jti: str
    iat: int
    exp: int
    email: str | None = None
    role: str | None = None
    roles: tuple[str, ...] = ()
    organization_id: str | None = None
    status: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IssuedCredentials:
    """The access/refresh pair handed back to an authenticated caller."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful authentication of any kind."""

    principal: Principal
    credentials: IssuedCredentials


@dataclass(frozen=True)
class ApiKeyInfo:
    id: str
    name: str
    last_used_at: datetime


@dataclass(frozen=True)
class ApiKeyAuthResult:
    principal: Principal
    credentials: IssuedCredentials
    api_key_info: ApiKeyInfo


@dataclass(frozen=True)
class CreatedApiKey:
    """Returned once from key creation; ``key`` is the raw material."""

    id: str
    name: str
    key: str
    description: str | None
    expires_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ApiKeyStats:
    total: int
    active: int
    expired: int
    total_usage: int


@dataclass(frozen=True)
class NormalizedProfile:
    """Provider profile mapped onto a common shape."""

    email: str | None
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    picture_url: str | None = None
    provider_user_id: str | None = None
    email_verified: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
