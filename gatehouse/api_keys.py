"""
API key authentication.

Keys are ``xapi-`` followed by 32 lowercase hex characters. The store holds
only the SHA-256 digest and a short display prefix; the raw key is returned
once, from ``create_key``.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime
from typing import Any

from .audit import AuditEventType, AuditTrail
from .config import ApiKeyConfig
from .exceptions import (
    AccountDisabledError,
    ApiKeyExpiredError,
    ApiKeyNotFoundError,
    DuplicateNameError,
    InvalidApiKeyError,
    IpNotAllowedError,
    RateLimitedError,
    ResourceLimitError,
)
from .principals import PrincipalDirectory
from .rate_limiter import SlidingWindowRateLimiter
from .store.base import CredentialStore
from .tokens import JwtTokenService
from .types import (
    ApiKey,
    ApiKeyAuthResult,
    ApiKeyInfo,
    ApiKeySpec,
    ApiKeyStats,
    CreatedApiKey,
    Principal,
    ValidationError,
    utcnow,
)
from .utils import generate_api_key, hash_token, is_valid_api_key_format, mask_key

logger = logging.getLogger(__name__)

KEY_PREFIX_LENGTH = 10

UPDATABLE_FIELDS = frozenset(
    {"name", "description", "is_active", "expires_at", "rate_limit_per_minute", "allowed_ips", "metadata"}
)


class ApiKeyAuthenticator:
    """Creates, manages and authenticates API keys."""

    def __init__(
        self,
        config: ApiKeyConfig,
        store: CredentialStore,
        tokens: JwtTokenService,
        principals: PrincipalDirectory | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
        admission: SlidingWindowRateLimiter | None = None,
    ):
        self.config = config
        self.store = store
        self.tokens = tokens
        self.admission = admission
        self.audit = audit or AuditTrail()
        self.principals = principals or PrincipalDirectory(store, self.audit, clock)
        self.clock = clock

    @staticmethod
    def is_valid_format(candidate: Any) -> bool:
        return is_valid_api_key_format(candidate)

    async def create_key(self, owner_id: str, spec: ApiKeySpec) -> CreatedApiKey:
        """
        Create a key for ``owner_id``.

        Raises:
            PrincipalNotFoundError: Unknown owner
            ResourceLimitError: Owner already holds the maximum active keys
            DuplicateNameError: Owner already has a key with this name
        """
        await self.principals.get(owner_id)

        existing = await self.store.list_api_keys(owner_id)
        active = [key for key in existing if key.is_active]
        if len(active) >= self.config.max_keys_per_owner:
            raise ResourceLimitError(
                f"Maximum number of API keys reached ({self.config.max_keys_per_owner} per owner)"
            )
        if any(key.name == spec.name for key in existing):
            raise DuplicateNameError(f"API key name already exists for this owner: {spec.name}")

        raw_key = generate_api_key()
        now = self.clock()
        key = await self.store.create_api_key(
            ApiKey(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                name=spec.name,
                key_hash=hash_token(raw_key),
                key_prefix=mask_key(raw_key, KEY_PREFIX_LENGTH),
                description=spec.description,
                expires_at=spec.expires_at,
                rate_limit_per_minute=spec.rate_limit_per_minute,
                allowed_ips=list(spec.allowed_ips),
                metadata=dict(spec.metadata),
                created_at=now,
            )
        )

        self.audit.record(
            AuditEventType.CREDENTIAL_CREATE,
            principal_id=owner_id,
            method="api_key",
            resource_id=key.id,
            prefix=key.key_prefix,
        )
        return CreatedApiKey(
            id=key.id,
            name=key.name,
            key=raw_key,
            description=key.description,
            expires_at=key.expires_at,
            created_at=key.created_at,
        )

    async def lookup(self, raw_key: str) -> ApiKey:
        """
        Resolve a presented key to its active, unexpired record.

        Raises:
            InvalidApiKeyError: Malformed, unknown or inactive key
            ApiKeyExpiredError: Key is past its expiry
        """
        if not self.is_valid_format(raw_key):
            self._failed("malformed_key")
            raise InvalidApiKeyError("Invalid API key format")

        key = await self.store.get_api_key_by_hash(hash_token(raw_key))
        if key is None or not key.is_active:
            self._failed("unknown_or_inactive", key.owner_id if key else None)
            raise InvalidApiKeyError("Invalid or inactive API key")
        if key.is_expired(self.clock()):
            self._failed("expired", key.owner_id, resource_id=key.id)
            raise ApiKeyExpiredError("API key has expired")
        return key

    async def resolve(
        self, raw_key: str, client_ip: str | None = None
    ) -> tuple[ApiKey, Principal, datetime]:
        """
        Validate a presented key and record its use, without minting tokens.

        Returns:
            The key record, its owner and the usage timestamp

        Raises:
            InvalidApiKeyError: Malformed, unknown or inactive key
            ApiKeyExpiredError: Key is past its expiry
            RateLimitedError: Key is over its ``rate_limit_per_minute``
            IpNotAllowedError: Key has an allow-list that excludes ``client_ip``
            AccountDisabledError: Owner is not active
        """
        key = await self.lookup(raw_key)

        if self.admission is not None:
            try:
                await self.admission.enforce(key.id, key.rate_limit_per_minute)
            except RateLimitedError:
                self.audit.record(
                    AuditEventType.RATE_LIMIT_EXCEEDED,
                    principal_id=key.owner_id,
                    method="api_key",
                    resource_id=key.id,
                    limit=key.rate_limit_per_minute,
                )
                raise

        if not key.allows_ip(client_ip):
            self._failed("ip_not_allowed", key.owner_id, resource_id=key.id, client_ip=client_ip)
            raise IpNotAllowedError(client_ip)

        principal = await self.store.get_principal(key.owner_id)
        if principal is None:
            self._failed("owner_missing", key.owner_id, resource_id=key.id)
            raise InvalidApiKeyError("API key owner no longer exists")
        if not principal.is_active:
            self._failed(f"account_{principal.status.value}", principal.id, resource_id=key.id)
            raise AccountDisabledError(f"Principal {principal.id} is {principal.status.value}")

        used_at = self.clock()
        try:
            await self.store.record_api_key_usage(key.id, used_at, client_ip)
        except Exception as e:
            logger.warning(f"Failed to record usage for API key {key.id}: {e}")
        return key, principal, used_at

    async def authenticate(self, raw_key: str, client_ip: str | None = None) -> ApiKeyAuthResult:
        """
        Authenticate with an API key and issue the standard credential pair.

        The tokens are indistinguishable from those of any other login method.
        Raises whatever ``resolve`` raises.
        """
        key, principal, used_at = await self.resolve(raw_key, client_ip)

        credentials = await self.tokens.issue_credentials(principal, source="api_key")
        logger.info(f"API key authentication successful for {principal.id} ({key.key_prefix})")
        return ApiKeyAuthResult(
            principal=principal,
            credentials=credentials,
            api_key_info=ApiKeyInfo(id=key.id, name=key.name, last_used_at=used_at),
        )

    def _failed(self, reason: str, principal_id: str | None = None, **metadata: Any) -> None:
        self.audit.record(
            AuditEventType.AUTH_FAILURE,
            principal_id=principal_id,
            method="api_key",
            reason=reason,
            **metadata,
        )

    async def _owned(self, owner_id: str, key_id: str) -> ApiKey:
        key = await self.store.get_api_key(key_id)
        if key is None or key.owner_id != owner_id:
            raise ApiKeyNotFoundError(f"API key not found: {key_id}")
        return key

    async def list_keys(self, owner_id: str) -> list[ApiKey]:
        return await self.store.list_api_keys(owner_id)

    async def get_key(self, owner_id: str, key_id: str) -> ApiKey:
        return await self._owned(owner_id, key_id)

    async def update_key(self, owner_id: str, key_id: str, changes: dict[str, Any]) -> ApiKey:
        """
        Update mutable fields of an owned key.

        Raises:
            ApiKeyNotFoundError: Key absent or owned by someone else
            DuplicateNameError: Rename collides with another key of the owner
            ValidationError: Unknown field or invalid value
        """
        key = await self._owned(owner_id, key_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        # Reuse ApiKeySpec validation on the merged values
        merged = {
            field_name: changes.get(field_name, value)
            for field_name, value in asdict(
                ApiKeySpec(
                    name=key.name,
                    description=key.description,
                    expires_at=key.expires_at,
                    rate_limit_per_minute=key.rate_limit_per_minute,
                    allowed_ips=key.allowed_ips,
                    metadata=key.metadata,
                )
            ).items()
        }
        validated = ApiKeySpec(**merged)
        if changes.get("expires_at") is not None:
            changes = {**changes, "expires_at": validated.expires_at}

        updated = await self.store.update_api_key(key.id, **changes)
        if updated is None:
            raise ApiKeyNotFoundError(f"API key not found: {key_id}")
        self.audit.record(
            AuditEventType.CREDENTIAL_UPDATE,
            principal_id=owner_id,
            method="api_key",
            resource_id=key.id,
            fields=sorted(changes),
        )
        return updated

    async def deactivate_key(self, owner_id: str, key_id: str) -> bool:
        key = await self._owned(owner_id, key_id)
        await self.store.update_api_key(key.id, is_active=False)
        self.audit.record(
            AuditEventType.CREDENTIAL_REVOKE, principal_id=owner_id, method="api_key", resource_id=key.id
        )
        return True

    async def delete_key(self, owner_id: str, key_id: str) -> bool:
        key = await self._owned(owner_id, key_id)
        deleted = await self.store.delete_api_key(key.id)
        if deleted:
            self.audit.record(
                AuditEventType.CREDENTIAL_DELETE,
                principal_id=owner_id,
                method="api_key",
                resource_id=key.id,
            )
        return deleted

    async def stats(self, owner_id: str) -> ApiKeyStats:
        keys = await self.store.list_api_keys(owner_id)
        now = self.clock()
        return ApiKeyStats(
            total=len(keys),
            active=sum(1 for k in keys if k.is_active and not k.is_expired(now)),
            expired=sum(1 for k in keys if k.is_expired(now)),
            total_usage=sum(k.usage_count for k in keys),
        )

    async def sweep_expired(self) -> int:
        """Deactivate keys past their expiry."""
        count = await self.store.deactivate_expired_api_keys(self.clock())
        if count:
            logger.info(f"Deactivated {count} expired API keys")
        return count
