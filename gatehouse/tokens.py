"""
JWT-based token service.

Access and refresh tokens are HMAC-signed JWTs carrying a ``type``
discriminator. Refresh tokens are additionally persisted, as a SHA-256
digest, so they can be revoked; the ``jti`` of a refresh token is the id of
its row.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import jwt

from .audit import AuditEventType, AuditTrail
from .config import TokenConfig
from .exceptions import (
    AccountDisabledError,
    ConfigurationError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    TokenSignatureExpiredError,
    WrongTokenTypeError,
)
from .rbac import RbacResolver
from .store.base import CredentialStore
from .types import (
    IssuedCredentials,
    Principal,
    RefreshTokenRecord,
    TokenClaims,
    TokenType,
    utcnow,
)
from .utils import hash_token

logger = logging.getLogger(__name__)

RESERVED_CLAIMS = frozenset(
    {
        "sub",
        "type",
        "jti",
        "iat",
        "exp",
        "nbf",
        "iss",
        "aud",
        "email",
        "role",
        "roles",
        "organizationId",
        "status",
    }
)

REQUIRED_CLAIMS = ["sub", "type", "jti", "iat", "exp"]


class JwtTokenService:
    """Issues, verifies, refreshes and revokes access/refresh tokens.

    ``clock`` is the authority for issuance and expiry checks; tests inject
    a frozen clock to produce expired tokens deterministically.
    """

    def __init__(
        self,
        config: TokenConfig,
        store: CredentialStore,
        rbac: RbacResolver,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.rbac = rbac
        self.audit = audit or AuditTrail()
        self.clock = clock

    @property
    def access_token_ttl(self) -> int:
        return self.config.access_token_ttl

    def _signing_key(self, token_type: TokenType) -> str:
        if token_type is TokenType.REFRESH:
            secret = self.config.effective_refresh_secret
        else:
            secret = self.config.access_secret
        if not secret:
            raise ConfigurationError(f"No signing key configured for {token_type.value} tokens")
        return secret

    def _encode(
        self,
        token_type: TokenType,
        subject: str,
        ttl: int,
        claims: dict[str, Any] | None = None,
        token_id: str | None = None,
    ) -> tuple[str, str, datetime]:
        secret = self._signing_key(token_type)
        issued_at = self.clock()
        expires_at = issued_at + timedelta(seconds=ttl)
        token_id = token_id or str(uuid.uuid4())

        payload = {
            **(claims or {}),
            "sub": subject,
            "type": token_type.value,
            "jti": token_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if self.config.issuer:
            payload["iss"] = self.config.issuer
        if self.config.audience:
            payload["aud"] = self.config.audience

        return jwt.encode(payload, secret, algorithm=self.config.algorithm), token_id, expires_at

    def _decode(self, token: str, expected: TokenType) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Token is empty")

        try:
            payload = jwt.decode(
                token,
                self._signing_key(expected),
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                audience=self.config.audience,
                options={
                    "require": REQUIRED_CLAIMS,
                    # Expiry is checked against the service clock below
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        if int(payload["exp"]) <= int(self.clock().timestamp()):
            raise TokenSignatureExpiredError("Token has expired", {"jti": payload.get("jti")})

        actual = payload.get("type")
        if actual != expected.value:
            raise WrongTokenTypeError(expected.value, actual)

        roles = payload.get("roles") or ()
        return TokenClaims(
            sub=str(payload["sub"]),
            type=expected,
            jti=str(payload["jti"]),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            email=payload.get("email"),
            role=payload.get("role"),
            roles=tuple(roles),
            organization_id=payload.get("organizationId"),
            status=payload.get("status"),
            extra={k: v for k, v in payload.items() if k not in RESERVED_CLAIMS},
        )

    async def issue_access_token(
        self,
        principal: Principal,
        role: str | None = None,
        roles: list[str] | None = None,
        extra_claims: dict[str, Any] | None = None,
    ) -> str:
        """
        Mint a signed access token for a principal.

        Role claims are resolved through the RBAC resolver unless supplied.
        Extra claims are merged underneath the reserved claims and can never
        override them.

        Raises:
            ConfigurationError: If no signing key is configured
        """
        if role is None or roles is None:
            role, roles = await self.rbac.role_claims(principal.id)

        claims = {k: v for k, v in (extra_claims or {}).items() if k not in RESERVED_CLAIMS}
        claims.update(
            {
                "email": principal.email,
                "role": role,
                "roles": list(roles),
                "organizationId": principal.organization_id,
                "status": principal.status.value,
            }
        )
        token, _, _ = self._encode(
            TokenType.ACCESS, principal.id, self.config.access_token_ttl, claims
        )
        return token

    async def issue_refresh_token(
        self, principal: Principal, device_info: dict[str, Any] | None = None
    ) -> str:
        """Mint a refresh token and persist its digest."""
        token, token_id, expires_at = self._encode(
            TokenType.REFRESH, principal.id, self.config.refresh_token_ttl
        )
        await self.store.create_refresh_token(
            RefreshTokenRecord(
                id=token_id,
                principal_id=principal.id,
                token_hash=hash_token(token),
                expires_at=expires_at,
                device_info=device_info or {},
                created_at=self.clock(),
            )
        )
        return token

    async def issue_credentials(
        self,
        principal: Principal,
        source: str,
        extra_claims: dict[str, Any] | None = None,
    ) -> IssuedCredentials:
        """
        Mint the access/refresh pair for an authenticated principal.

        Every authentication method ends here, so the resulting tokens do not
        reveal how the principal authenticated.

        Raises:
            AccountDisabledError: If the principal is not active
        """
        if not principal.is_active:
            self.audit.record(
                AuditEventType.AUTH_FAILURE,
                principal_id=principal.id,
                method=source,
                reason=f"account_{principal.status.value}",
            )
            raise AccountDisabledError(f"Principal {principal.id} is {principal.status.value}")

        role, roles = await self.rbac.role_claims(principal.id)
        access_token = await self.issue_access_token(principal, role, roles, extra_claims)
        refresh_token = await self.issue_refresh_token(
            principal, {"source": source, "claims": dict(extra_claims or {})}
        )

        self.audit.record(
            AuditEventType.AUTH_SUCCESS, principal_id=principal.id, method=source, role=role
        )
        return IssuedCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.config.access_token_ttl,
        )

    async def verify_access_token(self, token: str) -> TokenClaims:
        """
        Verify signature, expiry and the ``access`` discriminator.

        Raises:
            InvalidTokenError: Bad signature, malformed, or expired
            WrongTokenTypeError: A valid token of another type
        """
        try:
            return self._decode(token, TokenType.ACCESS)
        except InvalidTokenError as e:
            self.audit.record(
                AuditEventType.AUTH_FAILURE, method="access_token", reason=type(e).__name__
            )
            raise

    async def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._decode(token, TokenType.REFRESH)

    async def refresh(self, refresh_token: str) -> str:
        """
        Exchange a refresh token for a new access token.

        The refresh token must verify cryptographically and its stored row
        must exist, be unrevoked and unexpired. The refresh token itself is
        not rotated. Role claims are recomputed from current assignments.

        Raises:
            InvalidRefreshTokenError: Any verification failure; the
                ``RefreshTokenExpiredError`` and ``RefreshTokenRevokedError``
                subclasses identify those cases
            AccountDisabledError: If the principal is no longer active
        """
        try:
            claims = self._decode(refresh_token, TokenType.REFRESH)
        except TokenSignatureExpiredError as e:
            self._refresh_failed("token_expired")
            raise RefreshTokenExpiredError("Refresh token has expired") from e
        except InvalidTokenError as e:
            self._refresh_failed(type(e).__name__)
            raise InvalidRefreshTokenError("Invalid refresh token") from e

        record = await self.store.get_refresh_token(hash_token(refresh_token))
        if record is None or record.principal_id != claims.sub:
            self._refresh_failed("not_found", claims.sub)
            raise InvalidRefreshTokenError("Refresh token not recognised")
        if record.revoked:
            self._refresh_failed("revoked", claims.sub)
            raise RefreshTokenRevokedError("Refresh token has been revoked")
        if record.is_expired(self.clock()):
            self._refresh_failed("row_expired", claims.sub)
            raise RefreshTokenExpiredError("Refresh token has expired")

        principal = await self.store.get_principal(claims.sub)
        if principal is None:
            self._refresh_failed("principal_missing", claims.sub)
            raise InvalidRefreshTokenError("Refresh token subject no longer exists")
        if not principal.is_active:
            self._refresh_failed(f"account_{principal.status.value}", claims.sub)
            raise AccountDisabledError(f"Principal {principal.id} is {principal.status.value}")

        access_token = await self.issue_access_token(
            principal, extra_claims=record.device_info.get("claims")
        )
        self.audit.record(AuditEventType.AUTH_SUCCESS, principal_id=principal.id, method="refresh")
        return access_token

    def _refresh_failed(self, reason: str, principal_id: str | None = None) -> None:
        self.audit.record(
            AuditEventType.AUTH_FAILURE, principal_id=principal_id, method="refresh", reason=reason
        )

    async def revoke(self, refresh_token: str) -> bool:
        """Revoke one refresh token. Unknown or already-revoked tokens are not an error."""
        revoked = await self.store.revoke_refresh_token(hash_token(refresh_token or ""))
        if revoked:
            self.audit.record(AuditEventType.CREDENTIAL_REVOKE, method="refresh_token")
        return revoked

    async def revoke_all(self, principal_id: str) -> int:
        count = await self.store.revoke_all_refresh_tokens(principal_id)
        self.audit.record(
            AuditEventType.AUTH_LOGOUT, principal_id=principal_id, method="logout_all", revoked=count
        )
        return count

    async def sweep(self) -> int:
        """Delete expired and revoked refresh rows."""
        removed = await self.store.delete_stale_refresh_tokens(self.clock())
        if removed:
            logger.info(f"Swept {removed} stale refresh tokens")
        return removed
