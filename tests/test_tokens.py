"""
Tests for the JWT token service.

Covers issuance, verification, refresh against the store, revocation and the
indistinguishability of credential failures.
"""

import jwt
import pytest

from conftest import ACCESS_SECRET, REFRESH_SECRET
from gatehouse.audit import AuditEventType
from gatehouse.config import TokenConfig
from gatehouse.exceptions import (
    AccountDisabledError,
    ConfigurationError,
    ExpiredCredentialError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    RevokedCredentialError,
    TokenSignatureExpiredError,
    WrongTokenTypeError,
)
from gatehouse.tokens import JwtTokenService
from gatehouse.types import PrincipalStatus, RoleAssignment, TokenType
from gatehouse.utils import hash_token


class TestAccessTokens:
    """Issuing and verifying access tokens."""

    @pytest.mark.asyncio
    async def test_round_trip_claims(self, tokens, make_principal):
        """Test verify(issue(p)) yields type=access and sub=p.id."""
        principal = await make_principal("ada@example.com")

        token = await tokens.issue_access_token(principal)
        claims = await tokens.verify_access_token(token)

        assert claims.type is TokenType.ACCESS
        assert claims.sub == principal.id
        assert claims.email == "ada@example.com"
        assert claims.role == "employee"
        assert claims.roles == ()
        assert claims.status == "active"
        assert claims.exp - claims.iat == 3600

    @pytest.mark.asyncio
    async def test_claims_carry_all_roles(self, tokens, store, make_principal):
        """Test the primary role is the most senior and roles lists every one."""
        principal = await make_principal(organization_id="org-1")
        await store.add_role_assignment(RoleAssignment(principal.id, "employee", "org-1"))
        await store.add_role_assignment(RoleAssignment(principal.id, "hr_manager", "org-1"))

        claims = await tokens.verify_access_token(await tokens.issue_access_token(principal))

        assert claims.role == "hr_manager"
        assert claims.roles == ("hr_manager", "employee")
        assert claims.organization_id == "org-1"

    @pytest.mark.asyncio
    async def test_raw_payload_uses_wire_names(self, tokens, make_principal):
        """Test the signed payload carries the documented claim names."""
        principal = await make_principal(organization_id="org-9")
        token = await tokens.issue_access_token(principal)

        payload = jwt.decode(
            token, ACCESS_SECRET, algorithms=["HS256"], options={"verify_exp": False}
        )

        for claim in ("sub", "type", "jti", "iat", "exp", "email", "role", "roles", "organizationId"):
            assert claim in payload
        assert payload["type"] == "access"
        assert payload["organizationId"] == "org-9"

    @pytest.mark.asyncio
    async def test_extra_claims_cannot_override_reserved(self, tokens, make_principal):
        """Test extra claims are merged but never replace reserved ones."""
        principal = await make_principal()

        token = await tokens.issue_access_token(
            principal, extra_claims={"sub": "attacker", "role": "super_admin", "team": "blue"}
        )
        claims = await tokens.verify_access_token(token)

        assert claims.sub == principal.id
        assert claims.role == "employee"
        assert claims.extra["team"] == "blue"

    @pytest.mark.asyncio
    async def test_expired_access_token(self, tokens, clock, make_principal):
        """Test expiry is judged by the service clock."""
        principal = await make_principal()
        token = await tokens.issue_access_token(principal)

        clock.advance(seconds=3601)

        with pytest.raises(TokenSignatureExpiredError):
            await tokens.verify_access_token(token)

    @pytest.mark.asyncio
    async def test_bad_signature(self, tokens, make_principal):
        """Test a token signed with another key is rejected."""
        principal = await make_principal()
        token = await tokens.issue_access_token(principal)
        tampered = jwt.encode(
            jwt.decode(token, options={"verify_signature": False}),
            "some-other-secret-that-is-long-enough-too",
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(tampered)

    @pytest.mark.asyncio
    async def test_garbage_token(self, tokens):
        """Test malformed input is an invalid token."""
        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token("not.a.jwt")
        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token("")

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, settings, store, rbac, clock, make_principal):
        """Test the type discriminator is checked even when keys are shared."""
        service = JwtTokenService(TokenConfig(access_secret=ACCESS_SECRET), store, rbac, clock=clock)
        principal = await make_principal()
        refresh_token = await service.issue_refresh_token(principal)

        with pytest.raises(WrongTokenTypeError) as exc_info:
            await service.verify_access_token(refresh_token)

        assert exc_info.value.expected == "access"
        assert exc_info.value.actual == "refresh"

    @pytest.mark.asyncio
    async def test_failures_share_public_message(self, store, rbac, clock, make_principal):
        """Test expired, forged and wrong-type tokens look identical to callers."""
        service = JwtTokenService(TokenConfig(access_secret=ACCESS_SECRET), store, rbac, clock=clock)
        principal = await make_principal()
        expired = await service.issue_access_token(principal)
        clock.advance(hours=2)
        refresh_token = await service.issue_refresh_token(principal)

        errors = []
        for token in (expired, "forged.token.value", refresh_token):
            with pytest.raises(InvalidTokenError) as exc_info:
                await service.verify_access_token(token)
            errors.append(exc_info.value)

        assert {(e.status_code, e.public_message, e.code) for e in errors} == {
            (401, "Invalid or expired credentials", "invalid_credentials")
        }
        assert len({type(e) for e in errors}) == 3

    @pytest.mark.asyncio
    async def test_failures_are_audited_with_reason(self, tokens, audit):
        """Test the internal reason reaches the audit trail."""
        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token("forged.token.value")

        failures = audit.events(AuditEventType.AUTH_FAILURE)
        assert failures[-1].reason == "InvalidTokenError"

    @pytest.mark.asyncio
    async def test_missing_signing_key(self, store, rbac, make_principal):
        """Test issuing without a signing key is a configuration error."""
        service = JwtTokenService(TokenConfig(), store, rbac)
        principal = await make_principal()

        with pytest.raises(ConfigurationError):
            await service.issue_access_token(principal)

    @pytest.mark.asyncio
    async def test_issuer_and_audience(self, store, rbac, clock, make_principal):
        """Test configured iss/aud are embedded and enforced."""
        config = TokenConfig(access_secret=ACCESS_SECRET, issuer="gatehouse", audience="clave")
        service = JwtTokenService(config, store, rbac, clock=clock)
        other = JwtTokenService(
            TokenConfig(access_secret=ACCESS_SECRET, issuer="gatehouse", audience="elsewhere"),
            store,
            rbac,
            clock=clock,
        )
        principal = await make_principal()
        token = await service.issue_access_token(principal)

        assert (await service.verify_access_token(token)).sub == principal.id
        with pytest.raises(InvalidTokenError):
            await other.verify_access_token(token)


class TestIssueCredentials:
    """The single credential-minting path."""

    @pytest.mark.asyncio
    async def test_issues_pair_and_persists_hashed_row(self, tokens, store, make_principal):
        """Test the refresh row stores only the digest and the device info."""
        principal = await make_principal()

        credentials = await tokens.issue_credentials(principal, source="test", extra_claims={"k": 1})

        assert credentials.token_type == "Bearer"
        assert credentials.expires_in == 3600
        record = await store.get_refresh_token(hash_token(credentials.refresh_token))
        assert record is not None
        assert record.token_hash != credentials.refresh_token
        assert record.principal_id == principal.id
        assert record.device_info == {"source": "test", "claims": {"k": 1}}

    @pytest.mark.asyncio
    async def test_refresh_row_id_matches_jti(self, tokens, store, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        claims = await tokens.verify_refresh_token(credentials.refresh_token)
        record = await store.get_refresh_token(hash_token(credentials.refresh_token))

        assert record.id == claims.jti
        assert claims.type is TokenType.REFRESH

    @pytest.mark.asyncio
    async def test_refresh_tokens_use_their_own_key(self, tokens, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        payload = jwt.decode(
            credentials.refresh_token,
            REFRESH_SECRET,
            algorithms=["HS256"],
            options={"verify_exp": False},
        )
        assert payload["type"] == "refresh"

    @pytest.mark.asyncio
    async def test_disabled_principal(self, tokens, store, make_principal):
        """Test inactive principals never obtain credentials."""
        principal = await make_principal()
        suspended = await store.update_principal(principal.id, status=PrincipalStatus.SUSPENDED)

        with pytest.raises(AccountDisabledError):
            await tokens.issue_credentials(suspended, source="test")


class TestRefresh:
    """Exchanging a refresh token for a new access token."""

    @pytest.mark.asyncio
    async def test_refresh_issues_new_access_token(self, tokens, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        access_token = await tokens.refresh(credentials.refresh_token)

        claims = await tokens.verify_access_token(access_token)
        assert claims.sub == principal.id

    @pytest.mark.asyncio
    async def test_refresh_does_not_rotate(self, tokens, make_principal):
        """Test the same refresh token keeps working until it expires."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        await tokens.refresh(credentials.refresh_token)
        await tokens.refresh(credentials.refresh_token)

    @pytest.mark.asyncio
    async def test_refresh_recomputes_roles(self, tokens, store, make_principal):
        """Test role claims reflect assignments made after login."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        await store.add_role_assignment(RoleAssignment(principal.id, "organization_admin", "org-1"))

        claims = await tokens.verify_access_token(await tokens.refresh(credentials.refresh_token))

        assert claims.role == "organization_admin"

    @pytest.mark.asyncio
    async def test_refresh_keeps_extra_claims(self, tokens, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(
            principal, source="oauth:google", extra_claims={"tenant_hint": "acme"}
        )

        claims = await tokens.verify_access_token(await tokens.refresh(credentials.refresh_token))

        assert claims.extra["tenant_hint"] == "acme"

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, tokens, clock, make_principal):
        """Test an expired refresh token yields an expired-credential error."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        clock.advance(days=8)

        with pytest.raises(RefreshTokenExpiredError) as exc_info:
            await tokens.refresh(credentials.refresh_token)

        assert isinstance(exc_info.value, ExpiredCredentialError)

    @pytest.mark.asyncio
    async def test_expired_refresh_issues_no_access_token(self, tokens, audit, clock, make_principal):
        """Test no access token is minted when the refresh token has expired."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        clock.advance(days=8)
        audit.clear()

        with pytest.raises(ExpiredCredentialError):
            await tokens.refresh(credentials.refresh_token)

        assert audit.events(AuditEventType.AUTH_SUCCESS) == []

    @pytest.mark.asyncio
    async def test_expired_store_row(self, tokens, store, clock, make_principal):
        """Test the stored expiry is checked even when the JWT is still valid."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        token_hash = hash_token(credentials.refresh_token)
        record = await store.get_refresh_token(token_hash)
        record.expires_at = clock()
        await store.create_refresh_token(record)

        with pytest.raises(RefreshTokenExpiredError):
            await tokens.refresh(credentials.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, tokens, store, make_principal):
        """Test a cryptographically valid token without a store row is rejected."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        await store.revoke_refresh_token(hash_token(credentials.refresh_token))
        await store.delete_stale_refresh_tokens(tokens.clock())

        with pytest.raises(InvalidRefreshTokenError):
            await tokens.refresh(credentials.refresh_token)

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, tokens, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        with pytest.raises(InvalidRefreshTokenError):
            await tokens.refresh(credentials.access_token)

    @pytest.mark.asyncio
    async def test_refresh_for_disabled_principal(self, tokens, store, make_principal):
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")
        await store.update_principal(principal.id, status=PrincipalStatus.INACTIVE)

        with pytest.raises(AccountDisabledError):
            await tokens.refresh(credentials.refresh_token)


class TestRevocation:
    """Logout and logout-everywhere."""

    @pytest.mark.asyncio
    async def test_revoked_token_never_refreshes(self, tokens, make_principal):
        """Test revocation is permanent."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        assert await tokens.revoke(credentials.refresh_token) is True

        for _ in range(3):
            with pytest.raises(RefreshTokenRevokedError) as exc_info:
                await tokens.refresh(credentials.refresh_token)
            assert isinstance(exc_info.value, RevokedCredentialError)

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, tokens, make_principal):
        """Test revoking twice or revoking garbage is not an error."""
        principal = await make_principal()
        credentials = await tokens.issue_credentials(principal, source="test")

        assert await tokens.revoke(credentials.refresh_token) is True
        assert await tokens.revoke(credentials.refresh_token) is False
        assert await tokens.revoke("never-issued") is False
        assert await tokens.revoke("") is False

    @pytest.mark.asyncio
    async def test_revoke_all(self, tokens, make_principal):
        principal = await make_principal()
        other = await make_principal("other@example.com")
        first = await tokens.issue_credentials(principal, source="test")
        second = await tokens.issue_credentials(principal, source="test")
        untouched = await tokens.issue_credentials(other, source="test")

        assert await tokens.revoke_all(principal.id) == 2
        assert await tokens.revoke_all(principal.id) == 0

        for credentials in (first, second):
            with pytest.raises(RefreshTokenRevokedError):
                await tokens.refresh(credentials.refresh_token)
        await tokens.refresh(untouched.refresh_token)

    @pytest.mark.asyncio
    async def test_sweep_removes_revoked_and_expired(self, tokens, store, clock, make_principal):
        principal = await make_principal()
        revoked = await tokens.issue_credentials(principal, source="test")
        await tokens.revoke(revoked.refresh_token)
        clock.advance(days=3)
        live = await tokens.issue_credentials(principal, source="test")
        clock.advance(days=5)

        assert await tokens.sweep() == 1
        assert await store.get_refresh_token(hash_token(revoked.refresh_token)) is None
        assert await store.get_refresh_token(hash_token(live.refresh_token)) is not None
