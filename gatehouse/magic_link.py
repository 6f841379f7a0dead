"""Passwordless authentication with single-use emailed tokens."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from urllib.parse import quote

from .audit import AuditEventType, AuditTrail
from .config import MagicLinkConfig
from .exceptions import TokenAlreadyUsedError, TokenExpiredError, TokenNotFoundError
from .notifier import MagicLinkMessage, Notifier
from .principals import PrincipalDirectory, normalize_email
from .store.base import CredentialStore
from .tokens import JwtTokenService
from .types import AuthResult, MagicLinkToken, OAuthLink, ValidationError, utcnow
from .utils import generate_token

logger = logging.getLogger(__name__)

EMAIL_PROVIDER = "email"


class MagicLinkAuthenticator:
    """Issues and single-use-validates magic-link tokens."""

    def __init__(
        self,
        config: MagicLinkConfig,
        store: CredentialStore,
        tokens: JwtTokenService,
        notifier: Notifier,
        principals: PrincipalDirectory | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self.audit = audit or AuditTrail()
        self.principals = principals or PrincipalDirectory(store, self.audit, clock)
        self.clock = clock

    def verification_url(self, token: str) -> str:
        base = self.config.frontend_url.rstrip("/")
        return f"{base}{self.config.verify_path}?token={quote(token, safe='')}"

    async def request_link(self, email: str, redirect_uri: str | None = None) -> MagicLinkToken:
        """
        Create a magic link for ``email`` and hand it to the notifier.

        The principal is created on first request. Delivery failures are
        logged and do not undo the stored token; requesting again is safe.
        """
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required")
        email = normalize_email(email)

        principal, created = await self.principals.resolve(
            email, source="magic_link", email_verified=False
        )
        if created:
            await self.store.upsert_oauth_link(
                OAuthLink(
                    id=str(uuid.uuid4()),
                    principal_id=principal.id,
                    provider=EMAIL_PROVIDER,
                    email=email,
                    provider_user_id=email,
                    created_at=self.clock(),
                )
            )

        now = self.clock()
        link = await self.store.create_magic_link(
            MagicLinkToken(
                id=str(uuid.uuid4()),
                email=email,
                token=generate_token(self.config.token_bytes),
                expires_at=now + timedelta(minutes=self.config.ttl_minutes),
                metadata={"redirect_uri": redirect_uri} if redirect_uri else {},
                created_at=now,
            )
        )
        self.audit.record(
            AuditEventType.CREDENTIAL_CREATE, principal_id=principal.id, method="magic_link"
        )

        message = MagicLinkMessage(
            email=email,
            verification_url=self.verification_url(link.token),
            name=principal.first_name or principal.display_name or "User",
            organization_id=principal.organization_id,
            expires_in_minutes=self.config.ttl_minutes,
        )
        try:
            await self.notifier.send_magic_link(message)
        except Exception as e:
            logger.error(f"Failed to deliver magic link to {email}: {e}")

        return link

    async def verify(self, token: str) -> AuthResult:
        """
        Consume a magic-link token and issue credentials.

        Raises:
            TokenNotFoundError: Unknown token
            TokenAlreadyUsedError: Token was consumed before, including by a
                concurrent verification that won the race
            TokenExpiredError: Token is past its expiry
        """
        if not token:
            self._failed("missing_token")
            raise TokenNotFoundError("Magic link token is required")

        link = await self.store.get_magic_link(token)
        if link is None:
            self._failed("not_found")
            raise TokenNotFoundError("Magic link token not found")
        if link.used:
            self._failed("already_used", link.email)
            raise TokenAlreadyUsedError("Magic link token already used")

        now = self.clock()
        if link.is_expired(now):
            self._failed("expired", link.email)
            raise TokenExpiredError("Magic link token has expired")

        if not await self.store.mark_magic_link_used(link.id, now):
            self._failed("already_used", link.email)
            raise TokenAlreadyUsedError("Magic link token already used")

        principal, _ = await self.principals.resolve(link.email, source="magic_link")
        principal = await self.principals.record_login(principal, email_verified=True)
        self.audit.record(
            AuditEventType.CREDENTIAL_VERIFY, principal_id=principal.id, method="magic_link"
        )

        credentials = await self.tokens.issue_credentials(principal, source="magic_link")
        return AuthResult(principal=principal, credentials=credentials)

    def _failed(self, reason: str, email: str | None = None) -> None:
        self.audit.record(
            AuditEventType.AUTH_FAILURE, method="magic_link", reason=reason, email=email
        )

    async def sweep(self) -> int:
        """Remove expired and used links."""
        removed = await self.store.delete_stale_magic_links(self.clock())
        if removed:
            logger.info(f"Swept {removed} stale magic links")
        return removed
