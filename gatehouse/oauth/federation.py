"""
OAuth federation: authorization-code exchange against an identity provider.

Flow per provider:
AuthorizationRequested -> CodeReceived -> TokenExchanged -> ProfileFetched
-> LocalIdentityResolved -> CredentialsIssued

Nothing is persisted until the profile has been fetched and normalized;
resolving the principal and upserting the link are the final steps.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import httpx

from ..audit import AuditEventType, AuditTrail
from ..config import OAuthConfig
from ..exceptions import (
    MissingEmailError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderResponseError,
)
from ..principals import PrincipalDirectory
from ..store.base import CredentialStore
from ..tokens import JwtTokenService
from ..types import AuthResult, NormalizedProfile, OAuthLink, ValidationError, utcnow
from ..utils import decode_state
from .providers import ProviderRegistry, ProviderSpec, default_registry
from .transport import RetryPolicy, send_with_retry

logger = logging.getLogger(__name__)


class OAuthFederation:
    """Drives the authorization-code flow and links the local identity."""

    def __init__(
        self,
        config: OAuthConfig,
        store: CredentialStore,
        tokens: JwtTokenService,
        http_client: httpx.AsyncClient,
        principals: PrincipalDirectory | None = None,
        registry: ProviderRegistry = default_registry,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.tokens = tokens
        self.http = http_client
        self.audit = audit or AuditTrail()
        self.principals = principals or PrincipalDirectory(store, self.audit, clock)
        self.registry = registry
        self.clock = clock
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.backoff_base,
            timeout=config.timeout_seconds,
        )

    def _configured(self, provider: str) -> tuple[ProviderSpec, Any]:
        spec = self.registry.get(provider)
        client = self.config.client(provider)
        if not client.is_configured:
            raise ProviderNotConfiguredError(provider, "Client id or secret is not configured")
        return spec, client

    def build_authorization_url(
        self, provider: str, redirect_uri: str, state: str | None = None
    ) -> str:
        """
        Build the URL that starts the consent flow at the provider.

        Raises:
            UnknownProviderError: If the provider is not registered
            ProviderNotConfiguredError: If its client credentials are absent
        """
        spec, client = self._configured(provider)
        params = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": spec.scope,
            **spec.authorize_params,
        }
        if state:
            params["state"] = state
        return str(httpx.URL(spec.authorize_url, params=params))

    async def complete_federation(
        self, provider: str, code: str, redirect_uri: str, state: str | None = None
    ) -> AuthResult:
        """
        Exchange an authorization code and issue local credentials.

        Raises:
            ProviderError: Any transport, response or profile failure
            AccountDisabledError: If the linked principal is not active
        """
        if not code:
            raise ValidationError("Authorization code is required")

        spec, client = self._configured(provider)
        try:
            token_payload = await self._exchange_code(spec, client, code, redirect_uri)
            access_token = token_payload.get("access_token")
            if not access_token:
                raise ProviderResponseError(provider, "Token response carried no access token")
            expires_in = self._expires_in(provider, token_payload)

            raw_profile = await self._fetch_profile(spec, access_token)
            profile = spec.normalize(raw_profile)
            if not profile.email:
                raise MissingEmailError(provider, "Profile carried no email address")
        except ProviderError as e:
            self.audit.record(
                AuditEventType.AUTH_FAILURE,
                method=f"oauth:{provider}",
                reason=type(e).__name__,
                detail=e.message,
            )
            raise

        # Caller-supplied state never becomes top-level claims
        state_claims = decode_state(state)
        principal = await self._link_identity(spec.name, profile, token_payload, expires_in)
        credentials = await self.tokens.issue_credentials(
            principal,
            source=f"oauth:{provider}",
            extra_claims={"additionalData": state_claims} if state_claims else None,
        )
        return AuthResult(principal=principal, credentials=credentials)

    async def _exchange_code(
        self, spec: ProviderSpec, client, code: str, redirect_uri: str
    ) -> dict[str, Any]:
        body = {
            "code": code,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if spec.token_request_format == "json":
            request_kwargs = {"json": body}
        else:
            request_kwargs = {"data": body}

        response = await send_with_retry(
            self.http,
            spec.name,
            "POST",
            spec.token_url,
            self.retry_policy,
            sleep=self.sleep,
            headers={"Accept": "application/json"},
            **request_kwargs,
        )
        return self._json(spec.name, response)

    async def _fetch_profile(self, spec: ProviderSpec, access_token: str) -> dict[str, Any]:
        response = await send_with_retry(
            self.http,
            spec.name,
            "GET",
            spec.profile_url,
            self.retry_policy,
            sleep=self.sleep,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        return self._json(spec.name, response)

    def _expires_in(self, provider: str, token_payload: dict[str, Any]) -> int | None:
        expires_in = token_payload.get("expires_in")
        if expires_in in (None, ""):
            return None
        try:
            return int(expires_in)
        except (TypeError, ValueError) as e:
            raise ProviderResponseError(
                provider, f"Token response carried an invalid expires_in: {expires_in!r}"
            ) from e

    def _json(self, provider: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderResponseError(
                provider, "Response body is not JSON", status=response.status_code
            ) from e
        if not isinstance(payload, dict):
            raise ProviderResponseError(
                provider, "Response body is not a JSON object", status=response.status_code
            )
        return payload

    async def _link_identity(
        self,
        provider: str,
        profile: NormalizedProfile,
        token_payload: dict[str, Any],
        expires_in: int | None,
    ):
        principal, created = await self.principals.resolve(
            profile.email,
            source=f"oauth:{provider}",
            first_name=profile.first_name,
            last_name=profile.last_name,
            display_name=profile.display_name,
            avatar_url=profile.picture_url,
            email_verified=profile.email_verified,
        )

        changes: dict[str, Any] = {}
        if not created:
            if profile.email_verified and not principal.email_verified:
                changes["email_verified"] = True
            for field_name, value in (
                ("first_name", profile.first_name),
                ("last_name", profile.last_name),
                ("display_name", profile.display_name),
                ("avatar_url", profile.picture_url),
            ):
                if value and not getattr(principal, field_name):
                    changes[field_name] = value
        principal = await self.principals.record_login(principal, **changes)

        now = self.clock()
        await self.store.upsert_oauth_link(
            OAuthLink(
                id=str(uuid.uuid4()),
                principal_id=principal.id,
                provider=provider,
                email=principal.email,
                provider_user_id=profile.provider_user_id,
                access_token=token_payload.get("access_token"),
                refresh_token=token_payload.get("refresh_token"),
                token_expires_at=(
                    now + timedelta(seconds=expires_in) if expires_in else None
                ),
                profile={
                    "first_name": profile.first_name,
                    "last_name": profile.last_name,
                    "display_name": profile.display_name,
                    "picture_url": profile.picture_url,
                    **{k: v for k, v in profile.metadata.items() if v is not None},
                },
                created_at=now,
            )
        )
        return principal
