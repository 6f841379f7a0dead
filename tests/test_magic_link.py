"""
Tests for passwordless magic-link authentication.
"""

import asyncio
import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from gatehouse.audit import AuditEventType
from gatehouse.config import NotificationConfig
from gatehouse.exceptions import (
    AlreadyUsedCredentialError,
    ExpiredCredentialError,
    ProviderResponseError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from gatehouse.magic_link import EMAIL_PROVIDER, MagicLinkAuthenticator
from gatehouse.notifier import HttpNotifier, MagicLinkMessage, Notifier
from gatehouse.types import ValidationError


class FailingNotifier(Notifier):
    def __init__(self):
        self.attempts = 0

    async def send_magic_link(self, message: MagicLinkMessage) -> None:
        self.attempts += 1
        raise ConnectionError("notification service unreachable")


class TestRequestLink:
    """Issuing magic links."""

    @pytest.mark.asyncio
    async def test_creates_principal_and_link(self, magic_links, store, notifier, clock):
        link = await magic_links.request_link("New.User@Example.com", "https://app/after")

        principal = await store.find_principal_by_email("new.user@example.com")
        assert principal is not None
        assert principal.email_verified is False
        assert link.email == "new.user@example.com"
        assert link.used is False
        assert link.expires_at == clock() + timedelta(minutes=30)
        assert link.metadata == {"redirect_uri": "https://app/after"}
        assert len(link.token) >= 48

    @pytest.mark.asyncio
    async def test_new_principal_gets_email_link(self, magic_links, store):
        await magic_links.request_link("fresh@example.com")

        principal = await store.find_principal_by_email("fresh@example.com")
        link = await store.get_oauth_link(EMAIL_PROVIDER, "fresh@example.com")
        assert link is not None
        assert link.principal_id == principal.id

    @pytest.mark.asyncio
    async def test_existing_principal_is_reused(self, magic_links, store, make_principal):
        principal = await make_principal("known@example.com")

        await magic_links.request_link("known@example.com")

        assert (await store.find_principal_by_email("known@example.com")).id == principal.id
        assert await store.get_oauth_link(EMAIL_PROVIDER, "known@example.com") is None

    @pytest.mark.asyncio
    async def test_notifier_receives_verification_url(self, magic_links, notifier):
        link = await magic_links.request_link("ada@example.com")

        message = notifier.sent[-1]
        parsed = urlparse(message.verification_url)
        assert message.email == "ada@example.com"
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://app.example.com/verify-email"
        )
        assert parse_qs(parsed.query)["token"] == [link.token]
        assert message.expires_in_minutes == 30

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_token(self, settings, store, tokens, principals, clock):
        """Test a notifier failure is logged and the link stays usable."""
        failing = FailingNotifier()
        authenticator = MagicLinkAuthenticator(
            settings.magic_link, store, tokens, failing, principals=principals, clock=clock
        )

        link = await authenticator.request_link("ada@example.com")

        assert failing.attempts == 1
        assert await store.get_magic_link(link.token) is not None
        result = await authenticator.verify(link.token)
        assert result.principal.email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_invalid_email(self, magic_links):
        for email in ("", "not-an-email"):
            with pytest.raises(ValidationError):
                await magic_links.request_link(email)

    @pytest.mark.asyncio
    async def test_each_request_makes_a_new_token(self, magic_links):
        first = await magic_links.request_link("ada@example.com")
        second = await magic_links.request_link("ada@example.com")

        assert first.token != second.token


class TestVerify:
    """Consuming magic links."""

    @pytest.mark.asyncio
    async def test_verify_issues_credentials(self, magic_links, tokens, clock):
        link = await magic_links.request_link("ada@example.com")

        result = await magic_links.verify(link.token)

        assert result.principal.email_verified is True
        assert result.principal.last_login_at == clock()
        claims = await tokens.verify_access_token(result.credentials.access_token)
        assert claims.sub == result.principal.id

    @pytest.mark.asyncio
    async def test_new_principal_gets_default_role(self, magic_links, tokens):
        """Test a brand new email ends up with the employee role claim."""
        link = await magic_links.request_link("brand.new@example.com")

        result = await magic_links.verify(link.token)

        claims = await tokens.verify_access_token(result.credentials.access_token)
        assert claims.role == "employee"

    @pytest.mark.asyncio
    async def test_second_verification_fails(self, magic_links):
        link = await magic_links.request_link("ada@example.com")
        await magic_links.verify(link.token)

        with pytest.raises(TokenAlreadyUsedError) as exc_info:
            await magic_links.verify(link.token)

        assert isinstance(exc_info.value, AlreadyUsedCredentialError)

    @pytest.mark.asyncio
    async def test_concurrent_verification_single_winner(self, magic_links):
        """Test at most one of several simultaneous verifications succeeds."""
        link = await magic_links.request_link("ada@example.com")

        results = await asyncio.gather(
            *(magic_links.verify(link.token) for _ in range(5)), return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert all(isinstance(f, TokenAlreadyUsedError) for f in failures)

    @pytest.mark.asyncio
    async def test_expired_link(self, magic_links, clock):
        link = await magic_links.request_link("ada@example.com")
        clock.advance(minutes=31)

        with pytest.raises(TokenExpiredError) as exc_info:
            await magic_links.verify(link.token)

        assert isinstance(exc_info.value, ExpiredCredentialError)

    @pytest.mark.asyncio
    async def test_expired_link_is_not_consumed(self, magic_links, store, clock):
        link = await magic_links.request_link("ada@example.com")
        clock.advance(minutes=30)

        with pytest.raises(TokenExpiredError):
            await magic_links.verify(link.token)

        assert (await store.get_magic_link(link.token)).used is False

    @pytest.mark.asyncio
    async def test_unknown_token(self, magic_links):
        with pytest.raises(TokenNotFoundError):
            await magic_links.verify("no-such-token")
        with pytest.raises(TokenNotFoundError):
            await magic_links.verify("")

    @pytest.mark.asyncio
    async def test_failures_are_audited(self, magic_links, audit):
        with pytest.raises(TokenNotFoundError):
            await magic_links.verify("no-such-token")

        assert audit.events(AuditEventType.AUTH_FAILURE)[-1].reason == "not_found"


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_used_and_expired(self, magic_links, store, clock):
        used = await magic_links.request_link("used@example.com")
        await magic_links.verify(used.token)
        expired = await magic_links.request_link("expired@example.com")
        clock.advance(minutes=20)
        live = await magic_links.request_link("live@example.com")
        clock.advance(minutes=15)

        assert await magic_links.sweep() == 2
        assert await store.get_magic_link(used.token) is None
        assert await store.get_magic_link(expired.token) is None
        assert await store.get_magic_link(live.token) is not None


class TestHttpNotifier:
    """Delivery through the notification service."""

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202, json={"queued": True})

        config = NotificationConfig(service_url="https://notify.example.com/", organization_name="Acme")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = HttpNotifier(config, client)
            await notifier.send_magic_link(
                MagicLinkMessage(email="ada@example.com", verification_url="https://app/verify?token=t")
            )

        assert str(requests[0].url) == "https://notify.example.com/api/notifications"
        payload = json.loads(requests[0].content)
        assert payload["recipientDetails"] == {"email": "ada@example.com"}
        assert payload["payload"]["LOGIN_LINK"] == "https://app/verify?token=t"
        assert payload["organizationName"] == "Acme"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        statuses = [503, 200]
        sleeps = []

        async def record_sleep(delay):
            sleeps.append(delay)

        def handler(request):
            return httpx.Response(statuses.pop(0))

        config = NotificationConfig(service_url="https://notify.example.com")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = HttpNotifier(config, client, sleep=record_sleep)
            await notifier.send_magic_link(
                MagicLinkMessage(email="ada@example.com", verification_url="https://app/v")
            )

        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_client_errors_raise(self):
        config = NotificationConfig(service_url="https://notify.example.com")
        transport = httpx.MockTransport(lambda request: httpx.Response(422))
        async with httpx.AsyncClient(transport=transport) as client:
            notifier = HttpNotifier(config, client)
            with pytest.raises(ProviderResponseError) as exc_info:
                await notifier.send_magic_link(
                    MagicLinkMessage(email="ada@example.com", verification_url="https://app/v")
                )

        assert exc_info.value.status == 422

    def test_requires_service_url(self):
        with pytest.raises(ValueError):
            HttpNotifier(NotificationConfig(), http_client=None)
