"""
Pytest configuration and shared fixtures for gatehouse tests.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from gatehouse.api_keys import ApiKeyAuthenticator
from gatehouse.audit import AuditTrail
from gatehouse.bootstrap import build_services
from gatehouse.config import (
    GatehouseSettings,
    MagicLinkConfig,
    OAuthClientConfig,
    OAuthConfig,
    TokenConfig,
)
from gatehouse.magic_link import MagicLinkAuthenticator
from gatehouse.notifier import LoggingNotifier
from gatehouse.oauth import OAuthFederation
from gatehouse.principals import PrincipalDirectory
from gatehouse.rate_limiter import SlidingWindowRateLimiter
from gatehouse.rbac import RbacResolver
from gatehouse.store import MemoryCredentialStore
from gatehouse.tokens import JwtTokenService

ACCESS_SECRET = "test-access-secret-must-be-long-enough-for-hs256"
REFRESH_SECRET = "test-refresh-secret-must-be-long-enough-for-hs256"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2030, 1, 15, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeMonotonic:
    """Monotonic-seconds clock for the rate limiter."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeOAuthProvider:
    """
    ``httpx.MockTransport`` handler standing in for every provider endpoint.

    Token and profile responses can be overridden per host; failures are
    scripted as a queue of status codes or exceptions consumed in order.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_response: dict[str, Any] = {
            "access_token": "provider-access-token",
            "refresh_token": "provider-refresh-token",
            "expires_in": 3600,
        }
        self.profiles: dict[str, dict[str, Any]] = {
            "www.googleapis.com": {
                "sub": "google-123",
                "email": "Ada@Example.com",
                "email_verified": True,
                "given_name": "Ada",
                "family_name": "Lovelace",
                "name": "Ada Lovelace",
                "picture": "https://example.com/ada.png",
            },
            "graph.microsoft.com": {
                "id": "ms-456",
                "mail": None,
                "userPrincipalName": "grace@example.com",
                "givenName": "Grace",
                "surname": "Hopper",
                "displayName": "Grace Hopper",
            },
            "api.linkedin.com": {
                "sub": "li-789",
                "email": "alan@example.com",
                "email_verified": True,
                "given_name": "Alan",
                "family_name": "Turing",
                "name": "Alan Turing",
            },
        }
        self.failures: list[int | Exception] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"error": "scripted"})

        if request.method == "POST":
            return httpx.Response(200, json=self.token_response)
        return httpx.Response(200, json=self.profiles.get(request.url.host, {}))

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @staticmethod
    def body(request: httpx.Request) -> dict[str, Any]:
        content = request.content.decode()
        if request.headers.get("content-type", "").startswith("application/json"):
            return json.loads(content)
        return dict(httpx.QueryParams(content))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> GatehouseSettings:
    return GatehouseSettings(
        environment="test",
        tokens=TokenConfig(access_secret=ACCESS_SECRET, refresh_secret=REFRESH_SECRET),
        oauth=OAuthConfig(
            google=OAuthClientConfig(client_id="google-client", client_secret="google-secret"),
            microsoft=OAuthClientConfig(client_id="ms-client", client_secret="ms-secret"),
            linkedin=OAuthClientConfig(client_id="li-client", client_secret="li-secret"),
            max_retries=2,
            backoff_base=0.01,
        ),
        magic_link=MagicLinkConfig(frontend_url="https://app.example.com"),
    )


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def audit() -> AuditTrail:
    return AuditTrail()


@pytest.fixture
def principals(store, audit, clock) -> PrincipalDirectory:
    return PrincipalDirectory(store, audit, clock)


@pytest.fixture
def rbac(store, audit) -> RbacResolver:
    return RbacResolver(store, audit=audit)


@pytest.fixture
def tokens(settings, store, rbac, audit, clock) -> JwtTokenService:
    return JwtTokenService(settings.tokens, store, rbac, audit, clock)


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def magic_links(settings, store, tokens, notifier, principals, audit, clock) -> MagicLinkAuthenticator:
    return MagicLinkAuthenticator(
        settings.magic_link, store, tokens, notifier, principals=principals, audit=audit, clock=clock
    )


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def rate_limiter(monotonic) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=monotonic)


@pytest.fixture
def api_keys(settings, store, tokens, principals, audit, clock, rate_limiter) -> ApiKeyAuthenticator:
    return ApiKeyAuthenticator(
        settings.api_keys,
        store,
        tokens,
        principals=principals,
        audit=audit,
        clock=clock,
        admission=rate_limiter,
    )


@pytest.fixture
def oauth_provider() -> FakeOAuthProvider:
    return FakeOAuthProvider()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest_asyncio.fixture
async def http_client(oauth_provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(oauth_provider)) as client:
        yield client


@pytest.fixture
def oauth(settings, store, tokens, http_client, principals, audit, clock, sleeps) -> OAuthFederation:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return OAuthFederation(
        settings.oauth,
        store,
        tokens,
        http_client,
        principals=principals,
        audit=audit,
        clock=clock,
        sleep=record_sleep,
    )


@pytest_asyncio.fixture
async def services(settings, store, http_client, notifier, clock):
    services = await build_services(
        settings, store=store, http_client=http_client, notifier=notifier, clock=clock
    )
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def make_principal(principals):
    async def factory(email: str = "user@example.com", **attributes):
        principal, _ = await principals.resolve(email, source="test", **attributes)
        return principal

    return factory
