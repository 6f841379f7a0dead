"""Assembles the service graph once at process start."""

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import httpx
from bevy import Container, get_registry

from .api_keys import ApiKeyAuthenticator
from .audit import AuditTrail
from .config import GatehouseSettings, LoggingConfig, require_signing_keys
from .magic_link import MagicLinkAuthenticator
from .notifier import HttpNotifier, LoggingNotifier, Notifier
from .oauth import OAuthFederation
from .principals import PrincipalDirectory
from .rate_limiter import SlidingWindowRateLimiter
from .rbac import RbacResolver
from .roles import DEFAULT_ROLE_TABLES, RoleTables
from .store.base import CredentialStore
from .store.memory import MemoryCredentialStore
from .tokens import JwtTokenService
from .types import utcnow

logger = logging.getLogger("gatehouse")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Install a single stream handler on the ``gatehouse`` logger."""
    if not logger.hasHandlers():
        handler = logging.StreamHandler(sys.stdout)
        logger.addHandler(handler)
    formatter = logging.Formatter(DEBUG_LOG_FORMAT if config.debug else LOG_FORMAT)
    for handler in logger.handlers:
        handler.setFormatter(formatter)
    logger.setLevel(logging.DEBUG if config.debug else config.level)
    return logger


@dataclass
class Services:
    """Every service of the engine, constructed with explicit dependencies."""

    settings: GatehouseSettings
    store: CredentialStore
    audit: AuditTrail
    principals: PrincipalDirectory
    rbac: RbacResolver
    tokens: JwtTokenService
    oauth: OAuthFederation
    magic_links: MagicLinkAuthenticator
    api_keys: ApiKeyAuthenticator
    rate_limiter: SlidingWindowRateLimiter
    notifier: Notifier
    http_client: httpx.AsyncClient
    container: Container
    _owns_http_client: bool = field(default=False, repr=False)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.store.close()


async def create_store(settings: GatehouseSettings) -> CredentialStore:
    if settings.store.backend == "ommi":
        from .store.ommi_store import OmmiCredentialStore, connect_ommi

        db = await connect_ommi(settings.store.connection_string)
        return OmmiCredentialStore(db)
    return MemoryCredentialStore()


async def build_services(
    settings: GatehouseSettings,
    store: CredentialStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    notifier: Notifier | None = None,
    role_tables: RoleTables = DEFAULT_ROLE_TABLES,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """
    Validate configuration and wire the engine.

    Raises:
        ConfigurationError: If the configuration cannot serve traffic
    """
    require_signing_keys(settings)

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.oauth.timeout_seconds)
    if store is None:
        store = await create_store(settings)
    if notifier is None:
        if settings.notifications.service_url:
            notifier = HttpNotifier(settings.notifications, http_client)
        else:
            notifier = LoggingNotifier()

    audit = AuditTrail()
    principals = PrincipalDirectory(store, audit, clock)
    rbac = RbacResolver(store, role_tables, audit)
    tokens = JwtTokenService(settings.tokens, store, rbac, audit, clock)
    rate_limiter = SlidingWindowRateLimiter()
    oauth = OAuthFederation(
        settings.oauth, store, tokens, http_client, principals=principals, audit=audit, clock=clock
    )
    magic_links = MagicLinkAuthenticator(
        settings.magic_link, store, tokens, notifier, principals=principals, audit=audit, clock=clock
    )
    api_keys = ApiKeyAuthenticator(
        settings.api_keys,
        store,
        tokens,
        principals=principals,
        audit=audit,
        clock=clock,
        admission=rate_limiter,
    )

    container = get_registry().create_container()
    container.add(GatehouseSettings, settings)
    container.add(CredentialStore, store)
    container.add(AuditTrail, audit)
    container.add(PrincipalDirectory, principals)
    container.add(RbacResolver, rbac)
    container.add(JwtTokenService, tokens)
    container.add(OAuthFederation, oauth)
    container.add(MagicLinkAuthenticator, magic_links)
    container.add(ApiKeyAuthenticator, api_keys)
    container.add(SlidingWindowRateLimiter, rate_limiter)
    container.add(Notifier, notifier)

    logger.info(
        f"Gatehouse services ready (environment={settings.environment}, "
        f"store={settings.store.backend}, providers={settings.oauth.configured_providers()})"
    )
    return Services(
        settings=settings,
        store=store,
        audit=audit,
        principals=principals,
        rbac=rbac,
        tokens=tokens,
        oauth=oauth,
        magic_links=magic_links,
        api_keys=api_keys,
        rate_limiter=rate_limiter,
        notifier=notifier,
        http_client=http_client,
        container=container,
        _owns_http_client=owns_http_client,
    )
