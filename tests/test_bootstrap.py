"""
Tests for assembling the service graph and the audit trail it shares.
"""

import logging

import pytest

from gatehouse.audit import AuditEventType, AuditTrail
from gatehouse.bootstrap import build_services, configure_logging
from gatehouse.config import GatehouseSettings, LoggingConfig
from gatehouse.exceptions import ConfigurationError, TokenNotFoundError
from gatehouse.notifier import HttpNotifier, LoggingNotifier
from gatehouse.store.base import CredentialStore
from gatehouse.store.memory import MemoryCredentialStore
from gatehouse.tokens import JwtTokenService


class TestBuildServices:
    """Wiring the engine from settings."""

    @pytest.mark.asyncio
    async def test_missing_signing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            await build_services(GatehouseSettings())

    @pytest.mark.asyncio
    async def test_defaults(self, settings):
        services = await build_services(settings)
        try:
            assert isinstance(services.store, MemoryCredentialStore)
            assert isinstance(services.notifier, LoggingNotifier)
            assert services._owns_http_client is True
        finally:
            await services.aclose()

        assert services.http_client.is_closed

    @pytest.mark.asyncio
    async def test_http_notifier_when_service_url_set(self, settings, http_client):
        configured = settings.model_copy(
            update={
                "notifications": settings.notifications.model_copy(
                    update={"service_url": "https://notify.example.com"}
                )
            }
        )

        services = await build_services(configured, http_client=http_client)

        assert isinstance(services.notifier, HttpNotifier)
        await services.aclose()
        assert not http_client.is_closed

    @pytest.mark.asyncio
    async def test_container_holds_services(self, services):
        assert services.container.get(JwtTokenService) is services.tokens
        assert services.container.get(CredentialStore) is services.store
        assert services.container.get(AuditTrail) is services.audit

    @pytest.mark.asyncio
    async def test_services_share_one_audit_trail(self, services):
        with pytest.raises(TokenNotFoundError):
            await services.magic_links.verify("missing-token")

        assert services.audit.events(AuditEventType.AUTH_FAILURE)


class TestAuditTrail:
    def test_sensitive_metadata_is_masked(self):
        trail = AuditTrail()

        event = trail.record(
            AuditEventType.AUTH_FAILURE,
            principal_id="p-1",
            reason="expired",
            refresh_token="abcdefghij",
            provider="google",
        )

        assert event.metadata == {"refresh_token": "ab***ij", "provider": "google"}

    def test_buffer_is_bounded(self):
        trail = AuditTrail(max_events=3)

        for i in range(5):
            trail.record(AuditEventType.AUTH_SUCCESS, principal_id=f"p-{i}")

        assert [e.principal_id for e in trail.events()] == ["p-2", "p-3", "p-4"]

    def test_failures_log_at_warning(self, caplog):
        trail = AuditTrail()

        with caplog.at_level(logging.INFO, logger="gatehouse.audit"):
            trail.record(AuditEventType.AUTHZ_DENY, principal_id="p-1", reason="missing_permission")
            trail.record(AuditEventType.AUTHZ_GRANT, principal_id="p-1")

        assert [r.levelno for r in caplog.records] == [logging.WARNING, logging.INFO]

    def test_filter_and_clear(self):
        trail = AuditTrail()
        trail.record(AuditEventType.AUTH_SUCCESS)
        trail.record(AuditEventType.AUTH_FAILURE)

        assert len(trail.events(AuditEventType.AUTH_FAILURE)) == 1
        trail.clear()
        assert trail.events() == []


class TestConfigureLogging:
    def test_levels(self):
        logger = logging.getLogger("gatehouse")
        original = logger.level
        try:
            assert configure_logging(LoggingConfig(level="INFO", debug=True)) is logger
            assert logger.level == logging.DEBUG

            configure_logging(LoggingConfig(level="WARNING"))
            assert logger.level == logging.WARNING
        finally:
            logger.setLevel(original)
