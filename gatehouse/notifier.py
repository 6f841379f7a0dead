"""Outbound delivery of login emails."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from .config import NotificationConfig
from .oauth.transport import RetryPolicy, send_with_retry
from .types import utcnow
from .utils import mask_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MagicLinkMessage:
    email: str
    verification_url: str
    name: str = "User"
    organization_id: str | None = None
    expires_in_minutes: int = 30
    metadata: dict = field(default_factory=dict)


class Notifier(ABC):
    """Delivers magic-link emails. Implementations may raise on failure."""

    @abstractmethod
    async def send_magic_link(self, message: MagicLinkMessage) -> None:
        pass


class LoggingNotifier(Notifier):
    """Development notifier: logs the delivery instead of sending it."""

    def __init__(self):
        self.sent: list[MagicLinkMessage] = []

    async def send_magic_link(self, message: MagicLinkMessage) -> None:
        self.sent.append(message)
        logger.info(
            f"Magic link for {message.email}: {mask_key(message.verification_url, 40)}"
        )


class HttpNotifier(Notifier):
    """Posts email requests to the notification service."""

    def __init__(
        self,
        config: NotificationConfig,
        http_client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not config.service_url:
            raise ValueError("HttpNotifier requires notifications.service_url")
        self.config = config
        self.http = http_client
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            max_retries=config.max_retries, timeout=config.timeout_seconds
        )

    def build_payload(self, message: MagicLinkMessage) -> dict:
        return {
            "type": "EMAIL",
            "templateId": self.config.template_id,
            "recipientType": "USER",
            "recipientDetails": {"email": message.email},
            "name": message.name,
            "verificationUrl": message.verification_url,
            "organizationId": message.organization_id or "",
            "organizationName": self.config.organization_name,
            "priority": 1,
            "scheduledAt": utcnow().isoformat(),
            "payload": {
                "LOGIN_LINK": message.verification_url,
                "LOGIN_LINK_TEXT": "Login to your account",
                "ORGANIZATION": self.config.organization_name,
                "CURRENT_YEAR": utcnow().year,
                "EXPIRES_IN_MINUTES": message.expires_in_minutes,
            },
        }

    async def send_magic_link(self, message: MagicLinkMessage) -> None:
        url = f"{self.config.service_url.rstrip('/')}/api/notifications"
        await send_with_retry(
            self.http,
            "notifications",
            "POST",
            url,
            self.retry_policy,
            sleep=self.sleep,
            json=self.build_payload(message),
        )
        logger.info(f"Queued magic link email for {message.email}")
