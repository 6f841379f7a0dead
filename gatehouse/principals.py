"""Resolve-or-create of principals shared by the authenticators."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .audit import AuditEventType, AuditTrail
from .exceptions import DuplicateResourceError, PrincipalNotFoundError
from .store.base import CredentialStore
from .types import Principal, utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class PrincipalDirectory:
    """Thin policy layer over the store's principal operations."""

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit or AuditTrail()
        self.clock = clock

    async def get(self, principal_id: str) -> Principal:
        principal = await self.store.get_principal(principal_id)
        if principal is None:
            raise PrincipalNotFoundError(f"Principal not found: {principal_id}")
        return principal

    async def resolve(self, email: str, source: str, **attributes: Any) -> tuple[Principal, bool]:
        """
        Find a principal by email, creating it when absent.

        Returns:
            The principal and whether it was created by this call
        """
        email = normalize_email(email)
        existing = await self.store.find_principal_by_email(email)
        if existing is not None:
            return existing, False

        principal = Principal(
            id=str(uuid.uuid4()),
            email=email,
            created_at=self.clock(),
            **{k: v for k, v in attributes.items() if v is not None},
        )
        try:
            created = await self.store.create_principal(principal)
        except DuplicateResourceError:
            # Lost a creation race with a concurrent login for the same email
            winner = await self.store.find_principal_by_email(email)
            if winner is None:
                raise
            return winner, False

        self.audit.record(
            AuditEventType.PRINCIPAL_CREATE, principal_id=created.id, method=source, email=email
        )
        logger.info(f"Created principal {created.id} via {source}")
        return created, True

    async def record_login(self, principal: Principal, **changes: Any) -> Principal:
        """Stamp ``last_login_at`` plus any profile changes."""
        updated = await self.store.update_principal(
            principal.id, last_login_at=self.clock(), **changes
        )
        return updated or principal
