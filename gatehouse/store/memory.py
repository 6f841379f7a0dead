"""Thread-safe in-memory credential store."""

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from threading import RLock
from typing import Any

from ..exceptions import DuplicateNameError, DuplicateResourceError
from ..types import (
    ApiKey,
    MagicLinkToken,
    OAuthLink,
    Permission,
    Principal,
    RefreshTokenRecord,
    Role,
    RoleAssignment,
    utcnow,
)
from .base import CredentialStore

logger = logging.getLogger(__name__)


class MemoryCredentialStore(CredentialStore):
    """In-memory credential store.

    This store provides:
    - Thread-safe operations using RLock
    - Atomic compare-and-set for single-use and revocation transitions
    - Copies on read and write, so callers never share mutable rows

    Suitable for tests, development and single-process deployments.
    """

    def __init__(self):
        self._lock = RLock()
        self._principals: dict[str, Principal] = {}
        self._oauth_links: dict[tuple[str, str], OAuthLink] = {}
        self._magic_links: dict[str, MagicLinkToken] = {}
        self._refresh_tokens: dict[str, RefreshTokenRecord] = {}
        self._api_keys: dict[str, ApiKey] = {}
        self._roles: dict[str, Role] = {}
        self._permissions: dict[str, Permission] = {}
        self._assignments: set[RoleAssignment] = set()
        self._role_permissions: dict[str, set[str]] = {}

    # Principals

    async def find_principal_by_email(self, email: str) -> Principal | None:
        needle = email.strip().lower()
        with self._lock:
            for principal in self._principals.values():
                if principal.email.lower() == needle:
                    return replace(principal)
        return None

    async def get_principal(self, principal_id: str) -> Principal | None:
        with self._lock:
            principal = self._principals.get(principal_id)
            return replace(principal) if principal else None

    async def create_principal(self, principal: Principal) -> Principal:
        with self._lock:
            needle = principal.email.lower()
            if principal.id in self._principals or any(
                p.email.lower() == needle for p in self._principals.values()
            ):
                raise DuplicateResourceError(f"Principal already exists: {principal.email}")
            self._principals[principal.id] = replace(principal)
        return replace(principal)

    async def update_principal(self, principal_id: str, **changes: Any) -> Principal | None:
        with self._lock:
            principal = self._principals.get(principal_id)
            if principal is None:
                return None
            updated = replace(principal, **changes, updated_at=utcnow())
            self._principals[principal_id] = updated
            return replace(updated)

    # OAuth links

    async def get_oauth_link(self, provider: str, email: str) -> OAuthLink | None:
        with self._lock:
            link = self._oauth_links.get((provider, email.lower()))
            return replace(link) if link else None

    async def upsert_oauth_link(self, link: OAuthLink) -> OAuthLink:
        key = (link.provider, link.email.lower())
        with self._lock:
            existing = self._oauth_links.get(key)
            if existing is not None:
                link = replace(
                    link, id=existing.id, created_at=existing.created_at, updated_at=utcnow()
                )
            self._oauth_links[key] = replace(link)
        return replace(link)

    async def list_oauth_links(self, principal_id: str) -> list[OAuthLink]:
        with self._lock:
            return [
                replace(link)
                for link in self._oauth_links.values()
                if link.principal_id == principal_id
            ]

    # Magic links

    async def create_magic_link(self, link: MagicLinkToken) -> MagicLinkToken:
        with self._lock:
            self._magic_links[link.id] = replace(link)
        return replace(link)

    async def get_magic_link(self, token: str) -> MagicLinkToken | None:
        with self._lock:
            for link in self._magic_links.values():
                if link.token == token:
                    return replace(link)
        return None

    async def mark_magic_link_used(self, link_id: str, used_at: datetime) -> bool:
        with self._lock:
            link = self._magic_links.get(link_id)
            if link is None or link.used:
                return False
            self._magic_links[link_id] = replace(link, used=True, used_at=used_at)
            return True

    async def delete_stale_magic_links(self, now: datetime) -> int:
        with self._lock:
            stale = [
                link_id
                for link_id, link in self._magic_links.items()
                if link.used or link.is_expired(now)
            ]
            for link_id in stale:
                del self._magic_links[link_id]
        return len(stale)

    # Refresh tokens

    async def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._lock:
            self._refresh_tokens[record.token_hash] = replace(record)
        return replace(record)

    async def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        with self._lock:
            record = self._refresh_tokens.get(token_hash)
            return replace(record) if record else None

    async def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._lock:
            record = self._refresh_tokens.get(token_hash)
            if record is None or record.revoked:
                return False
            self._refresh_tokens[token_hash] = replace(record, revoked=True)
            return True

    async def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        revoked = 0
        with self._lock:
            for token_hash, record in self._refresh_tokens.items():
                if record.principal_id == principal_id and not record.revoked:
                    self._refresh_tokens[token_hash] = replace(record, revoked=True)
                    revoked += 1
        return revoked

    async def delete_stale_refresh_tokens(self, now: datetime) -> int:
        with self._lock:
            stale = [
                token_hash
                for token_hash, record in self._refresh_tokens.items()
                if record.revoked or record.is_expired(now)
            ]
            for token_hash in stale:
                del self._refresh_tokens[token_hash]
        return len(stale)

    # API keys

    def _name_taken(self, owner_id: str, name: str, exclude_id: str | None = None) -> bool:
        return any(
            key.owner_id == owner_id and key.name == name and key.id != exclude_id
            for key in self._api_keys.values()
        )

    async def create_api_key(self, key: ApiKey) -> ApiKey:
        with self._lock:
            if self._name_taken(key.owner_id, key.name):
                raise DuplicateNameError(f"API key name already in use: {key.name}")
            self._api_keys[key.id] = replace(key)
        return replace(key)

    async def get_api_key(self, key_id: str) -> ApiKey | None:
        with self._lock:
            key = self._api_keys.get(key_id)
            return replace(key) if key else None

    async def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        with self._lock:
            for key in self._api_keys.values():
                if key.key_hash == key_hash:
                    return replace(key)
        return None

    async def list_api_keys(self, owner_id: str) -> list[ApiKey]:
        with self._lock:
            keys = [replace(k) for k in self._api_keys.values() if k.owner_id == owner_id]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    async def update_api_key(self, key_id: str, **changes: Any) -> ApiKey | None:
        with self._lock:
            key = self._api_keys.get(key_id)
            if key is None:
                return None
            new_name = changes.get("name")
            if new_name and self._name_taken(key.owner_id, new_name, exclude_id=key_id):
                raise DuplicateNameError(f"API key name already in use: {new_name}")
            updated = replace(key, **changes, updated_at=utcnow())
            self._api_keys[key_id] = updated
            return replace(updated)

    async def record_api_key_usage(
        self, key_id: str, used_at: datetime, client_ip: str | None
    ) -> None:
        with self._lock:
            key = self._api_keys.get(key_id)
            if key is None:
                return
            self._api_keys[key_id] = replace(
                key,
                usage_count=key.usage_count + 1,
                last_used_at=used_at,
                last_used_ip=client_ip,
            )

    async def delete_api_key(self, key_id: str) -> bool:
        with self._lock:
            return self._api_keys.pop(key_id, None) is not None

    async def deactivate_expired_api_keys(self, now: datetime) -> int:
        count = 0
        with self._lock:
            for key_id, key in self._api_keys.items():
                if key.is_active and key.is_expired(now):
                    self._api_keys[key_id] = replace(key, is_active=False, updated_at=now)
                    count += 1
        return count

    # Roles and permissions

    async def get_role_assignments(self, principal_id: str) -> list[RoleAssignment]:
        with self._lock:
            return [a for a in self._assignments if a.principal_id == principal_id]

    async def add_role_assignment(self, assignment: RoleAssignment) -> bool:
        with self._lock:
            if assignment in self._assignments:
                return False
            self._assignments.add(assignment)
            return True

    async def remove_role_assignment(self, assignment: RoleAssignment) -> bool:
        with self._lock:
            if assignment not in self._assignments:
                return False
            self._assignments.discard(assignment)
            return True

    async def get_permissions_for_roles(self, role_names: Iterable[str]) -> set[str]:
        permissions: set[str] = set()
        with self._lock:
            for name in role_names:
                permissions |= self._role_permissions.get(name, set())
        return permissions

    async def define_role(self, role: Role) -> Role:
        with self._lock:
            existing = self._roles.get(role.name)
            if existing is not None:
                return replace(existing, permissions=sorted(self._role_permissions.get(role.name, ())))
            self._roles[role.name] = replace(role, permissions=[])
            self._role_permissions.setdefault(role.name, set())
        for permission_name in role.permissions:
            await self.grant_permission(role.name, permission_name)
        return await self.get_role(role.name)

    async def get_role(self, name: str) -> Role | None:
        with self._lock:
            role = self._roles.get(name)
            if role is None:
                return None
            return replace(role, permissions=sorted(self._role_permissions.get(name, ())))

    async def define_permission(self, permission: Permission) -> Permission:
        with self._lock:
            existing = self._permissions.setdefault(permission.name, replace(permission))
            return replace(existing)

    async def grant_permission(self, role_name: str, permission_name: str) -> bool:
        with self._lock:
            if permission_name not in self._permissions:
                self._permissions[permission_name] = Permission(name=permission_name)
            granted = self._role_permissions.setdefault(role_name, set())
            if permission_name in granted:
                return False
            granted.add(permission_name)
            return True
