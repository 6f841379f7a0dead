"""
CredentialStore interface for the identity and access engine.

The store is the single source of truth for revocation and single-use state.
Every operation that consumes or revokes a credential must be an atomic
conditional update inside the store, never a read-then-write performed by
the caller.

Security considerations:
- Refresh tokens and API keys are stored as digests only
- Single-use transitions (magic link used, refresh token revoked) must be
  compare-and-set so concurrent callers cannot both succeed
- Revoked or expired rows are never reactivated
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from ..types import (
    ApiKey,
    MagicLinkToken,
    OAuthLink,
    Permission,
    Principal,
    RefreshTokenRecord,
    Role,
    RoleAssignment,
)


class CredentialStore(ABC):
    """
    Abstract persistence contract consumed by the authenticators.

    Implementations must be safe to share across concurrent requests.
    Methods return ``None`` / ``False`` for absent rows rather than raising;
    callers decide which domain error an absence means.
    """

    # Principals

    @abstractmethod
    async def find_principal_by_email(self, email: str) -> Principal | None:
        """Look up a principal by email (case-insensitive)."""

    @abstractmethod
    async def get_principal(self, principal_id: str) -> Principal | None:
        """Look up a principal by id."""

    @abstractmethod
    async def create_principal(self, principal: Principal) -> Principal:
        """
        Persist a new principal.

        Raises:
            DuplicateResourceError: If a principal with the same email exists
        """

    @abstractmethod
    async def update_principal(self, principal_id: str, **changes: Any) -> Principal | None:
        """Apply field changes to a principal; returns the updated record."""

    # OAuth links

    @abstractmethod
    async def get_oauth_link(self, provider: str, email: str) -> OAuthLink | None:
        pass

    @abstractmethod
    async def upsert_oauth_link(self, link: OAuthLink) -> OAuthLink:
        """
        Create or update the link keyed by ``(provider, email)``.

        An existing link keeps its id and creation time.
        """

    @abstractmethod
    async def list_oauth_links(self, principal_id: str) -> list[OAuthLink]:
        pass

    # Magic links

    @abstractmethod
    async def create_magic_link(self, link: MagicLinkToken) -> MagicLinkToken:
        pass

    @abstractmethod
    async def get_magic_link(self, token: str) -> MagicLinkToken | None:
        """Look up a magic link by its raw token value."""

    @abstractmethod
    async def mark_magic_link_used(self, link_id: str, used_at: datetime) -> bool:
        """
        Atomically mark a link used if, and only if, it is not already used.

        Returns:
            True for the single caller that performed the transition
        """

    @abstractmethod
    async def delete_stale_magic_links(self, now: datetime) -> int:
        """Delete expired or used links; returns the number removed."""

    # Refresh tokens

    @abstractmethod
    async def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        pass

    @abstractmethod
    async def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        pass

    @abstractmethod
    async def revoke_refresh_token(self, token_hash: str) -> bool:
        """Revoke a live token; False if absent or already revoked."""

    @abstractmethod
    async def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        """Revoke every live token of a principal; returns the number revoked."""

    @abstractmethod
    async def delete_stale_refresh_tokens(self, now: datetime) -> int:
        """Delete expired or revoked rows; returns the number removed."""

    # API keys

    @abstractmethod
    async def create_api_key(self, key: ApiKey) -> ApiKey:
        """
        Persist a new key.

        Raises:
            DuplicateNameError: If the owner already has a key with this name
        """

    @abstractmethod
    async def get_api_key(self, key_id: str) -> ApiKey | None:
        pass

    @abstractmethod
    async def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        pass

    @abstractmethod
    async def list_api_keys(self, owner_id: str) -> list[ApiKey]:
        """Keys of one owner, newest first."""

    @abstractmethod
    async def update_api_key(self, key_id: str, **changes: Any) -> ApiKey | None:
        """
        Apply field changes to a key.

        Raises:
            DuplicateNameError: If a rename collides with another key of the owner
        """

    @abstractmethod
    async def record_api_key_usage(
        self, key_id: str, used_at: datetime, client_ip: str | None
    ) -> None:
        """Increment the usage counter and stamp last-used fields."""

    @abstractmethod
    async def delete_api_key(self, key_id: str) -> bool:
        pass

    @abstractmethod
    async def deactivate_expired_api_keys(self, now: datetime) -> int:
        pass

    # Roles and permissions

    @abstractmethod
    async def get_role_assignments(self, principal_id: str) -> list[RoleAssignment]:
        pass

    @abstractmethod
    async def add_role_assignment(self, assignment: RoleAssignment) -> bool:
        """Store an assignment; False if the exact triple already exists."""

    @abstractmethod
    async def remove_role_assignment(self, assignment: RoleAssignment) -> bool:
        pass

    @abstractmethod
    async def get_permissions_for_roles(self, role_names: Iterable[str]) -> set[str]:
        """Union of permission names granted to any of the given roles."""

    @abstractmethod
    async def define_role(self, role: Role) -> Role:
        """Create the role if absent; an existing role is returned unchanged."""

    @abstractmethod
    async def get_role(self, name: str) -> Role | None:
        pass

    @abstractmethod
    async def define_permission(self, permission: Permission) -> Permission:
        """Create the permission if absent; an existing one is returned unchanged."""

    @abstractmethod
    async def grant_permission(self, role_name: str, permission_name: str) -> bool:
        """Link a permission to a role; False if already linked."""

    async def close(self) -> None:
        """Release any held resources."""
