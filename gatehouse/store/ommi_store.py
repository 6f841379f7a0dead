"""
Ommi-backed credential store.

Single-use transitions are expressed as conditional ``UPDATE ... WHERE``
statements so the database decides which concurrent caller wins.
"""

import json
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from ommi import Ommi
from ommi.database.query_results import DBQueryResult
from ommi.database.results import DBResult

from ..exceptions import ConfigurationError, DuplicateNameError, DuplicateResourceError
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
from .models import (
    GLOBAL_SCOPE,
    ApiKeyModel,
    MagicLinkModel,
    OAuthLinkModel,
    PermissionModel,
    PrincipalModel,
    RefreshTokenModel,
    RoleAssignmentModel,
    RoleModel,
    RolePermissionModel,
    from_api_key_model,
    from_magic_link_model,
    from_oauth_link_model,
    from_principal_model,
    from_refresh_token_model,
    from_role_assignment_model,
    identity_collection,
    to_api_key_model,
    to_magic_link_model,
    to_oauth_link_model,
    to_principal_model,
    to_refresh_token_model,
    to_role_assignment_model,
)

logger = logging.getLogger(__name__)


def serialize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Convert domain field values to their column representation."""
    serialized = {}
    for field_name, value in changes.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (dict, list)):
            value = json.dumps(value)
        serialized[field_name] = value
    return serialized


async def connect_ommi(connection_string: str = "sqlite:///:memory:") -> Ommi:
    """Create an Ommi instance with the driver matching the connection string.

    Raises:
        ConfigurationError: If the database scheme is unsupported
    """
    if connection_string.startswith("sqlite"):
        from ommi.ext.drivers.sqlite import SQLiteDriver
        from ommi.ext.drivers.sqlite.driver import SQLiteSettings

        # Format: sqlite:///path/to/db.db -> path/to/db.db
        if connection_string.startswith("sqlite:///"):
            database_path = connection_string[10:]
        elif connection_string.startswith("sqlite://"):
            database_path = connection_string[9:]
        else:
            database_path = connection_string
        driver = SQLiteDriver.connect(SQLiteSettings(database_path=database_path))
    elif connection_string.startswith("postgresql"):
        from ommi.ext.drivers.postgresql import PostgreSQLDriver

        driver = PostgreSQLDriver.connect(connection_string)
    else:
        scheme = connection_string.split("://")[0] if "://" in connection_string else connection_string
        raise ConfigurationError(f"Unsupported database scheme: {scheme}")

    db = Ommi(driver)
    await db.__aenter__()
    return db


class OmmiCredentialStore(CredentialStore):
    """Credential store persisted through Ommi models."""

    def __init__(self, db: Ommi):
        self.db = db
        self._models_ready = False

    async def _ready(self) -> Ommi:
        if not self._models_ready:
            await self.db.use_models(identity_collection)
            self._models_ready = True
        return self.db

    async def _add(self, model, description: str):
        db = await self._ready()
        match await db.add(model):
            case DBResult.DBSuccess(_):
                return model
            case DBResult.DBFailure(exception):
                logger.error(f"Failed to store {description}: {exception}")
                raise exception

    async def _one(self, *predicates):
        db = await self._ready()
        match await db.find(*predicates).one():
            case DBQueryResult.DBQuerySuccess(model):
                return model
            case DBQueryResult.DBQueryFailure(_):
                return None

    async def _all(self, *predicates) -> list:
        db = await self._ready()
        rows = await db.find(*predicates).all().or_raise()
        return [model async for model in rows]

    async def _count(self, *predicates) -> int:
        db = await self._ready()
        return await db.find(*predicates).count().or_raise()

    async def _update(self, *predicates, **values) -> None:
        db = await self._ready()
        match await db.find(*predicates).update(**values):
            case DBResult.DBSuccess(_):
                return
            case DBResult.DBFailure(exception):
                logger.error(f"Update failed: {exception}")
                raise exception

    async def _delete(self, *predicates) -> None:
        db = await self._ready()
        await db.find(*predicates).delete().or_raise()

    # Principals

    async def find_principal_by_email(self, email: str) -> Principal | None:
        model = await self._one(PrincipalModel.email == email.strip().lower())
        return from_principal_model(model) if model else None

    async def get_principal(self, principal_id: str) -> Principal | None:
        model = await self._one(PrincipalModel.principal_id == principal_id)
        return from_principal_model(model) if model else None

    async def create_principal(self, principal: Principal) -> Principal:
        if await self._count(PrincipalModel.email == principal.email.lower()):
            raise DuplicateResourceError(f"Principal already exists: {principal.email}")
        await self._add(to_principal_model(principal), "principal")
        return principal

    async def update_principal(self, principal_id: str, **changes: Any) -> Principal | None:
        changes["updated_at"] = utcnow()
        await self._update(
            PrincipalModel.principal_id == principal_id, **serialize_changes(changes)
        )
        return await self.get_principal(principal_id)

    # OAuth links

    async def get_oauth_link(self, provider: str, email: str) -> OAuthLink | None:
        model = await self._one(
            OAuthLinkModel.provider == provider, OAuthLinkModel.email == email.lower()
        )
        return from_oauth_link_model(model) if model else None

    async def upsert_oauth_link(self, link: OAuthLink) -> OAuthLink:
        existing = await self.get_oauth_link(link.provider, link.email)
        if existing is None:
            await self._add(to_oauth_link_model(link), "oauth link")
            return link

        await self._update(
            OAuthLinkModel.link_id == existing.id,
            **serialize_changes(
                {
                    "principal_id": link.principal_id,
                    "provider_user_id": link.provider_user_id,
                    "access_token": link.access_token,
                    "refresh_token": link.refresh_token,
                    "token_expires_at": link.token_expires_at,
                    "profile": link.profile,
                    "updated_at": utcnow(),
                }
            ),
        )
        return await self.get_oauth_link(link.provider, link.email)

    async def list_oauth_links(self, principal_id: str) -> list[OAuthLink]:
        models = await self._all(OAuthLinkModel.principal_id == principal_id)
        return [from_oauth_link_model(model) for model in models]

    # Magic links

    async def create_magic_link(self, link: MagicLinkToken) -> MagicLinkToken:
        await self._add(to_magic_link_model(link), "magic link")
        return link

    async def get_magic_link(self, token: str) -> MagicLinkToken | None:
        model = await self._one(MagicLinkModel.token == token)
        return from_magic_link_model(model) if model else None

    async def mark_magic_link_used(self, link_id: str, used_at: datetime) -> bool:
        claim = str(uuid.uuid4())
        await self._update(
            MagicLinkModel.link_id == link_id,
            MagicLinkModel.used == False,  # noqa: E712
            used=True,
            used_at=used_at.isoformat(),
            claimed_by=claim,
        )
        model = await self._one(MagicLinkModel.link_id == link_id)
        return model is not None and model.claimed_by == claim

    async def delete_stale_magic_links(self, now: datetime) -> int:
        used = MagicLinkModel.used == True  # noqa: E712
        expired = MagicLinkModel.expires_at <= now.isoformat()
        removed = await self._count(used) + await self._count(
            MagicLinkModel.used == False, expired  # noqa: E712
        )
        if removed:
            await self._delete(used)
            await self._delete(expired)
        return removed

    # Refresh tokens

    async def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        await self._add(to_refresh_token_model(record), "refresh token")
        return record

    async def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        model = await self._one(RefreshTokenModel.token_hash == token_hash)
        return from_refresh_token_model(model) if model else None

    async def revoke_refresh_token(self, token_hash: str) -> bool:
        live = (
            RefreshTokenModel.token_hash == token_hash,
            RefreshTokenModel.revoked == False,  # noqa: E712
        )
        if not await self._count(*live):
            return False
        await self._update(*live, revoked=True)
        return True

    async def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        live = (
            RefreshTokenModel.principal_id == principal_id,
            RefreshTokenModel.revoked == False,  # noqa: E712
        )
        count = await self._count(*live)
        if count:
            await self._update(*live, revoked=True)
        return count

    async def delete_stale_refresh_tokens(self, now: datetime) -> int:
        revoked = RefreshTokenModel.revoked == True  # noqa: E712
        expired = RefreshTokenModel.expires_at <= now.isoformat()
        removed = await self._count(revoked) + await self._count(
            RefreshTokenModel.revoked == False, expired  # noqa: E712
        )
        if removed:
            await self._delete(revoked)
            await self._delete(expired)
        return removed

    # API keys

    async def create_api_key(self, key: ApiKey) -> ApiKey:
        if await self._count(ApiKeyModel.owner_id == key.owner_id, ApiKeyModel.name == key.name):
            raise DuplicateNameError(f"API key name already in use: {key.name}")
        await self._add(to_api_key_model(key), "api key")
        return key

    async def get_api_key(self, key_id: str) -> ApiKey | None:
        model = await self._one(ApiKeyModel.key_id == key_id)
        return from_api_key_model(model) if model else None

    async def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        model = await self._one(ApiKeyModel.key_hash == key_hash)
        return from_api_key_model(model) if model else None

    async def list_api_keys(self, owner_id: str) -> list[ApiKey]:
        models = await self._all(ApiKeyModel.owner_id == owner_id)
        keys = [from_api_key_model(model) for model in models]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    async def update_api_key(self, key_id: str, **changes: Any) -> ApiKey | None:
        current = await self.get_api_key(key_id)
        if current is None:
            return None
        new_name = changes.get("name")
        if new_name and new_name != current.name:
            if await self._count(
                ApiKeyModel.owner_id == current.owner_id, ApiKeyModel.name == new_name
            ):
                raise DuplicateNameError(f"API key name already in use: {new_name}")
        changes["updated_at"] = utcnow()
        await self._update(ApiKeyModel.key_id == key_id, **serialize_changes(changes))
        return await self.get_api_key(key_id)

    async def record_api_key_usage(
        self, key_id: str, used_at: datetime, client_ip: str | None
    ) -> None:
        model = await self._one(ApiKeyModel.key_id == key_id)
        if model is None:
            return
        # A lost race skips one usage tick.
        await self._update(
            ApiKeyModel.key_id == key_id,
            ApiKeyModel.usage_count == model.usage_count,
            usage_count=model.usage_count + 1,
            last_used_at=used_at.isoformat(),
            last_used_ip=client_ip,
        )

    async def delete_api_key(self, key_id: str) -> bool:
        if not await self._count(ApiKeyModel.key_id == key_id):
            return False
        await self._delete(ApiKeyModel.key_id == key_id)
        return True

    async def deactivate_expired_api_keys(self, now: datetime) -> int:
        expired = (
            ApiKeyModel.is_active == True,  # noqa: E712
            ApiKeyModel.expires_at <= now.isoformat(),
        )
        count = await self._count(*expired)
        if count:
            await self._update(*expired, is_active=False, updated_at=now.isoformat())
        return count

    # Roles and permissions

    def _assignment_predicates(self, assignment: RoleAssignment):
        return (
            RoleAssignmentModel.principal_id == assignment.principal_id,
            RoleAssignmentModel.role_name == assignment.role_name,
            RoleAssignmentModel.organization_id == (assignment.organization_id or GLOBAL_SCOPE),
        )

    async def get_role_assignments(self, principal_id: str) -> list[RoleAssignment]:
        models = await self._all(RoleAssignmentModel.principal_id == principal_id)
        return [from_role_assignment_model(model) for model in models]

    async def add_role_assignment(self, assignment: RoleAssignment) -> bool:
        if await self._count(*self._assignment_predicates(assignment)):
            return False
        await self._add(to_role_assignment_model(assignment, utcnow()), "role assignment")
        return True

    async def remove_role_assignment(self, assignment: RoleAssignment) -> bool:
        predicates = self._assignment_predicates(assignment)
        if not await self._count(*predicates):
            return False
        await self._delete(*predicates)
        return True

    async def get_permissions_for_roles(self, role_names: Iterable[str]) -> set[str]:
        permissions: set[str] = set()
        for role_name in set(role_names):
            models = await self._all(RolePermissionModel.role_name == role_name)
            permissions.update(model.permission_name for model in models)
        return permissions

    async def define_role(self, role: Role) -> Role:
        if await self._one(RoleModel.name == role.name) is None:
            await self._add(
                RoleModel(
                    name=role.name,
                    description=role.description,
                    created_at=utcnow().isoformat(),
                ),
                "role",
            )
            for permission_name in role.permissions:
                await self.grant_permission(role.name, permission_name)
        return await self.get_role(role.name)

    async def get_role(self, name: str) -> Role | None:
        model = await self._one(RoleModel.name == name)
        if model is None:
            return None
        grants = await self._all(RolePermissionModel.role_name == name)
        return Role(
            name=model.name,
            description=model.description,
            permissions=sorted(grant.permission_name for grant in grants),
        )

    async def define_permission(self, permission: Permission) -> Permission:
        model = await self._one(PermissionModel.name == permission.name)
        if model is not None:
            return Permission(name=model.name, description=model.description)
        await self._add(
            PermissionModel(
                name=permission.name,
                description=permission.description,
                created_at=utcnow().isoformat(),
            ),
            "permission",
        )
        return permission

    async def grant_permission(self, role_name: str, permission_name: str) -> bool:
        await self.define_permission(Permission(name=permission_name))
        if await self._count(
            RolePermissionModel.role_name == role_name,
            RolePermissionModel.permission_name == permission_name,
        ):
            return False
        await self._add(
            RolePermissionModel(
                role_name=role_name,
                permission_name=permission_name,
                granted_at=utcnow().isoformat(),
            ),
            "role permission",
        )
        return True

    async def close(self) -> None:
        await self.db.__aexit__(None, None, None)
