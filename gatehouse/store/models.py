"""
Ommi models for credential storage.

Datetimes are stored as ISO-8601 strings and structured fields as JSON
strings. The ``to_*``/``from_*`` helpers convert between these rows and the
domain types in ``gatehouse.types``.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

from ommi import Key, ommi_model
from ommi.models.collections import ModelCollection

from ..types import (
    ApiKey,
    MagicLinkToken,
    OAuthLink,
    Principal,
    PrincipalStatus,
    RefreshTokenRecord,
    RoleAssignment,
)

identity_collection = ModelCollection()

# Stored in place of NULL for global role assignments so the
# (principal, role, tenant) triple stays comparable.
GLOBAL_SCOPE = ""


@ommi_model(collection=identity_collection)
@dataclass
class PrincipalModel:
    principal_id: str
    email: str
    first_name: str | None
    last_name: str | None
    display_name: str | None
    avatar_url: str | None
    organization_id: str | None
    status: str
    email_verified: bool
    created_at: str  # ISO format datetime
    updated_at: str | None = None
    last_login_at: str | None = None
    metadata: str = "{}"  # JSON string
    id: Annotated[int, Key] = None  # Auto-generated primary key


@ommi_model(collection=identity_collection)
@dataclass
class OAuthLinkModel:
    link_id: str
    principal_id: str
    provider: str
    email: str
    provider_user_id: str | None
    access_token: str | None
    refresh_token: str | None
    token_expires_at: str | None
    created_at: str
    updated_at: str | None = None
    profile: str = "{}"
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class MagicLinkModel:
    link_id: str
    email: str
    token: str
    expires_at: str
    created_at: str
    used: bool = False
    used_at: str | None = None
    # Set by the single caller whose conditional update consumed the link
    claimed_by: str | None = None
    metadata: str = "{}"
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class RefreshTokenModel:
    token_id: str
    principal_id: str
    token_hash: str
    expires_at: str
    created_at: str
    revoked: bool = False
    device_info: str = "{}"
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class ApiKeyModel:
    key_id: str
    owner_id: str
    name: str
    key_hash: str
    key_prefix: str
    description: str | None
    is_active: bool
    expires_at: str | None
    rate_limit_per_minute: int | None
    created_at: str
    updated_at: str | None = None
    usage_count: int = 0
    last_used_at: str | None = None
    last_used_ip: str | None = None
    allowed_ips: str = "[]"  # JSON list
    metadata: str = "{}"
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class RoleModel:
    name: str
    description: str | None
    created_at: str
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class PermissionModel:
    name: str
    description: str | None
    created_at: str
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class RoleAssignmentModel:
    principal_id: str
    role_name: str
    organization_id: str  # GLOBAL_SCOPE for global grants
    assigned_at: str
    id: Annotated[int, Key] = None


@ommi_model(collection=identity_collection)
@dataclass
class RolePermissionModel:
    role_name: str
    permission_name: str
    granted_at: str
    id: Annotated[int, Key] = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def to_principal_model(principal: Principal) -> PrincipalModel:
    return PrincipalModel(
        principal_id=principal.id,
        email=principal.email.lower(),
        first_name=principal.first_name,
        last_name=principal.last_name,
        display_name=principal.display_name,
        avatar_url=principal.avatar_url,
        organization_id=principal.organization_id,
        status=principal.status.value,
        email_verified=principal.email_verified,
        created_at=principal.created_at.isoformat(),
        updated_at=_iso(principal.updated_at),
        last_login_at=_iso(principal.last_login_at),
        metadata=json.dumps(principal.metadata),
    )


def from_principal_model(model: PrincipalModel) -> Principal:
    return Principal(
        id=model.principal_id,
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        display_name=model.display_name,
        avatar_url=model.avatar_url,
        organization_id=model.organization_id,
        status=PrincipalStatus(model.status),
        email_verified=bool(model.email_verified),
        metadata=json.loads(model.metadata or "{}"),
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=_dt(model.updated_at),
        last_login_at=_dt(model.last_login_at),
    )


def to_oauth_link_model(link: OAuthLink) -> OAuthLinkModel:
    return OAuthLinkModel(
        link_id=link.id,
        principal_id=link.principal_id,
        provider=link.provider,
        email=link.email.lower(),
        provider_user_id=link.provider_user_id,
        access_token=link.access_token,
        refresh_token=link.refresh_token,
        token_expires_at=_iso(link.token_expires_at),
        created_at=link.created_at.isoformat(),
        updated_at=_iso(link.updated_at),
        profile=json.dumps(link.profile),
    )


def from_oauth_link_model(model: OAuthLinkModel) -> OAuthLink:
    return OAuthLink(
        id=model.link_id,
        principal_id=model.principal_id,
        provider=model.provider,
        email=model.email,
        provider_user_id=model.provider_user_id,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=_dt(model.token_expires_at),
        profile=json.loads(model.profile or "{}"),
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=_dt(model.updated_at),
    )


def to_magic_link_model(link: MagicLinkToken) -> MagicLinkModel:
    return MagicLinkModel(
        link_id=link.id,
        email=link.email.lower(),
        token=link.token,
        expires_at=link.expires_at.isoformat(),
        created_at=link.created_at.isoformat(),
        used=link.used,
        used_at=_iso(link.used_at),
        metadata=json.dumps(link.metadata),
    )


def from_magic_link_model(model: MagicLinkModel) -> MagicLinkToken:
    return MagicLinkToken(
        id=model.link_id,
        email=model.email,
        token=model.token,
        expires_at=datetime.fromisoformat(model.expires_at),
        used=bool(model.used),
        used_at=_dt(model.used_at),
        metadata=json.loads(model.metadata or "{}"),
        created_at=datetime.fromisoformat(model.created_at),
    )


def to_refresh_token_model(record: RefreshTokenRecord) -> RefreshTokenModel:
    return RefreshTokenModel(
        token_id=record.id,
        principal_id=record.principal_id,
        token_hash=record.token_hash,
        expires_at=record.expires_at.isoformat(),
        created_at=record.created_at.isoformat(),
        revoked=record.revoked,
        device_info=json.dumps(record.device_info),
    )


def from_refresh_token_model(model: RefreshTokenModel) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=model.token_id,
        principal_id=model.principal_id,
        token_hash=model.token_hash,
        expires_at=datetime.fromisoformat(model.expires_at),
        revoked=bool(model.revoked),
        device_info=json.loads(model.device_info or "{}"),
        created_at=datetime.fromisoformat(model.created_at),
    )


def to_api_key_model(key: ApiKey) -> ApiKeyModel:
    return ApiKeyModel(
        key_id=key.id,
        owner_id=key.owner_id,
        name=key.name,
        key_hash=key.key_hash,
        key_prefix=key.key_prefix,
        description=key.description,
        is_active=key.is_active,
        expires_at=_iso(key.expires_at),
        rate_limit_per_minute=key.rate_limit_per_minute,
        created_at=key.created_at.isoformat(),
        updated_at=_iso(key.updated_at),
        usage_count=key.usage_count,
        last_used_at=_iso(key.last_used_at),
        last_used_ip=key.last_used_ip,
        allowed_ips=json.dumps(key.allowed_ips),
        metadata=json.dumps(key.metadata),
    )


def from_api_key_model(model: ApiKeyModel) -> ApiKey:
    return ApiKey(
        id=model.key_id,
        owner_id=model.owner_id,
        name=model.name,
        key_hash=model.key_hash,
        key_prefix=model.key_prefix,
        description=model.description,
        is_active=bool(model.is_active),
        expires_at=_dt(model.expires_at),
        rate_limit_per_minute=model.rate_limit_per_minute,
        allowed_ips=json.loads(model.allowed_ips or "[]"),
        usage_count=model.usage_count or 0,
        last_used_at=_dt(model.last_used_at),
        last_used_ip=model.last_used_ip,
        metadata=json.loads(model.metadata or "{}"),
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=_dt(model.updated_at),
    )


def to_role_assignment_model(assignment: RoleAssignment, assigned_at: datetime) -> RoleAssignmentModel:
    return RoleAssignmentModel(
        principal_id=assignment.principal_id,
        role_name=assignment.role_name,
        organization_id=assignment.organization_id or GLOBAL_SCOPE,
        assigned_at=assigned_at.isoformat(),
    )


def from_role_assignment_model(model: RoleAssignmentModel) -> RoleAssignment:
    return RoleAssignment(
        principal_id=model.principal_id,
        role_name=model.role_name,
        organization_id=model.organization_id or None,
    )
