"""
Starlette application exposing the engine over HTTP.

Routes are registered with their adapters composed explicitly; the handlers
are plain coroutines over collaborators resolved from the bevy container
that ``build_services`` fills.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from bevy import Container
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..api_keys import ApiKeyAuthenticator
from ..bootstrap import Services
from ..config import GatehouseSettings
from ..context import AuthContext
from ..exceptions import InvalidCredentialError
from ..magic_link import MagicLinkAuthenticator
from ..oauth import OAuthFederation
from ..principals import PrincipalDirectory
from ..rbac import RbacResolver
from ..tokens import JwtTokenService
from ..types import ApiKey, ApiKeySpec, Principal, ValidationError, as_utc
from .adapters import authenticated, error_boundary, success, timed
from .auth import AuthContextResolver, client_ip

logger = logging.getLogger(__name__)


async def read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def require_field(body: dict[str, Any], name: str) -> Any:
    value = body.get(name)
    if value in (None, ""):
        raise ValidationError(f"Missing required field: {name}")
    return value


def parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp") from e
    return as_utc(parsed)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def principal_to_dict(principal: Principal) -> dict[str, Any]:
    return {
        "id": principal.id,
        "email": principal.email,
        "firstName": principal.first_name,
        "lastName": principal.last_name,
        "displayName": principal.display_name,
        "avatarUrl": principal.avatar_url,
        "organizationId": principal.organization_id,
        "status": principal.status.value,
        "emailVerified": principal.email_verified,
        "lastLoginAt": _iso(principal.last_login_at),
    }


def api_key_to_dict(key: ApiKey) -> dict[str, Any]:
    """Public view of a key; the digest never leaves the service."""
    return {
        "id": key.id,
        "name": key.name,
        "prefix": key.key_prefix,
        "description": key.description,
        "isActive": key.is_active,
        "expiresAt": _iso(key.expires_at),
        "rateLimitPerMinute": key.rate_limit_per_minute,
        "allowedIps": list(key.allowed_ips),
        "usageCount": key.usage_count,
        "lastUsedAt": _iso(key.last_used_at),
        "metadata": dict(key.metadata),
        "createdAt": _iso(key.created_at),
    }


def _changes_from_body(body: dict[str, Any]) -> dict[str, Any]:
    field_map = {
        "name": "name",
        "description": "description",
        "isActive": "is_active",
        "expiresAt": "expires_at",
        "rateLimitPerMinute": "rate_limit_per_minute",
        "allowedIps": "allowed_ips",
        "metadata": "metadata",
    }
    changes = {}
    for public_name, value in body.items():
        if public_name not in field_map:
            raise ValidationError(f"Field cannot be updated: {public_name}")
        changes[field_map[public_name]] = value
    if "expires_at" in changes:
        changes["expires_at"] = parse_datetime(changes["expires_at"], "expiresAt")
    return changes


class GatehouseRoutes:
    """Request handlers over the engine's services, resolved from the container."""

    def __init__(self, container: Container):
        self.settings = container.get(GatehouseSettings)
        self.oauth = container.get(OAuthFederation)
        self.magic_links = container.get(MagicLinkAuthenticator)
        self.tokens = container.get(JwtTokenService)
        self.principals = container.get(PrincipalDirectory)
        self.api_keys = container.get(ApiKeyAuthenticator)
        self.rbac = container.get(RbacResolver)

    # Federation

    async def oauth_authorize(self, request: Request) -> JSONResponse:
        provider = request.path_params["provider"]
        redirect_uri = request.query_params.get("redirect_uri")
        if not redirect_uri:
            raise ValidationError("redirect_uri is required")
        url = self.oauth.build_authorization_url(
            provider, redirect_uri, request.query_params.get("state")
        )
        return success({"authorizationUrl": url})

    async def oauth_callback(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        result = await self.oauth.complete_federation(
            request.path_params["provider"],
            require_field(body, "code"),
            require_field(body, "redirect_uri"),
            body.get("state"),
        )
        return success({"user": principal_to_dict(result.principal), **result.credentials.to_dict()})

    # Magic links

    async def request_magic_link(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        link = await self.magic_links.request_link(
            require_field(body, "email"), body.get("redirect_uri")
        )
        return success(
            {
                "message": "If the address is valid, a login link has been sent",
                "expiresAt": _iso(link.expires_at),
            }
        )

    async def verify_magic_link(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        result = await self.magic_links.verify(body.get("token") or "")
        return success({"user": principal_to_dict(result.principal), **result.credentials.to_dict()})

    # Sessions

    async def refresh_token(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        refresh_token = body.get("refresh_token")
        if not refresh_token:
            raise InvalidCredentialError("Refresh token is required")
        access_token = await self.tokens.refresh(refresh_token)
        return success(
            {
                "access_token": access_token,
                "token_type": "Bearer",
                "expires_in": self.tokens.access_token_ttl,
            }
        )

    async def logout(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        revoked = await self.tokens.revoke(body.get("refresh_token") or "")
        return success({"revoked": revoked})

    async def logout_all(self, request: Request, context: AuthContext) -> JSONResponse:
        count = await self.tokens.revoke_all(context.principal_id)
        return success({"revoked": count})

    async def me(self, request: Request, context: AuthContext) -> JSONResponse:
        principal = await self.principals.get(context.principal_id)
        return success(
            {
                "user": principal_to_dict(principal),
                "role": context.role,
                "roles": list(context.roles),
                "authMethod": context.method.value,
            }
        )

    # API keys

    async def authenticate_api_key(self, request: Request) -> JSONResponse:
        body = await read_json(request)
        raw_key = body.get("api_key") or request.headers.get("x-api-key")
        if not raw_key:
            raise InvalidCredentialError("API key is required")
        result = await self.api_keys.authenticate(raw_key, client_ip(request))
        return success(
            {
                "user": principal_to_dict(result.principal),
                **result.credentials.to_dict(),
                "apiKey": {
                    "id": result.api_key_info.id,
                    "name": result.api_key_info.name,
                    "lastUsedAt": _iso(result.api_key_info.last_used_at),
                },
            }
        )

    async def list_api_keys(self, request: Request, context: AuthContext) -> JSONResponse:
        keys = await self.api_keys.list_keys(context.principal_id)
        return success([api_key_to_dict(key) for key in keys])

    async def create_api_key(self, request: Request, context: AuthContext) -> JSONResponse:
        body = await read_json(request)
        spec = ApiKeySpec(
            name=body.get("name") or "",
            description=body.get("description"),
            expires_at=parse_datetime(body.get("expiresAt"), "expiresAt"),
            rate_limit_per_minute=body.get("rateLimitPerMinute"),
            allowed_ips=list(body.get("allowedIps") or []),
            metadata=dict(body.get("metadata") or {}),
        )
        created = await self.api_keys.create_key(context.principal_id, spec)
        return success(
            {
                "id": created.id,
                "name": created.name,
                "key": created.key,
                "description": created.description,
                "expiresAt": _iso(created.expires_at),
                "createdAt": _iso(created.created_at),
            },
            status_code=201,
        )

    async def api_key_stats(self, request: Request, context: AuthContext) -> JSONResponse:
        stats = await self.api_keys.stats(context.principal_id)
        return success(
            {
                "total": stats.total,
                "active": stats.active,
                "expired": stats.expired,
                "totalUsage": stats.total_usage,
            }
        )

    async def get_api_key(self, request: Request, context: AuthContext) -> JSONResponse:
        key = await self.api_keys.get_key(
            context.principal_id, request.path_params["key_id"]
        )
        return success(api_key_to_dict(key))

    async def update_api_key(self, request: Request, context: AuthContext) -> JSONResponse:
        changes = _changes_from_body(await read_json(request))
        key = await self.api_keys.update_key(
            context.principal_id, request.path_params["key_id"], changes
        )
        return success(api_key_to_dict(key))

    async def deactivate_api_key(self, request: Request, context: AuthContext) -> JSONResponse:
        await self.api_keys.deactivate_key(
            context.principal_id, request.path_params["key_id"]
        )
        return success({"deactivated": True})

    async def delete_api_key(self, request: Request, context: AuthContext) -> JSONResponse:
        deleted = await self.api_keys.delete_key(
            context.principal_id, request.path_params["key_id"]
        )
        return success({"deleted": deleted})

    # Roles and permissions

    async def assignable_roles(self, request: Request, context: AuthContext) -> JSONResponse:
        roles = await self.rbac.assignable_roles(
            context.principal_id, request.query_params.get("tenant_id")
        )
        return success({"roles": roles})

    async def assign_role(self, request: Request, context: AuthContext) -> JSONResponse:
        body = await read_json(request)
        assignment = await self.rbac.assign_role(
            context.principal_id,
            require_field(body, "principal_id"),
            require_field(body, "role"),
            body.get("tenant_id"),
        )
        return success(
            {
                "principalId": assignment.principal_id,
                "role": assignment.role_name,
                "tenantId": assignment.organization_id,
            }
        )

    async def remove_role(self, request: Request, context: AuthContext) -> JSONResponse:
        body = await read_json(request)
        removed = await self.rbac.remove_role(
            context.principal_id,
            require_field(body, "principal_id"),
            require_field(body, "role"),
            body.get("tenant_id"),
        )
        return success({"removed": removed})

    async def check_permission(self, request: Request, context: AuthContext) -> JSONResponse:
        permission = request.query_params.get("permission")
        if not permission:
            raise ValidationError("permission is required")
        tenant_id = request.query_params.get("tenant_id")
        allowed = await self.rbac.has_permission(
            context.principal_id, permission, tenant_id
        )
        return success({"permission": permission, "tenantId": tenant_id, "allowed": allowed})

    async def health(self, request: Request) -> JSONResponse:
        return success({"status": "ok", "environment": self.settings.environment})


def create_app(services: Services) -> Starlette:
    """Build the HTTP application over an assembled ``Services`` bundle."""
    container = services.container
    routes = GatehouseRoutes(container)
    resolver = AuthContextResolver(
        container.get(JwtTokenService),
        container.get(ApiKeyAuthenticator),
        container.get(RbacResolver),
    )

    def public(handler):
        return error_boundary(timed(handler))

    def protected(handler):
        return error_boundary(timed(authenticated(resolver, handler)))

    prefix = services.settings.server.api_prefix.rstrip("/")
    table = [
        ("/auth/{provider}/authorize", public(routes.oauth_authorize), ["GET"]),
        ("/auth/magic-link", public(routes.request_magic_link), ["POST"]),
        ("/auth/verify-magic-link", public(routes.verify_magic_link), ["POST"]),
        ("/auth/refresh-token", public(routes.refresh_token), ["POST"]),
        ("/auth/logout", public(routes.logout), ["POST"]),
        ("/auth/logout-all", protected(routes.logout_all), ["POST"]),
        ("/auth/api-key", public(routes.authenticate_api_key), ["POST"]),
        ("/auth/me", protected(routes.me), ["GET"]),
        ("/auth/{provider}", public(routes.oauth_callback), ["POST"]),
        ("/api-keys", protected(routes.list_api_keys), ["GET"]),
        ("/api-keys", protected(routes.create_api_key), ["POST"]),
        ("/api-keys/stats", protected(routes.api_key_stats), ["GET"]),
        ("/api-keys/{key_id}", protected(routes.get_api_key), ["GET"]),
        ("/api-keys/{key_id}", protected(routes.update_api_key), ["PATCH"]),
        ("/api-keys/{key_id}", protected(routes.delete_api_key), ["DELETE"]),
        ("/api-keys/{key_id}/deactivate", protected(routes.deactivate_api_key), ["POST"]),
        ("/roles/assignable", protected(routes.assignable_roles), ["GET"]),
        ("/roles/assign", protected(routes.assign_role), ["POST"]),
        ("/roles/remove", protected(routes.remove_role), ["POST"]),
        ("/permissions/check", protected(routes.check_permission), ["GET"]),
        ("/health", public(routes.health), ["GET"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(f"Gatehouse API listening under '{prefix or '/'}'")
        yield
        await services.aclose()

    return Starlette(
        routes=[Route(f"{prefix}{path}", endpoint, methods=methods) for path, endpoint, methods in table],
        lifespan=lifespan,
    )
