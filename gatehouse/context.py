"""Immutable per-request authentication context."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from .types import Principal, TokenClaims


class AuthMethod(Enum):
    ACCESS_TOKEN = "access_token"
    API_KEY = "api_key"


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, built once per request and passed to handlers explicitly."""

    principal_id: str
    email: str | None
    role: str | None
    roles: tuple[str, ...]
    organization_id: str | None
    status: str | None
    method: AuthMethod
    api_key_id: str | None = None
    claims: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "AuthContext":
        return cls(
            principal_id=claims.sub,
            email=claims.email,
            role=claims.role,
            roles=tuple(claims.roles),
            organization_id=claims.organization_id,
            status=claims.status,
            method=AuthMethod.ACCESS_TOKEN,
            claims=MappingProxyType(dict(claims.extra)),
        )

    @classmethod
    def from_api_key(
        cls, api_key_id: str, principal: Principal, role: str, roles: list[str]
    ) -> "AuthContext":
        return cls(
            principal_id=principal.id,
            email=principal.email,
            role=role,
            roles=tuple(roles),
            organization_id=principal.organization_id,
            status=principal.status.value,
            method=AuthMethod.API_KEY,
            api_key_id=api_key_id,
        )

    def has_role(self, role_name: str) -> bool:
        return role_name in self.roles
