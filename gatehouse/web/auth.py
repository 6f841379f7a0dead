"""Credential extraction and per-request context resolution."""

import logging
from dataclasses import dataclass
from enum import Enum

from starlette.requests import Request

from ..api_keys import ApiKeyAuthenticator
from ..context import AuthContext
from ..exceptions import InvalidCredentialError
from ..rbac import RbacResolver
from ..tokens import JwtTokenService
from ..utils import is_valid_api_key_format

logger = logging.getLogger(__name__)


class CredentialScheme(Enum):
    BEARER = "bearer"
    API_KEY = "api_key"


@dataclass(frozen=True)
class PresentedCredential:
    scheme: CredentialScheme
    value: str


def parse_authorization(header: str | None) -> PresentedCredential:
    """
    Parse an ``Authorization`` header.

    Accepts ``Bearer <token>`` and ``ApiKey <key>``. A bearer value shaped
    like an API key is treated as one.

    Raises:
        InvalidCredentialError: Missing, empty or unsupported header
    """
    if not header:
        raise InvalidCredentialError("Authorization header required")

    scheme, _, value = header.strip().partition(" ")
    value = value.strip()
    if not value:
        raise InvalidCredentialError("Authorization header carries no credential")

    match scheme.lower():
        case "bearer":
            if is_valid_api_key_format(value):
                return PresentedCredential(CredentialScheme.API_KEY, value)
            return PresentedCredential(CredentialScheme.BEARER, value)
        case "apikey":
            return PresentedCredential(CredentialScheme.API_KEY, value)
        case _:
            raise InvalidCredentialError(f"Unsupported authorization scheme: {scheme}")


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


class AuthContextResolver:
    """Builds the ``AuthContext`` for a request from its credentials."""

    def __init__(
        self,
        tokens: JwtTokenService,
        api_keys: ApiKeyAuthenticator,
        rbac: RbacResolver,
    ):
        self.tokens = tokens
        self.api_keys = api_keys
        self.rbac = rbac

    async def resolve(self, request: Request) -> AuthContext:
        credential = parse_authorization(request.headers.get("authorization"))

        if credential.scheme is CredentialScheme.BEARER:
            claims = await self.tokens.verify_access_token(credential.value)
            return AuthContext.from_claims(claims)

        key, principal, _ = await self.api_keys.resolve(credential.value, client_ip(request))
        role, roles = await self.rbac.role_claims(principal.id)
        return AuthContext.from_api_key(key.id, principal, role, roles)
