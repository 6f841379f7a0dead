"""
OAuth provider definitions.

Each provider differs in its token request encoding, scopes and profile
field names; a ``ProviderSpec`` captures those differences so the federation
flow itself stays provider-agnostic.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Mapping

from ..exceptions import UnknownProviderError
from ..types import NormalizedProfile


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one OAuth provider.

    Attributes:
        name: Registry key, e.g. ``"google"``.
        authorize_url: Where the browser is sent to consent.
        token_url: Authorization-code exchange endpoint.
        profile_url: Endpoint returning the user's profile.
        scope: Space-separated scopes requested at authorization.
        token_request_format: ``"json"`` or ``"form"`` body for the exchange.
        authorize_params: Extra query parameters for the authorize URL.
        normalize: Maps the raw profile onto ``NormalizedProfile``.
    """

    name: str
    authorize_url: str
    token_url: str
    profile_url: str
    scope: str
    token_request_format: Literal["json", "form"]
    normalize: Callable[[dict[str, Any]], NormalizedProfile]
    authorize_params: Mapping[str, str] = field(default_factory=dict)


def normalize_google(profile: dict[str, Any]) -> NormalizedProfile:
    return NormalizedProfile(
        email=profile.get("email"),
        first_name=profile.get("given_name"),
        last_name=profile.get("family_name"),
        display_name=profile.get("name"),
        picture_url=profile.get("picture"),
        provider_user_id=profile.get("sub") or profile.get("id"),
        email_verified=_truthy(profile.get("email_verified", False)),
        metadata={"locale": profile.get("locale"), "hd": profile.get("hd")},
    )


def normalize_microsoft(profile: dict[str, Any]) -> NormalizedProfile:
    return NormalizedProfile(
        # Personal accounts often have no ``mail``; the UPN is the login address
        email=profile.get("mail") or profile.get("userPrincipalName"),
        first_name=profile.get("givenName"),
        last_name=profile.get("surname"),
        display_name=profile.get("displayName"),
        picture_url=None,
        provider_user_id=profile.get("id"),
        email_verified=bool(profile.get("mail")),
        metadata={
            "job_title": profile.get("jobTitle"),
            "office_location": profile.get("officeLocation"),
        },
    )


def normalize_linkedin(profile: dict[str, Any]) -> NormalizedProfile:
    return NormalizedProfile(
        email=profile.get("email"),
        first_name=profile.get("given_name"),
        last_name=profile.get("family_name"),
        display_name=profile.get("name"),
        picture_url=profile.get("picture"),
        provider_user_id=profile.get("sub"),
        email_verified=_truthy(profile.get("email_verified", False)),
        metadata={"locale": profile.get("locale")},
    )


GOOGLE = ProviderSpec(
    name="google",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    profile_url="https://www.googleapis.com/oauth2/v3/userinfo",
    scope="email profile openid",
    token_request_format="json",
    normalize=normalize_google,
    authorize_params=MappingProxyType({"access_type": "offline", "prompt": "consent"}),
)

MICROSOFT = ProviderSpec(
    name="microsoft",
    authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    profile_url="https://graph.microsoft.com/v1.0/me",
    scope="user.read openid profile email",
    token_request_format="form",
    normalize=normalize_microsoft,
    authorize_params=MappingProxyType({"response_mode": "query"}),
)

LINKEDIN = ProviderSpec(
    name="linkedin",
    authorize_url="https://www.linkedin.com/oauth/v2/authorization",
    token_url="https://www.linkedin.com/oauth/v2/accessToken",
    profile_url="https://api.linkedin.com/v2/userinfo",
    scope="openid profile email",
    token_request_format="form",
    normalize=normalize_linkedin,
)


class ProviderRegistry:
    """Name -> ``ProviderSpec`` lookup, pre-populated with the built-ins."""

    def __init__(self, providers: list[ProviderSpec] | None = None):
        self._providers: dict[str, ProviderSpec] = {}
        for spec in providers if providers is not None else [GOOGLE, MICROSOFT, LINKEDIN]:
            self.register(spec)

    def register(self, spec: ProviderSpec) -> None:
        self._providers[spec.name] = spec

    def get(self, name: str) -> ProviderSpec:
        try:
            return self._providers[name]
        except KeyError:
            raise UnknownProviderError(name, f"Unsupported provider: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers


default_registry = ProviderRegistry()


def register_provider(spec: ProviderSpec) -> None:
    """Add or replace a provider in the default registry."""
    default_registry.register(spec)
