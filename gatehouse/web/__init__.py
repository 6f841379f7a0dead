"""HTTP boundary: credential parsing, handler adapters and the Starlette app."""

from .adapters import authenticated, error_boundary, timed
from .app import create_app
from .auth import AuthContextResolver, CredentialScheme, PresentedCredential, parse_authorization

__all__ = [
    "create_app",
    "AuthContextResolver",
    "CredentialScheme",
    "PresentedCredential",
    "parse_authorization",
    "authenticated",
    "error_boundary",
    "timed",
]
