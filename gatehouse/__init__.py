"""
gatehouse: identity and access engine.

Authenticates principals through OAuth federation, magic links and API keys,
issues signed access/refresh tokens, and answers role-based authorization
questions.
"""

__version__ = "0.1.0"

from gatehouse.api_keys import ApiKeyAuthenticator
from gatehouse.audit import AuditEventType, AuditTrail
from gatehouse.bootstrap import Services, build_services, configure_logging
from gatehouse.config import GatehouseSettings, load_settings
from gatehouse.context import AuthContext, AuthMethod
from gatehouse.magic_link import MagicLinkAuthenticator
from gatehouse.oauth import OAuthFederation, register_provider
from gatehouse.rbac import RbacResolver
from gatehouse.roles import DEFAULT_ROLE_TABLES, PermissionName, RoleName, RoleTables
from gatehouse.store import CredentialStore, MemoryCredentialStore
from gatehouse.tokens import JwtTokenService

__all__ = [
    "__version__",
    "ApiKeyAuthenticator",
    "AuditEventType",
    "AuditTrail",
    "AuthContext",
    "AuthMethod",
    "CredentialStore",
    "DEFAULT_ROLE_TABLES",
    "GatehouseSettings",
    "JwtTokenService",
    "MagicLinkAuthenticator",
    "MemoryCredentialStore",
    "OAuthFederation",
    "PermissionName",
    "RbacResolver",
    "RoleName",
    "RoleTables",
    "Services",
    "build_services",
    "configure_logging",
    "load_settings",
    "register_provider",
]
