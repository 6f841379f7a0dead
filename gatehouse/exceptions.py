"""Exception classes for the identity and access engine.

Credential failures are deliberately split into many internal classes so the
audit trail can say *why* a credential was refused, while every one of them
shares the same ``public_message`` so callers on the network never learn the
difference between an expired token, a bad signature or a wrong token type.
"""

INVALID_CREDENTIALS_MESSAGE = "Invalid or expired credentials"


class AuthError(Exception):
    """Base exception for all authentication-related errors."""

    code = "auth_error"
    status_code = 500
    public_message = "Authentication service error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthenticationError(AuthError):
    """Raised when authentication fails."""

    code = "authentication_failed"
    status_code = 401
    public_message = INVALID_CREDENTIALS_MESSAGE


# Credential validation failures


class CredentialError(AuthenticationError):
    """A presented credential could not be accepted."""

    code = "invalid_credentials"


class InvalidCredentialError(CredentialError):
    """Bad signature, malformed key or unknown token."""


class ExpiredCredentialError(CredentialError):
    """The credential was valid once but is past its expiry."""


class AlreadyUsedCredentialError(CredentialError):
    """A single-use credential was presented a second time."""


class RevokedCredentialError(CredentialError):
    """The credential has been revoked."""


class InvalidTokenError(InvalidCredentialError):
    """Signed token failed signature or structural validation."""


class TokenSignatureExpiredError(InvalidTokenError, ExpiredCredentialError):
    """Signed token is past its ``exp`` claim."""


class WrongTokenTypeError(InvalidTokenError):
    """Token verified but carries the wrong ``type`` discriminator."""

    def __init__(self, expected: str, actual: str | None, details: dict | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Expected a '{expected}' token, got '{actual}'", details
        )


class InvalidRefreshTokenError(InvalidCredentialError):
    """Refresh token failed cryptographic or store validation."""


class RefreshTokenExpiredError(InvalidRefreshTokenError, ExpiredCredentialError):
    pass


class RefreshTokenRevokedError(InvalidRefreshTokenError, RevokedCredentialError):
    pass


class TokenNotFoundError(InvalidCredentialError):
    """No magic-link token with this value exists."""


class TokenAlreadyUsedError(AlreadyUsedCredentialError):
    """Magic-link token was already consumed."""


class TokenExpiredError(ExpiredCredentialError):
    """Magic-link token is past its expiry."""


class InvalidApiKeyError(InvalidCredentialError):
    """API key is malformed, unknown or inactive."""


class ApiKeyExpiredError(ExpiredCredentialError):
    pass


# Federation


class ProviderError(AuthError):
    """Raised when an OAuth provider interaction fails."""

    code = "provider_error"
    status_code = 502
    public_message = "Authentication with the identity provider failed"

    def __init__(self, provider: str, message: str, details: dict | None = None):
        self.provider = provider
        super().__init__(f"[{provider}] {message}", details)


class UnknownProviderError(ProviderError):
    code = "unknown_provider"
    status_code = 400
    public_message = "Unsupported identity provider"


class ProviderNotConfiguredError(ProviderError):
    """Provider client id or secret is absent."""

    code = "provider_not_configured"
    status_code = 503
    public_message = "Identity provider is not available"


class ProviderTransportError(ProviderError):
    """Network failure or timeout talking to the provider."""


class ProviderResponseError(ProviderError):
    """Provider answered with a non-2xx status or an unusable body."""

    def __init__(
        self,
        provider: str,
        message: str,
        status: int | None = None,
        details: dict | None = None,
    ):
        self.status = status
        super().__init__(provider, message, details)


class MissingEmailError(ProviderError):
    """Provider profile carries no email address; terminal."""

    code = "missing_email"
    status_code = 400
    public_message = "Identity provider did not return an email address"


# Configuration


class ConfigurationError(AuthError):
    """Raised when configuration is invalid or incomplete.

    Fatal at startup: the service must not accept traffic.
    """

    code = "configuration_error"


# Authorization


class AuthorizationError(AuthError):
    """Raised when authorization fails."""

    code = "forbidden"
    status_code = 403
    public_message = "Forbidden"


class PermissionDeniedError(AuthorizationError):
    """Raised when a principal lacks the permission for an action."""

    def __init__(
        self, permission: str, resource: str | None = None, details: dict | None = None
    ):
        self.permission = permission
        self.resource = resource

        if resource:
            message = f"Permission denied: '{permission}' for resource '{resource}'"
        else:
            message = f"Permission denied: '{permission}'"

        super().__init__(message, details)


class IpNotAllowedError(PermissionDeniedError):
    def __init__(self, client_ip: str | None, details: dict | None = None):
        self.client_ip = client_ip
        super().__init__("api_key:ip_allow_list", details=details)


class AccountDisabledError(AuthorizationError):
    """Principal is inactive or suspended and may not obtain credentials."""

    code = "account_disabled"
    public_message = "Account is disabled"


# Resource and admission errors


class RateLimitedError(AuthError):
    code = "rate_limited"
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, message: str, retry_after: float | None = None, details: dict | None = None):
        self.retry_after = retry_after
        super().__init__(message, details)


class DuplicateResourceError(AuthError):
    code = "conflict"
    status_code = 409
    public_message = "Resource already exists"


class DuplicateNameError(DuplicateResourceError):
    public_message = "Name already in use"


class ResourceLimitError(AuthError):
    code = "limit_reached"
    status_code = 400
    public_message = "Maximum number of resources reached"


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    public_message = "Not found"


class PrincipalNotFoundError(NotFoundError):
    pass


class ApiKeyNotFoundError(NotFoundError):
    public_message = "API key not found"


class RoleNotFoundError(NotFoundError):
    public_message = "Role not found"
