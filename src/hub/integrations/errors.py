"""Exception taxonomy for the integration hub.

Configuration errors fail fast before any network call and are never retried.
Authentication errors map to 401 inbound and to non-retryable hook results
outbound. Transient provider errors are reported through HookResult.should_retry
rather than raised.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all integration hub errors."""


class IntegrationNotFoundError(IntegrationError):
    """The integration type is unknown or lacks the requested capability."""

    def __init__(self, integration_type: str, capability: str | None = None) -> None:
        self.integration_type = integration_type
        self.capability = capability
        detail = f"Unknown integration: {integration_type}"
        if capability:
            detail = f"Integration {integration_type} does not support {capability}"
        super().__init__(detail)


class ConfigurationError(IntegrationError):
    """Provider configuration is incomplete (missing repo, team, write key...)."""


class PlatformCredentialsMissingError(ConfigurationError):
    """Admin-supplied app credentials are required but not configured."""

    def __init__(self, integration_type: str, missing: list[str] | None = None) -> None:
        self.integration_type = integration_type
        self.missing = missing or []
        detail = f"Platform credentials not configured for {integration_type}"
        if self.missing:
            detail += f" (missing: {', '.join(self.missing)})"
        super().__init__(detail)


class OAuthStateError(IntegrationError):
    """OAuth state token is invalid, expired, or issued for another integration.

    Attributes:
        reason: Short machine-readable code used in the settings redirect
            (``invalid_state``, ``state_expired``, ``state_mismatch``).
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class TokenExchangeError(IntegrationError):
    """The provider rejected the authorization code exchange."""


class SecretsDecryptionError(IntegrationError):
    """Encrypted secrets could not be decrypted with the current key."""


class UserSyncError(IntegrationError):
    """One or more outbound user-sync calls failed within a batch run.

    Raised once after every batch has been attempted.
    """

    def __init__(self, integration_type: str, failed: int, total: int, errors: list[str] | None = None) -> None:
        self.integration_type = integration_type
        self.failed = failed
        self.total = total
        self.errors = errors or []
        super().__init__(f"{integration_type}: {failed} of {total} user sync calls failed")
