"""
Exception taxonomy for the integrations package.

Configuration errors fail fast to the initiating caller.  Handshake errors
carry a reason code for the redirect.  Delivery and archive failures are
*results*, not exceptions: see ``HookResult`` / ``ArchiveResult`` in
``utils.schemas``.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for every error raised by the integrations package."""


class ConfigurationError(IntegrationError):
    """Missing root secret, missing provider credentials, bad settings."""


class UnknownIntegrationError(ConfigurationError):
    def __init__(self, integration_type: str):
        super().__init__(f"Unknown integration type: {integration_type}")
        self.integration_type = integration_type


class IntegrationNotConnectedError(ConfigurationError):
    def __init__(self, workspace_id: str, integration_type: str):
        super().__init__(f"{integration_type} is not connected for workspace {workspace_id}")
        self.workspace_id = workspace_id
        self.integration_type = integration_type


class DecryptionError(IntegrationError):
    """Ciphertext was tampered, truncated, or encrypted under another purpose."""


class InvalidStateError(IntegrationError):
    """OAuth handshake state failed verification."""

    def __init__(self, reason: str = "invalid_state"):
        super().__init__(reason)
        self.reason = reason


class OAuthExchangeError(IntegrationError):
    """The provider rejected the authorization code exchange."""


class TokenRefreshError(IntegrationError):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
