"""Exception hierarchy for provisioning and reconciliation."""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all errors raised by access_grants."""


class ConfigurationError(ProvisioningError):
    """Required settings are missing or malformed. Fatal at process start."""


class TransportError(ProvisioningError):
    """Network-level failure (timeout, connection reset) after the retry budget."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class AuthError(ProvisioningError):
    """The remote side rejected our credentials or session."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class RemoteRejection(ProvisioningError):
    """The panel or gateway returned a structured failure. Never retried."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class NotFoundError(ProvisioningError):
    """A referenced endpoint, tariff or row does not exist."""


class StateConflictError(ProvisioningError):
    """The requested transition is not allowed from the current state."""


class InconsistencyWarning(ProvisioningError):
    """A local write failed after a remote side effect already happened.

    The remote client is left orphaned; nothing retries or heals it.
    """

    def __init__(self, message: str, endpoint: Optional[str] = None, client_id: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.client_id = client_id
