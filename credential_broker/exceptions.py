"""Broker error taxonomy.

Every failure surfaced by the broker derives from :class:`BrokerError` and
carries a stable ``category`` plus the process exit code used by the CLI.
"""
from typing import Optional


class BrokerError(Exception):
    """Base class for all broker failures."""

    category: str = "error"
    exit_code: int = 1
    retryable: bool = False

    def __init__(self, message: str = "", *, server_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server_name = server_name

    def __str__(self) -> str:
        return self.message or self.category


class NotFound(BrokerError):
    category = "not_found"
    exit_code = 3


class SecretNotFound(NotFound):
    """The remote store holds no secret for the server."""


class SessionNotFound(NotFound):
    """No active session is persisted for the server."""


class AccessDenied(BrokerError):
    """The store rejected the caller's identity or permissions."""
    category = "access_denied"
    exit_code = 4


class StoreUnavailable(BrokerError):
    """Transient remote failure; retry with backoff."""
    category = "store_unavailable"
    exit_code = 5
    retryable = True


class Conflict(BrokerError):
    """Concurrent modification detected by the store."""
    category = "conflict"
    exit_code = 6


class InvalidDuration(BrokerError, ValueError):
    category = "invalid_duration"
    exit_code = 7


class SessionExpired(BrokerError):
    category = "expired"
    exit_code = 8


class SessionRevoked(BrokerError):
    category = "revoked"
    exit_code = 9


class MalformedSession(BrokerError):
    category = "malformed"
    exit_code = 10


class PersistenceError(BrokerError):
    """Local session storage failed (I/O error or lock deadline)."""
    category = "persistence_error"
    exit_code = 11
    retryable = True


class PartialFailure(BrokerError):
    """The secret was rotated at the store but sessions were not invalidated.

    Repair by retrying the invalidation step alone, it is idempotent.
    """
    category = "partial_failure"
    exit_code = 12
    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        server_name: Optional[str] = None,
        secret_rotated: bool = True,
        sessions_invalidated: bool = False,
    ):
        super().__init__(message, server_name=server_name)
        self.secret_rotated = secret_rotated
        self.sessions_invalidated = sessions_invalidated


class CredentialReuse(BrokerError):
    """New credential material was used within the rotation history window."""
    category = "credential_reuse"
    exit_code = 13


class InvalidServerName(BrokerError, ValueError):
    category = "invalid_server_name"
    exit_code = 14


class MalformedSecret(BrokerError):
    """The remote payload lacks required credential fields."""
    category = "malformed_secret"
    exit_code = 15
