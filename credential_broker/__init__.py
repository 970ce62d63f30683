"""Credential Broker — short-lived sessions for on-prem servers.

Security Note (Threat Model):
    Session records hold plaintext passwords on local disk. They are
    protected only by filesystem permissions (0700 directory, 0600 files);
    encryption at rest is left to the host.
"""
from .version import __version__
from .conf import BrokerConfig
from .exceptions import (
    BrokerError,
    NotFound,
    SecretNotFound,
    SessionNotFound,
    AccessDenied,
    StoreUnavailable,
    Conflict,
    InvalidDuration,
    SessionExpired,
    SessionRevoked,
    MalformedSession,
    MalformedSecret,
    PersistenceError,
    PartialFailure,
    CredentialReuse,
    InvalidServerName,
)
from .models import Secret, Session, ServerType, SessionStatus
from .secret_store import AuditEvent, SecretStoreClient
from .issuer import TokenIssuer, new_session_id
from .sessions import SessionStore
from .validator import Outcome, SessionValidator, Validation
from .rotation import RotationCoordinator, RotationResult
from .render import OutputFormat, render
from .broker import CredentialBroker

__all__ = [
    "__version__",
    "BrokerConfig",
    "BrokerError",
    "NotFound",
    "SecretNotFound",
    "SessionNotFound",
    "AccessDenied",
    "StoreUnavailable",
    "Conflict",
    "InvalidDuration",
    "SessionExpired",
    "SessionRevoked",
    "MalformedSession",
    "MalformedSecret",
    "PersistenceError",
    "PartialFailure",
    "CredentialReuse",
    "InvalidServerName",
    "Secret",
    "Session",
    "ServerType",
    "SessionStatus",
    "AuditEvent",
    "SecretStoreClient",
    "TokenIssuer",
    "new_session_id",
    "SessionStore",
    "Outcome",
    "SessionValidator",
    "Validation",
    "RotationCoordinator",
    "RotationResult",
    "OutputFormat",
    "render",
    "CredentialBroker",
]
