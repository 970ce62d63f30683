"""
Broker data model — remote Secrets and locally issued Sessions.

A :class:`Secret` mirrors the JSON payload held by the remote store.
A :class:`Session` is a time-bounded snapshot of a Secret; its persisted
form is the session artifact consumed by other invocations:

    username, password, server_type, session_token,
    token_expiry (epoch seconds), generated_at (ISO-8601 UTC)

plus the bookkeeping keys ``server_name``, ``status``, ``issued_at`` and
``expires_at``.

Security Note:
    Passwords are excluded from ``repr()``. Never log them.
"""
import re
import logging
from enum import Enum
from typing import Any, Optional, Union
from collections.abc import Mapping
from datetime import datetime, timezone

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import InvalidServerName, MalformedSession

logger = logging.getLogger("credential_broker.models")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_SERVER_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")

# payload keys owned by Secret; anything else passes through untouched
_SECRET_KEYS = frozenset({
    "username", "password", "server_type", "created", "rotation_required"
})


def validate_server_name(server_name: str) -> str:
    """Validate a logical server name.

    Server names become path components of the session directory, so they
    are restricted to letters, digits, ``.``, ``_`` and ``-``.

    Raises:
        InvalidServerName: If the name is empty or has other characters.
    """
    if not server_name or not _SERVER_NAME.match(server_name):
        raise InvalidServerName(
            f"Invalid server name: {server_name!r}",
            server_name=server_name,
        )
    return server_name


def format_timestamp(value: float) -> str:
    """Epoch seconds -> ``2024-01-31T10:00:00Z``."""
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime(ISO_FORMAT)


def parse_timestamp(value: Union[str, int, float]) -> datetime:
    """Parse an ISO-8601 timestamp or epoch seconds; naive values are UTC.

    Raises:
        ValueError: If the value is neither.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError) as err:
            raise ValueError(f"Timestamp out of range: {value!r}") from err
    if not isinstance(value, str):
        raise ValueError(f"Not a timestamp: {value!r}")
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ServerType(str, Enum):
    LINUX = "linux"
    WINDOWS = "windows"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value: object) -> "ServerType":
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return cls.OTHER


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class Secret(BaseModel):
    """Long-lived credential record for a server, held by the remote store."""

    server_name: str
    username: str
    password: str = Field(repr=False)
    server_type: ServerType = ServerType.LINUX
    created_at: Optional[datetime] = None
    rotation_required: bool = False
    extra: dict[str, Any] = Field(default_factory=dict, repr=False)

    model_config = {"frozen": True}

    @field_validator("server_type", mode="before")
    @classmethod
    def coerce_server_type(cls, v: Any) -> ServerType:
        """Unknown server types map to 'other' instead of failing."""
        return ServerType(v)

    def to_payload(self) -> dict[str, Any]:
        """Flat mapping stored as the remote SecretString."""
        payload = dict(self.extra)
        payload.update({
            "username": self.username,
            "password": self.password,
            "server_type": self.server_type.value,
            "rotation_required": self.rotation_required,
        })
        if self.created_at is not None:
            payload["created"] = self.created_at.astimezone(
                timezone.utc
            ).strftime(ISO_FORMAT)
        return payload

    @classmethod
    def from_payload(cls, server_name: str, payload: Mapping[str, Any]) -> "Secret":
        """Build a Secret from a remote payload.

        An unparseable ``created`` value is dropped with a warning.

        Raises:
            pydantic.ValidationError: If username or password is missing.
        """
        created = payload.get("created")
        created_at = None
        if created:
            try:
                created_at = parse_timestamp(created)
            except ValueError as err:
                logger.warning(
                    "Ignoring invalid created timestamp of %s: %s", server_name, err
                )
        return cls(
            server_name=server_name,
            username=payload.get("username"),
            password=payload.get("password"),
            server_type=payload.get("server_type") or ServerType.LINUX,
            created_at=created_at,
            rotation_required=payload.get("rotation_required", False),
            extra={k: v for k, v in payload.items() if k not in _SECRET_KEYS},
        )


class Session(BaseModel):
    """Short-lived credential handle snapshotting a Secret at issuance.

    ``username`` and ``expires_at`` are optional only so that corrupted
    persisted records can still be loaded and reported as malformed.
    """

    session_id: str
    server_name: str
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    server_type: ServerType = ServerType.LINUX
    issued_at: float
    expires_at: Optional[float] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @field_validator("server_type", mode="before")
    @classmethod
    def coerce_server_type(cls, v: Any) -> ServerType:
        return ServerType(v)

    @property
    def generated_at(self) -> str:
        return format_timestamp(self.issued_at)

    @property
    def token_expiry(self) -> Optional[int]:
        if self.expires_at is None:
            return None
        return int(self.expires_at)

    @property
    def short_id(self) -> str:
        """Truncated session id, safe for logs."""
        return self.session_id[:8]

    def to_artifact(self) -> dict[str, Any]:
        """The exported session mapping rendered by the output formatters."""
        return {
            "username": self.username,
            "password": self.password,
            "server_type": self.server_type.value,
            "session_token": self.session_id,
            "token_expiry": self.token_expiry,
            "generated_at": self.generated_at,
        }

    def to_record(self) -> dict[str, Any]:
        """The persisted mapping: artifact plus bookkeeping fields."""
        record = self.to_artifact()
        record.update({
            "server_name": self.server_name,
            "status": self.status.value,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        })
        return record

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        server_name: Optional[str] = None
    ) -> "Session":
        """Load a persisted record or a bare session artifact.

        Bare artifacts (no ``issued_at``/``expires_at``) fall back to
        ``generated_at`` and ``token_expiry``.

        Raises:
            MalformedSession: If the record cannot identify a session.
        """
        if not isinstance(record, Mapping):
            raise MalformedSession("Session record is not a mapping")
        token = record.get("session_token")
        if not token:
            raise MalformedSession(
                "Session record has no session_token", server_name=server_name
            )
        try:
            issued_at = record.get("issued_at")
            if issued_at is None:
                issued_at = parse_timestamp(record["generated_at"]).timestamp()
            expires_at = record.get("expires_at")
            if expires_at is None:
                expires_at = record.get("token_expiry")
            return cls(
                session_id=token,
                server_name=record.get("server_name") or server_name or "",
                username=record.get("username"),
                password=record.get("password"),
                server_type=record.get("server_type") or ServerType.LINUX,
                issued_at=issued_at,
                expires_at=expires_at,
                status=record.get("status") or SessionStatus.ACTIVE,
            )
        except (KeyError, TypeError, ValueError, ValidationError) as err:
            raise MalformedSession(
                f"Invalid session record: {err}", server_name=server_name
            ) from err
