"""
Broker Configuration — validated settings loaded from the environment.

Reads the following environment variables (all optional):
    BROKER_SESSION_DIR         = <directory for persisted sessions>
    BROKER_SECRET_PREFIX       = <prefix of remote secret ids>
    AWS_REGION                 = <region of the secret store>
    BROKER_DEFAULT_DURATION    = <seconds>
    BROKER_MAX_DURATION        = <seconds>
    BROKER_STORE_TIMEOUT       = <seconds>
    BROKER_STORE_MAX_ATTEMPTS  = <integer>
    BROKER_LOCK_TIMEOUT        = <seconds>
    BROKER_PASSWORD_LENGTH     = <integer>
    BROKER_ROTATION_HISTORY    = <integer>

Security Note:
    The session directory holds plaintext passwords. It defaults to a
    user-private state directory, never to a shared temp path.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("credential_broker.conf")

DEFAULT_SECRET_PREFIX = "onprem-server/"
DEFAULT_DURATION = 3600
MAX_DURATION = 86400


def default_session_dir() -> Path:
    """Return the user-private directory used for persisted sessions.

    Honors ``XDG_STATE_HOME``; falls back to ``~/.local/state``.
    """
    base = os.environ.get("XDG_STATE_HOME")
    root = Path(base) if base else Path.home() / ".local" / "state"
    return root / "credential-broker" / "sessions"


class BrokerConfig(BaseModel):
    """Validated broker configuration."""

    session_dir: Path = Field(default_factory=default_session_dir)
    secret_prefix: str = Field(default=DEFAULT_SECRET_PREFIX)
    aws_region: str = Field(default="us-east-1")
    default_duration: int = Field(default=DEFAULT_DURATION, ge=1)
    max_duration: int = Field(default=MAX_DURATION, ge=1)
    store_timeout: float = Field(default=10.0, gt=0)
    store_max_attempts: int = Field(default=3, ge=1, le=10)
    lock_timeout: float = Field(default=10.0, gt=0)
    password_length: int = Field(default=32, ge=16, le=128)
    rotation_history: int = Field(default=5, ge=0, le=24)

    @field_validator("session_dir")
    @classmethod
    def expand_session_dir(cls, v: Path) -> Path:
        """Expand ``~`` so the location does not depend on the cwd."""
        return Path(v).expanduser()

    @field_validator("secret_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if v and not v.endswith("/"):
            raise ValueError(f"secret_prefix must end with '/': {v!r}")
        return v

    @model_validator(mode="after")
    def validate_durations(self) -> "BrokerConfig":
        """Ensure the default session duration is allowed by policy."""
        if self.default_duration > self.max_duration:
            raise ValueError(
                f"default_duration {self.default_duration} exceeds "
                f"max_duration {self.max_duration}"
            )
        return self

    def secret_id(self, server_name: str) -> str:
        """Remote secret id for a logical server name."""
        return f"{self.secret_prefix}{server_name}"

    @classmethod
    def from_env(cls, **overrides) -> "BrokerConfig":
        """Create BrokerConfig by loading values from environment.

        Keyword overrides win over the environment.

        Returns:
            Populated BrokerConfig instance.
        """
        env = os.environ
        values = {
            "session_dir": env.get("BROKER_SESSION_DIR"),
            "secret_prefix": env.get("BROKER_SECRET_PREFIX"),
            "aws_region": env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
            "default_duration": env.get("BROKER_DEFAULT_DURATION"),
            "max_duration": env.get("BROKER_MAX_DURATION"),
            "store_timeout": env.get("BROKER_STORE_TIMEOUT"),
            "store_max_attempts": env.get("BROKER_STORE_MAX_ATTEMPTS"),
            "lock_timeout": env.get("BROKER_LOCK_TIMEOUT"),
            "password_length": env.get("BROKER_PASSWORD_LENGTH"),
            "rotation_history": env.get("BROKER_ROTATION_HISTORY"),
        }
        values.update(overrides)
        values = {k: v for k, v in values.items() if v is not None}
        config = cls(**values)
        logger.debug(
            "Loaded broker config: session_dir=%s prefix=%s region=%s",
            config.session_dir, config.secret_prefix, config.aws_region,
        )
        return config
