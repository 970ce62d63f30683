"""
Secret Store Client — AWS Secrets Manager access by logical server name.

Provides:
- ``fetch(server_name)`` — read and decode the current secret
- ``store(secret, update=False)`` — create-or-overwrite keyed by server name
- ``exists(server_name)`` — describe without reading the value
- ``provision(...)`` — first-time provisioning of a server credential
- ``check_identity()`` — verify the caller identity (STS)

Every fetch/store is audited: subscribers receive an :class:`AuditEvent`
and the outcome is logged.

Security Note:
    Never log secret values. Only server names, operations and outcomes.
"""
import time
import uuid
import logging
from typing import Any, Callable, Optional
from dataclasses import dataclass, field
from contextlib import contextmanager
from datetime import datetime, timezone

import boto3
import orjson
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)
from pydantic import ValidationError

from .conf import BrokerConfig
from .exceptions import (
    AccessDenied,
    BrokerError,
    Conflict,
    MalformedSecret,
    SecretNotFound,
    StoreUnavailable,
)
from .models import Secret, ServerType, parse_timestamp, validate_server_name

logger = logging.getLogger("credential_broker.secret_store")

_NOT_FOUND_CODES = frozenset({"ResourceNotFoundException"})
_ACCESS_DENIED_CODES = frozenset({
    "AccessDeniedException",
    "AccessDenied",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "DecryptionFailure",
})
_CONFLICT_CODES = frozenset({
    "ResourceExistsException",
    "InvalidRequestException",
    "PreconditionNotMetException",
})


@dataclass(frozen=True)
class AuditEvent:
    """Outcome of a single secret store operation."""

    operation: str
    server_name: str
    timestamp: float
    outcome: str = "success"
    error: Optional[str] = field(default=None)

    @property
    def success(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "server_name": self.server_name,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "error": self.error,
        }


def translate_error(err: Exception, server_name: str) -> BrokerError:
    """Map a botocore failure onto the broker error taxonomy."""
    if isinstance(err, ClientError):
        code = err.response.get("Error", {}).get("Code", "")
        message = f"{code} for {server_name}: {err}"
        if code in _NOT_FOUND_CODES:
            return SecretNotFound(
                f"No secret for server {server_name}", server_name=server_name
            )
        if code in _ACCESS_DENIED_CODES:
            return AccessDenied(message, server_name=server_name)
        if code in _CONFLICT_CODES:
            return Conflict(message, server_name=server_name)
        return StoreUnavailable(message, server_name=server_name)
    if isinstance(err, (NoCredentialsError, PartialCredentialsError)):
        return AccessDenied(
            f"AWS credentials not configured: {err}", server_name=server_name
        )
    return StoreUnavailable(
        f"Secret store unreachable for {server_name}: {err}",
        server_name=server_name,
    )


class SecretStoreClient:
    """Reads and writes server credentials in AWS Secrets Manager.

    The remote secret id is ``config.secret_prefix + server_name``; the
    secret value is a flat JSON object (see :meth:`Secret.to_payload`).
    Concurrency is left to the remote store: last write wins, and a
    create racing another create surfaces as :class:`Conflict`.
    """

    def __init__(
        self,
        config: BrokerConfig,
        client: Any = None,
        sts_client: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._client = client
        self._sts = sts_client
        self._clock = clock
        self._subscribers: list[Callable[[AuditEvent], None]] = []

    # ------------------------------------------------------------------
    # AWS clients
    # ------------------------------------------------------------------

    def _boto_config(self) -> BotoConfig:
        return BotoConfig(
            connect_timeout=self._config.store_timeout,
            read_timeout=self._config.store_timeout,
            retries={
                "max_attempts": self._config.store_max_attempts,
                "mode": "standard",
            },
        )

    def _get_client(self) -> Any:
        """Get or create the Secrets Manager client."""
        if self._client is None:
            self._client = boto3.client(
                "secretsmanager",
                region_name=self._config.aws_region,
                config=self._boto_config(),
            )
        return self._client

    def _get_sts(self) -> Any:
        if self._sts is None:
            self._sts = boto3.client(
                "sts",
                region_name=self._config.aws_region,
                config=self._boto_config(),
            )
        return self._sts

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[AuditEvent], None]) -> None:
        """Register a callback receiving every :class:`AuditEvent`."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[AuditEvent], None]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def _emit(self, event: AuditEvent) -> None:
        level = logging.INFO if event.success else logging.WARNING
        logger.log(
            level,
            "Secret store %s server=%s outcome=%s",
            event.operation, event.server_name, event.outcome,
        )
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as err:  # subscriber failures never propagate
                logger.error(
                    "Audit subscriber %r failed: %s", callback, err
                )

    @contextmanager
    def _audited(self, operation: str, server_name: str):
        try:
            yield
        except BrokerError as exc:
            self._emit(AuditEvent(
                operation=operation,
                server_name=server_name,
                timestamp=self._clock(),
                outcome=exc.category,
                error=str(exc),
            ))
            raise
        self._emit(AuditEvent(
            operation=operation,
            server_name=server_name,
            timestamp=self._clock(),
        ))

    # ------------------------------------------------------------------
    # Low level helpers
    # ------------------------------------------------------------------

    def _call(self, method: str, server_name: str, **kwargs) -> dict:
        """Invoke a Secrets Manager API, translating botocore failures."""
        try:
            return getattr(self._get_client(), method)(**kwargs)
        except (ClientError, BotoCoreError) as err:
            raise translate_error(err, server_name) from err

    def _exists(self, server_name: str) -> bool:
        try:
            self._call(
                "describe_secret",
                server_name,
                SecretId=self._config.secret_id(server_name),
            )
        except SecretNotFound:
            return False
        return True

    def _read_payload(self, server_name: str) -> dict[str, Any]:
        response = self._call(
            "get_secret_value",
            server_name,
            SecretId=self._config.secret_id(server_name),
        )
        raw = response.get("SecretString")
        if raw is None:
            raise MalformedSecret(
                f"Secret for {server_name} has no string value",
                server_name=server_name,
            )
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise MalformedSecret(
                f"Secret for {server_name} is not valid JSON",
                server_name=server_name,
            ) from err
        if not isinstance(payload, dict):
            raise MalformedSecret(
                f"Secret for {server_name} is not a JSON object",
                server_name=server_name,
            )
        return payload

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, server_name: str) -> Secret:
        """Fetch the current secret of a server.

        Raises:
            SecretNotFound: No secret exists for the server.
            AccessDenied: The caller lacks permission.
            StoreUnavailable: The store could not be reached in time.
            MalformedSecret: The payload lacks username/password.
        """
        validate_server_name(server_name)
        with self._audited("fetch", server_name):
            payload = self._read_payload(server_name)
            try:
                return Secret.from_payload(server_name, payload)
            except (ValidationError, ValueError, TypeError) as err:
                raise MalformedSecret(
                    f"Secret for {server_name} lacks required fields",
                    server_name=server_name,
                ) from err

    def exists(self, server_name: str) -> bool:
        """Return True when a secret exists for the server."""
        validate_server_name(server_name)
        with self._audited("exists", server_name):
            return self._exists(server_name)

    def store(self, secret: Secret, update: bool = False) -> Secret:
        """Create or overwrite the secret of ``secret.server_name``.

        The previous value is fully replaced. With ``update=True`` the
        ``created`` timestamp of an existing secret is kept; otherwise the
        secret's own ``created_at`` (or now) is written.

        Returns:
            The Secret as written to the store.

        Raises:
            AccessDenied, StoreUnavailable, Conflict
        """
        server_name = validate_server_name(secret.server_name)
        secret_id = self._config.secret_id(server_name)
        with self._audited("store", server_name):
            exists = self._exists(server_name)
            created = secret.created_at
            if exists and update:
                current = self._read_payload(server_name).get("created")
                if isinstance(current, str) and current:
                    created = current
                elif current:
                    try:
                        created = parse_timestamp(current)
                    except ValueError as err:
                        logger.warning(
                            "Not preserving invalid created timestamp of %s: %s",
                            server_name, err,
                        )
            if created is None:
                created = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            if isinstance(created, str):
                payload = secret.to_payload()
                payload["created"] = created
            else:
                payload = secret.model_copy(
                    update={"created_at": created}
                ).to_payload()
            body = orjson.dumps(payload).decode("utf-8")
            token = str(uuid.uuid4())
            if exists:
                self._call(
                    "put_secret_value",
                    server_name,
                    SecretId=secret_id,
                    SecretString=body,
                    ClientRequestToken=token,
                )
            else:
                self._call(
                    "create_secret",
                    server_name,
                    Name=secret_id,
                    SecretString=body,
                    ClientRequestToken=token,
                    Description=f"Credentials for on-prem server {server_name}",
                )
            return Secret.from_payload(server_name, payload)

    def provision(
        self,
        server_name: str,
        username: str,
        password: str,
        server_type: str = "linux",
    ) -> Secret:
        """Write a first-time credential, flagged for rotation.

        An existing secret is overwritten (with a warning).
        """
        if self.exists(server_name):
            logger.warning(
                "Secret for %s already exists, overwriting", server_name
            )
        secret = Secret(
            server_name=server_name,
            username=username,
            password=password,
            server_type=ServerType(server_type),
            created_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            rotation_required=True,
        )
        return self.store(secret)

    def check_identity(self) -> str:
        """Return the caller ARN, verifying that AWS credentials work.

        Raises:
            AccessDenied: Credentials are missing or rejected.
            StoreUnavailable: STS could not be reached.
        """
        try:
            identity = self._get_sts().get_caller_identity()
        except (ClientError, BotoCoreError) as err:
            exc = translate_error(err, "-")
            if isinstance(exc, (SecretNotFound, Conflict)):
                exc = AccessDenied(str(err))
            raise exc from err
        arn = identity.get("Arn", "")
        logger.info("Authenticated as %s", arn)
        return arn
