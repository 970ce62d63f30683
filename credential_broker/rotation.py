"""
Rotation Coordinator — replaces a server credential and revokes its sessions.

Rotation runs in two steps:

1. write the new secret to the remote store
2. revoke the server's outstanding sessions in the local store

If step 1 succeeds and step 2 fails the secret is rotated but stale sessions
are still marked usable. This is surfaced as :class:`PartialFailure`;
``repair()`` retries step 2 alone, which is idempotent.

Reuse window:
    The remote payload keeps ``password_history``, a comma separated list of
    fingerprints of previous passwords (see :mod:`credential_broker.crypto`).
    Caller-supplied material matching the current password or any
    fingerprint is refused unless ``force=True``.

Security Note:
    Never log credential material. Only server names and counts.
"""
import time
import logging
from typing import Callable, Optional
from dataclasses import dataclass
from datetime import datetime, timezone

from . import crypto
from .exceptions import BrokerError, CredentialReuse, PartialFailure
from .models import Secret
from .secret_store import SecretStoreClient
from .sessions import SessionStore

logger = logging.getLogger("credential_broker.rotation")

HISTORY_KEY = "password_history"


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a completed rotation."""

    server_name: str
    revoked: int
    generated: bool
    rotated_at: float


def _history(secret: Secret) -> list[str]:
    raw = secret.extra.get(HISTORY_KEY) or ""
    return [fp for fp in str(raw).split(",") if fp]


class RotationCoordinator:
    """Coordinates secret rotation with local session invalidation."""

    def __init__(
        self,
        secrets: SecretStoreClient,
        sessions: SessionStore,
        password_length: int = 32,
        history_depth: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self._secrets = secrets
        self._sessions = sessions
        self.password_length = password_length
        self.history_depth = history_depth
        self._clock = clock

    def _check_reuse(self, current: Secret, password: str) -> None:
        if password == current.password:
            raise CredentialReuse(
                f"New credential for {current.server_name} equals the current one",
                server_name=current.server_name,
            )
        if self.history_depth and crypto.matches(
            password, current.server_name, _history(current)
        ):
            raise CredentialReuse(
                f"Credential for {current.server_name} was used in the last "
                f"{self.history_depth} rotation(s)",
                server_name=current.server_name,
            )

    def _next_history(self, current: Secret) -> str:
        history = [crypto.fingerprint(current.password, current.server_name)]
        history.extend(fp for fp in _history(current) if fp not in history)
        return ",".join(history[:self.history_depth])

    def rotate(
        self,
        server_name: str,
        password: Optional[str] = None,
        username: Optional[str] = None,
        force: bool = False,
    ) -> RotationResult:
        """Rotate the credential of a server.

        Args:
            server_name: Server whose secret is rotated.
            password: New credential material, generated when omitted.
            username: New username, the current one when omitted.
            force: Skip the reuse window check.

        Returns:
            RotationResult with the number of sessions revoked.

        Raises:
            SecretNotFound: The server has no secret.
            StoreUnavailable, AccessDenied, Conflict: The store write failed;
                nothing changed.
            CredentialReuse: ``password`` was used recently.
            PartialFailure: The secret was rotated but sessions were not
                revoked; call :meth:`repair`.
        """
        current = self._secrets.fetch(server_name)
        generated = password is None
        if generated:
            password = crypto.generate_password(self.password_length)
            while password == current.password:
                password = crypto.generate_password(self.password_length)
        elif force:
            logger.warning("Rotation of %s forced, reuse window skipped", server_name)
        else:
            self._check_reuse(current, password)

        extra = dict(current.extra)
        if self.history_depth:
            extra[HISTORY_KEY] = self._next_history(current)
        else:
            extra.pop(HISTORY_KEY, None)
        rotated_at = self._clock()
        updated = current.model_copy(update={
            "username": username or current.username,
            "password": password,
            "rotation_required": False,
            "created_at": datetime.fromtimestamp(rotated_at, tz=timezone.utc),
            "extra": extra,
        })
        self._secrets.store(updated)
        logger.info("Rotated secret for %s", server_name)

        try:
            revoked = self._sessions.invalidate(server_name)
        except BrokerError as err:
            logger.error(
                "Secret for %s rotated but sessions were not revoked: %s",
                server_name, err,
            )
            raise PartialFailure(
                f"Secret for {server_name} rotated but session invalidation "
                f"failed: {err}. Run the invalidation again.",
                server_name=server_name,
                secret_rotated=True,
                sessions_invalidated=False,
            ) from err
        return RotationResult(
            server_name=server_name,
            revoked=revoked,
            generated=generated,
            rotated_at=rotated_at,
        )

    def repair(self, server_name: str) -> int:
        """Retry the invalidation step after a PartialFailure.

        Returns:
            Number of sessions revoked.
        """
        revoked = self._sessions.invalidate(server_name)
        logger.info("Repaired rotation of %s: %d session(s) revoked", server_name, revoked)
        return revoked
