"""
Token Issuer — derives short-lived Sessions from Secrets.

Session identifiers come from ``uuid4`` (OS random source). If that source
is unavailable the issuer degrades to ``temp-<time_ns>-<counter>`` and logs
a warning every time it does so.
"""
import time
import uuid
import logging
import itertools
import threading
from typing import Callable, Optional

from .exceptions import InvalidDuration
from .models import Secret, Session, SessionStatus

logger = logging.getLogger("credential_broker.issuer")

_fallback_counter = itertools.count(1)
_fallback_lock = threading.Lock()


def new_session_id() -> str:
    """Return a collision-resistant opaque session identifier."""
    try:
        return uuid.uuid4().hex
    except NotImplementedError:
        with _fallback_lock:
            seq = next(_fallback_counter)
        logger.warning(
            "Random source unavailable, using timestamp session id (degraded)"
        )
        return f"temp-{time.time_ns()}-{seq}"


class TokenIssuer:
    """Issues Sessions bounded by a maximum lifetime."""

    def __init__(
        self,
        max_duration: int = 86400,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = new_session_id,
    ):
        if max_duration <= 0:
            raise ValueError("max_duration must be positive")
        self.max_duration = max_duration
        self._clock = clock
        self._new_id = id_factory

    def check_duration(self, duration: int) -> int:
        """Validate a requested duration.

        Raises:
            InvalidDuration: If not a positive integer within the maximum.
        """
        if isinstance(duration, bool) or not isinstance(duration, int):
            raise InvalidDuration(f"Duration must be an integer, got {duration!r}")
        if duration <= 0:
            raise InvalidDuration(f"Duration must be positive, got {duration}")
        if duration > self.max_duration:
            raise InvalidDuration(
                f"Duration {duration}s exceeds maximum of {self.max_duration}s"
            )
        return duration

    def issue(
        self,
        secret: Secret,
        duration: int,
        now: Optional[float] = None
    ) -> Session:
        """Issue a new active Session for ``secret``.

        Args:
            secret: Source secret; copied, never mutated.
            duration: Lifetime in seconds.
            now: Issuance time, defaults to the clock. Callers that fetched
                the secret pass the time captured before the fetch.

        Returns:
            Session with ``expires_at == issued_at + duration``.
        """
        self.check_duration(duration)
        issued_at = self._clock() if now is None else now
        session = Session(
            session_id=self._new_id(),
            server_name=secret.server_name,
            username=secret.username,
            password=secret.password,
            server_type=secret.server_type,
            issued_at=issued_at,
            expires_at=issued_at + duration,
            status=SessionStatus.ACTIVE,
        )
        logger.debug(
            "Issued session %s for %s (%ds)",
            session.short_id, secret.server_name, duration,
        )
        return session
