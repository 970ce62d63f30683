"""
Session Validator — decides whether a stored session is still usable.

Expired and revoked sessions are expected outcomes, not crashes: they are
returned as a :class:`Validation` result. Callers that want an exception
use :meth:`Validation.raise_for_status`.
"""
import time
import logging
from enum import Enum
from typing import Any, Callable, Optional, Union
from collections.abc import Mapping
from dataclasses import dataclass

from .exceptions import (
    BrokerError,
    MalformedSession,
    SessionExpired,
    SessionRevoked,
)
from .models import Session, SessionStatus

logger = logging.getLogger("credential_broker.validator")


class Outcome(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    MALFORMED = "malformed"


_ERRORS = {
    Outcome.EXPIRED: SessionExpired,
    Outcome.REVOKED: SessionRevoked,
    Outcome.MALFORMED: MalformedSession,
}


@dataclass(frozen=True)
class Validation:
    """Result of validating a session."""

    outcome: Outcome
    session: Optional[Session] = None
    remaining: float = 0.0
    reason: str = ""

    @property
    def valid(self) -> bool:
        return self.outcome is Outcome.VALID

    @property
    def remaining_minutes(self) -> int:
        return int(self.remaining // 60)

    def raise_for_status(self) -> "Validation":
        """Raise the matching BrokerError unless the session is valid."""
        if self.valid:
            return self
        server_name = self.session.server_name if self.session else None
        raise _ERRORS[self.outcome](self.reason, server_name=server_name)


class SessionValidator:
    """Checks session freshness against the clock.

    When a store is given, active sessions found past their expiry are
    transitioned to ``expired`` so they age out of ``list_active()``.
    """

    def __init__(
        self,
        store: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock

    def validate(self, session: Union[Session, Mapping[str, Any]]) -> Validation:
        """Validate a session or a raw persisted record.

        Returns:
            Validation with outcome VALID (and seconds remaining), EXPIRED,
            REVOKED or MALFORMED.
        """
        if not isinstance(session, Session):
            try:
                session = Session.from_record(session)
            except MalformedSession as err:
                return Validation(Outcome.MALFORMED, reason=str(err))
        if session.expires_at is None:
            return Validation(
                Outcome.MALFORMED, session, reason="Session has no expiry"
            )
        now = self._clock()
        if now >= session.expires_at:
            if session.status is SessionStatus.ACTIVE:
                self._age_out(session)
            return Validation(
                Outcome.EXPIRED, session, reason="Session token has expired"
            )
        if session.status is SessionStatus.REVOKED:
            return Validation(
                Outcome.REVOKED, session,
                reason="Session was revoked by a credential rotation",
            )
        if session.status is SessionStatus.EXPIRED:
            return Validation(
                Outcome.EXPIRED, session, reason="Session token has expired"
            )
        if not session.username or not session.session_id:
            return Validation(
                Outcome.MALFORMED, session, reason="Session has no username"
            )
        return Validation(Outcome.VALID, session, remaining=session.expires_at - now)

    def _age_out(self, session: Session) -> None:
        if self._store is None:
            session.status = SessionStatus.EXPIRED
            return
        try:
            self._store.mark(session, SessionStatus.EXPIRED)
        except BrokerError as err:
            # the next validation or purge retries the transition
            logger.warning(
                "Could not mark session %s of %s expired: %s",
                session.short_id, session.server_name, err,
            )
