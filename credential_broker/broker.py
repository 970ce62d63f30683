"""
CredentialBroker — wires the session lifecycle components together.

Flows:
    retrieve:  SecretStoreClient.fetch -> TokenIssuer.issue -> SessionStore.save
    current:   SessionStore.find_latest -> SessionValidator.validate
    rotate:    RotationCoordinator.rotate (store write, then invalidate)
"""
import time
import logging
from pathlib import Path
from typing import Callable, Optional

from .conf import BrokerConfig
from .issuer import TokenIssuer
from .models import Secret, Session
from .rotation import RotationCoordinator, RotationResult
from .secret_store import SecretStoreClient
from .sessions import SessionStore
from .validator import SessionValidator, Validation

logger = logging.getLogger("credential_broker.broker")


class CredentialBroker:
    """Credential broker bound to one secret store and one session store."""

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        secrets: Optional[SecretStoreClient] = None,
        sessions: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or BrokerConfig.from_env()
        self._clock = clock
        self.secrets = secrets or SecretStoreClient(self.config, clock=clock)
        self.sessions = sessions or SessionStore.from_config(self.config, clock=clock)
        self.issuer = TokenIssuer(max_duration=self.config.max_duration, clock=clock)
        self.validator = SessionValidator(self.sessions, clock=clock)
        self.rotation = RotationCoordinator(
            self.secrets,
            self.sessions,
            password_length=self.config.password_length,
            history_depth=self.config.rotation_history,
            clock=clock,
        )

    def retrieve(self, server_name: str, duration: Optional[int] = None) -> Session:
        """Fetch the server secret, issue a session and persist it.

        The issuance time is taken before the fetch, so a session whose
        secret read may predate a concurrent rotation is revoked by it.
        """
        duration = self.config.default_duration if duration is None else duration
        self.issuer.check_duration(duration)
        requested_at = self._clock()
        secret = self.secrets.fetch(server_name)
        session = self.issuer.issue(secret, duration, now=requested_at)
        self.sessions.save(session)
        logger.info(
            "Issued session %s for %s, expires in %ds",
            session.short_id, server_name, duration,
        )
        return session

    def session_path(self, session: Session) -> Path:
        return self.sessions.path_for(session)

    def current(self, server_name: str) -> tuple[Session, Validation]:
        """Latest active session of a server and its validation.

        Raises:
            SessionNotFound: No active session; issue a new one.
        """
        session = self.sessions.find_latest(server_name)
        return session, self.validator.validate(session)

    def check_token_file(self, path: Path) -> tuple[Session, Validation]:
        """Validate an explicit session file."""
        session = self.sessions.load(path)
        return session, self.validator.validate(session)

    def rotate(
        self,
        server_name: str,
        password: Optional[str] = None,
        username: Optional[str] = None,
        force: bool = False,
    ) -> RotationResult:
        return self.rotation.rotate(
            server_name, password=password, username=username, force=force
        )

    def repair(self, server_name: str) -> int:
        return self.rotation.repair(server_name)

    def provision(
        self,
        server_name: str,
        username: str,
        password: str,
        server_type: str = "linux",
    ) -> Secret:
        return self.secrets.provision(server_name, username, password, server_type)

    def purge(self, retention: float = 0.0) -> dict[str, int]:
        return self.sessions.purge(retention=retention)
