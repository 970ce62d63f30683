"""
Session Store — durable, file-backed persistence of issued sessions.

Layout under the store root (directories 0700, files 0600)::

    <root>/<server_name>/.lock                       per-server lock
    <root>/<server_name>/.revoked                    revocation watermark
    <root>/<server_name>/<issued_ns>-<session>.json  one record per session

Records are written atomically (temp file + ``os.replace``), so readers
never take the lock. Writers for one server serialize on its lock; writers
for different servers never contend.

The revocation watermark is the time of the latest ``invalidate``. A session
saved with ``issued_at`` at or before the watermark is persisted as revoked,
whatever order a racing save and invalidate reach the lock in.

Security Note:
    Records hold plaintext passwords. Never log record contents.
"""
import os
import time
import uuid
import logging
from pathlib import Path
from typing import Any, Callable, Optional
from collections.abc import Iterator

import orjson

from .conf import BrokerConfig
from .exceptions import BrokerError, MalformedSession, PersistenceError, SessionNotFound
from .locks import file_lock
from .models import Session, SessionStatus, validate_server_name

logger = logging.getLogger("credential_broker.sessions")

LOCK_FILE = ".lock"
WATERMARK_FILE = ".revoked"
RECORD_SUFFIX = ".json"


class ActiveSessions:
    """Finite, re-iterable view over persisted active sessions.

    Each iteration rescans the store; it is not a live cursor.
    """

    def __init__(self, store: "SessionStore", server_name: Optional[str] = None):
        self._store = store
        self._server_name = server_name

    def __iter__(self) -> Iterator[Session]:
        if self._server_name is not None:
            servers = [self._server_name]
        else:
            servers = self._store.servers()
        for server_name in servers:
            for session in self._store.sessions(server_name):
                if session.status is SessionStatus.ACTIVE:
                    yield session

    def __repr__(self) -> str:
        return f"<ActiveSessions root={self._store.root} server={self._server_name}>"


class SessionStore:
    """Persists sessions keyed by (server name, issuance time)."""

    def __init__(
        self,
        root: Path,
        lock_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root).expanduser()
        self.lock_timeout = lock_timeout
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: BrokerConfig,
        clock: Callable[[], float] = time.time
    ) -> "SessionStore":
        return cls(config.session_dir, lock_timeout=config.lock_timeout, clock=clock)

    def __repr__(self) -> str:
        return f"<SessionStore root={self.root}>"

    # ------------------------------------------------------------------
    # Paths and locking
    # ------------------------------------------------------------------

    def _server_dir(self, server_name: str, create: bool = False) -> Path:
        validate_server_name(server_name)
        path = self.root / server_name
        if create:
            try:
                self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
                path.mkdir(mode=0o700, exist_ok=True)
            except OSError as err:
                raise PersistenceError(
                    f"Cannot create session directory {path}: {err}",
                    server_name=server_name,
                ) from err
        return path

    def lock(self, server_name: str):
        """Context manager holding the per-server lock."""
        path = self._server_dir(server_name, create=True) / LOCK_FILE
        return file_lock(path, self.lock_timeout, server_name=server_name)

    def path_for(self, session: Session) -> Path:
        """Record path of a session."""
        issued_ns = int(round(session.issued_at * 1_000_000_000))
        return (
            self._server_dir(session.server_name)
            / f"{issued_ns:020d}-{session.session_id}{RECORD_SUFFIX}"
        )

    # ------------------------------------------------------------------
    # Record I/O
    # ------------------------------------------------------------------

    def _write(self, path: Path, record: dict[str, Any], server_name: str) -> None:
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        data = orjson.dumps(record)
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            try:
                os.write(fd, data)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp, path)
        except OSError as err:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            raise PersistenceError(
                f"Cannot write session record {path.name}: {err}",
                server_name=server_name,
            ) from err

    def _read(self, path: Path, server_name: Optional[str] = None) -> Session:
        try:
            data = path.read_bytes()
        except OSError as err:
            raise PersistenceError(
                f"Cannot read session record {path}: {err}",
                server_name=server_name,
            ) from err
        try:
            record = orjson.loads(data)
        except orjson.JSONDecodeError as err:
            raise MalformedSession(
                f"Session record {path.name} is not valid JSON",
                server_name=server_name,
            ) from err
        return Session.from_record(record, server_name=server_name)

    def _record_paths(self, server_dir: Path) -> list[Path]:
        try:
            return sorted(
                p for p in server_dir.iterdir()
                if p.suffix == RECORD_SUFFIX and not p.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        except OSError as err:
            raise PersistenceError(
                f"Cannot list session directory {server_dir}: {err}"
            ) from err

    def _iter_records(self, server_name: str) -> Iterator[tuple[Path, Session]]:
        """Yield (path, session) pairs, skipping unreadable records."""
        server_dir = self._server_dir(server_name)
        for path in self._record_paths(server_dir):
            try:
                yield path, self._read(path, server_name)
            except MalformedSession as err:
                logger.warning("Skipping corrupt session record %s: %s", path.name, err)
            except PersistenceError as err:
                # removed by a concurrent purge between listing and reading
                if path.exists():
                    raise
                logger.debug("Session record vanished: %s (%s)", path.name, err)

    def _watermark(self, server_name: str) -> Optional[float]:
        path = self._server_dir(server_name) / WATERMARK_FILE
        try:
            return float(path.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as err:
            raise PersistenceError(
                f"Cannot read revocation watermark of {server_name}: {err}",
                server_name=server_name,
            ) from err

    def _set_watermark(self, server_name: str, value: float) -> None:
        path = self._server_dir(server_name) / WATERMARK_FILE
        tmp = path.with_name(f"{WATERMARK_FILE}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(repr(value))
            os.replace(tmp, path)
        except OSError as err:
            raise PersistenceError(
                f"Cannot write revocation watermark of {server_name}: {err}",
                server_name=server_name,
            ) from err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def servers(self) -> list[str]:
        """Server names with a session directory."""
        try:
            return sorted(
                p.name for p in self.root.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        except OSError as err:
            raise PersistenceError(f"Cannot list {self.root}: {err}") from err

    def save(self, session: Session) -> Session:
        """Persist a newly issued session.

        Sessions issued at or before the server's revocation watermark are
        stored as revoked; ``session.status`` is updated to match.

        Returns:
            The session as persisted.

        Raises:
            PersistenceError: On I/O failure or lock timeout.
        """
        server_name = session.server_name
        with self.lock(server_name):
            watermark = self._watermark(server_name)
            if (
                session.status is SessionStatus.ACTIVE
                and watermark is not None
                and session.issued_at <= watermark
            ):
                logger.info(
                    "Session %s for %s predates revocation, saving as revoked",
                    session.short_id, server_name,
                )
                session.status = SessionStatus.REVOKED
            self._write(self.path_for(session), session.to_record(), server_name)
        logger.debug("Saved session %s for %s", session.short_id, server_name)
        return session

    def sessions(self, server_name: str) -> list[Session]:
        """All readable sessions of a server, most recently issued first."""
        found = [session for _, session in self._iter_records(server_name)]
        found.sort(key=lambda s: s.issued_at, reverse=True)
        return found

    def find_latest(self, server_name: str) -> Session:
        """Most recently issued active session of a server.

        Raises:
            SessionNotFound: If no active session exists, even when expired
                or revoked ones do.
        """
        for session in self.sessions(server_name):
            if session.status is SessionStatus.ACTIVE:
                return session
        raise SessionNotFound(
            f"No active session for {server_name}", server_name=server_name
        )

    def list_active(self, server_name: Optional[str] = None) -> ActiveSessions:
        """Re-iterable view of active sessions, optionally for one server."""
        if server_name is not None:
            validate_server_name(server_name)
        return ActiveSessions(self, server_name)

    def invalidate(self, server_name: str) -> int:
        """Revoke every active session of a server. Idempotent.

        Also advances the revocation watermark so that in-flight saves of
        sessions issued before this call are stored revoked.

        Returns:
            Number of sessions transitioned to revoked.
        """
        count = 0
        with self.lock(server_name):
            now = self._clock()
            watermark = self._watermark(server_name)
            self._set_watermark(server_name, max(now, watermark or now))
            for path, session in self._iter_records(server_name):
                if session.status is not SessionStatus.ACTIVE:
                    continue
                session.status = SessionStatus.REVOKED
                self._write(path, session.to_record(), server_name)
                count += 1
        logger.info("Revoked %d session(s) for %s", count, server_name)
        return count

    def mark(self, session: Session, status: SessionStatus) -> bool:
        """Move a persisted active session to a terminal status.

        Terminal records are never rewritten, so sessions are never
        reactivated.

        Returns:
            True if the record transitioned, False otherwise.
        """
        status = SessionStatus(status)
        if not status.terminal:
            raise ValueError("Sessions can only transition to a terminal status")
        path = self.path_for(session)
        with self.lock(session.server_name):
            if not path.exists():
                return False
            current = self._read(path, session.server_name)
            if current.status.terminal:
                session.status = current.status
                return False
            current.status = status
            self._write(path, current.to_record(), session.server_name)
        session.status = status
        logger.debug(
            "Session %s for %s marked %s",
            session.short_id, session.server_name, status.value,
        )
        return True

    def load(self, path: Path) -> Session:
        """Load a single record file, full record or bare artifact.

        Raises:
            PersistenceError: The file cannot be read.
            MalformedSession: The content is not a session.
        """
        path = Path(path).expanduser()
        if not path.is_file():
            raise PersistenceError(f"Token file not found: {path}")
        return self._read(path)

    def purge(self, retention: float = 0.0) -> dict[str, int]:
        """Best-effort removal of expired and revoked session records.

        Active records past their expiry are first marked expired. Terminal
        records are deleted once ``retention`` seconds past their expiry.
        The server lock is held for one record at a time. Failures are
        logged and counted, never raised.

        Returns:
            Stats dict with keys: total, expired, deleted, errors.
        """
        stats = {"total": 0, "expired": 0, "deleted": 0, "errors": 0}
        try:
            servers = self.servers()
        except PersistenceError as err:
            logger.error("Session purge aborted: %s", err)
            stats["errors"] += 1
            return stats
        for server_name in servers:
            try:
                paths = self._record_paths(self._server_dir(server_name))
            except BrokerError as err:
                logger.error("Cannot scan sessions of %s: %s", server_name, err)
                stats["errors"] += 1
                continue
            for path in paths:
                stats["total"] += 1
                try:
                    self._purge_record(server_name, path, retention, stats)
                except (BrokerError, OSError) as err:
                    logger.error(
                        "Error purging session record %s/%s: %s",
                        server_name, path.name, err,
                    )
                    stats["errors"] += 1
        logger.info("Session purge complete: %s", stats)
        return stats

    def _purge_record(
        self,
        server_name: str,
        path: Path,
        retention: float,
        stats: dict[str, int]
    ) -> None:
        with self.lock(server_name):
            if not path.exists():
                return
            session = self._read(path, server_name)
            now = self._clock()
            ends_at = session.expires_at if session.expires_at is not None else session.issued_at
            if session.status is SessionStatus.ACTIVE:
                if now < ends_at:
                    return
                session.status = SessionStatus.EXPIRED
                self._write(path, session.to_record(), server_name)
                stats["expired"] += 1
            if now >= ends_at + retention:
                path.unlink()
                stats["deleted"] += 1
