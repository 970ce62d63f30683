"""Tests for the CredentialBroker facade, including concurrent rotation."""
import threading
import time

import pytest

from credential_broker.broker import CredentialBroker
from credential_broker.exceptions import (
    InvalidDuration,
    SecretNotFound,
    SessionNotFound,
)
from credential_broker.models import SessionStatus
from credential_broker.secret_store import SecretStoreClient
from credential_broker.sessions import SessionStore
from credential_broker.validator import Outcome

SERVER = "web-server-01"
SECRET_ID = "onprem-server/web-server-01"


class TestRetrieve:
    """Tests for retrieve()."""

    def test_retrieve(self, broker, session_store, clock):
        session = broker.retrieve(SERVER)
        assert session.username == "admin"
        assert session.password == "securepassword123"
        assert session.expires_at == clock() + 3600
        assert session_store.find_latest(SERVER) == session
        assert broker.session_path(session).exists()

    def test_custom_duration(self, broker, clock):
        assert broker.retrieve(SERVER, 7200).expires_at == clock() + 7200

    def test_invalid_duration_does_not_fetch(self, broker, fake_sm):
        with pytest.raises(InvalidDuration):
            broker.retrieve(SERVER, 0)
        assert fake_sm.calls == []

    def test_ghost_server_persists_nothing(self, broker, session_store):
        with pytest.raises(SecretNotFound):
            broker.retrieve("ghost-server")
        assert session_store.servers() == []

    def test_current(self, broker, clock):
        issued = broker.retrieve(SERVER)
        clock.advance(600)
        session, validation = broker.current(SERVER)
        assert session == issued
        assert validation.remaining_minutes == 50

    def test_current_expired(self, broker, session_store, clock):
        broker.retrieve(SERVER, 60)
        clock.advance(120)
        _, validation = broker.current(SERVER)
        assert validation.outcome is Outcome.EXPIRED
        with pytest.raises(SessionNotFound):
            broker.current(SERVER)

    def test_check_token_file(self, broker):
        session = broker.retrieve(SERVER)
        loaded, validation = broker.check_token_file(broker.session_path(session))
        assert loaded.session_id == session.session_id
        assert validation.valid


class TestRotateFlow:
    """Tests for retrieve and rotate in sequence."""

    def test_retrieve_rotate_retrieve(self, broker, fake_sm, clock):
        old = broker.retrieve(SERVER)
        clock.advance(1)
        result = broker.rotate(SERVER)
        clock.advance(1)
        new = broker.retrieve(SERVER)
        password = fake_sm.payload(SECRET_ID)["password"]
        assert result.revoked == 1
        assert new.password == password != old.password
        assert new.status is SessionStatus.ACTIVE
        session, validation = broker.current(SERVER)
        assert session.session_id == new.session_id
        assert validation.valid

    def test_repair_without_failure(self, broker, clock):
        broker.retrieve(SERVER)
        clock.advance(1)
        assert broker.repair(SERVER) == 1
        with pytest.raises(SessionNotFound):
            broker.current(SERVER)

    def test_provision_then_retrieve(self, broker):
        broker.provision("db-server-01", "dbadmin", "dbpassword456", "windows")
        session = broker.retrieve("db-server-01")
        assert session.username == "dbadmin"
        assert session.server_type.value == "windows"

    def test_purge(self, broker, clock):
        broker.retrieve(SERVER, 60)
        clock.advance(120)
        assert broker.purge()["deleted"] == 1


class TestConcurrency:
    """Retrievals racing a rotation on the real clock."""

    def test_no_stale_active_session(self, config, fake_sm):
        secrets = SecretStoreClient(config, client=fake_sm)
        store = SessionStore.from_config(config)
        broker = CredentialBroker(config, secrets=secrets, sessions=store)
        old_password = "securepassword123"
        start = threading.Barrier(51)
        errors = []

        def worker():
            start.wait()
            try:
                broker.retrieve(SERVER)
            except Exception as err:  # collected for the assertion below
                errors.append(err)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for thread in threads:
            thread.start()
        start.wait()
        time.sleep(0.001)
        broker.rotate(SERVER)
        for thread in threads:
            thread.join()

        assert errors == []
        new_password = fake_sm.payload(SECRET_ID)["password"]
        watermark = store._watermark(SERVER)
        sessions = store.sessions(SERVER)
        assert len(sessions) == 50
        for session in sessions:
            if session.issued_at <= watermark:
                assert session.status is SessionStatus.REVOKED
            else:
                assert session.status is SessionStatus.ACTIVE
                assert session.password == new_password
            if session.password == old_password:
                assert session.status is SessionStatus.REVOKED
