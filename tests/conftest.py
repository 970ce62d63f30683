"""Shared fixtures: in-memory secret store, controllable clock, temp session dir."""
import threading

import orjson
import pytest
from botocore.exceptions import ClientError

from credential_broker.broker import CredentialBroker
from credential_broker.conf import BrokerConfig
from credential_broker.secret_store import SecretStoreClient
from credential_broker.sessions import SessionStore

START = 1_700_000_000.0


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeSecretsManager:
    """In-memory stand-in for the boto3 ``secretsmanager`` client."""

    def __init__(self):
        self.secrets: dict[str, str] = {}
        self.calls: list[str] = []
        self.fail: dict[str, str] = {}
        self._lock = threading.Lock()

    def seed(self, name: str, payload: dict) -> None:
        self.secrets[name] = orjson.dumps(payload).decode("utf-8")

    def payload(self, name: str) -> dict:
        return orjson.loads(self.secrets[name])

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        code = self.fail.get(operation)
        if code:
            raise client_error(code, operation)

    def describe_secret(self, SecretId):
        self._check("describe_secret")
        if SecretId not in self.secrets:
            raise client_error("ResourceNotFoundException", "DescribeSecret")
        return {"ARN": f"arn:aws:secretsmanager:::secret:{SecretId}", "Name": SecretId}

    def get_secret_value(self, SecretId):
        self._check("get_secret_value")
        with self._lock:
            if SecretId not in self.secrets:
                raise client_error("ResourceNotFoundException", "GetSecretValue")
            return {"Name": SecretId, "SecretString": self.secrets[SecretId]}

    def create_secret(self, Name, SecretString, ClientRequestToken=None, Description=None):
        self._check("create_secret")
        with self._lock:
            if Name in self.secrets:
                raise client_error("ResourceExistsException", "CreateSecret")
            self.secrets[Name] = SecretString
        return {"Name": Name}

    def put_secret_value(self, SecretId, SecretString, ClientRequestToken=None):
        self._check("put_secret_value")
        with self._lock:
            if SecretId not in self.secrets:
                raise client_error("ResourceNotFoundException", "PutSecretValue")
            self.secrets[SecretId] = SecretString
        return {"Name": SecretId}


class FakeSTS:
    def __init__(self, arn: str = "arn:aws:iam::123456789012:user/ops", error: str = ""):
        self.arn = arn
        self.error = error

    def get_caller_identity(self):
        if self.error:
            raise client_error(self.error, "GetCallerIdentity")
        return {"Arn": self.arn, "Account": "123456789012", "UserId": "AIDA"}


class Clock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config(tmp_path):
    return BrokerConfig(session_dir=tmp_path / "sessions", lock_timeout=5.0)


@pytest.fixture
def fake_sm():
    sm = FakeSecretsManager()
    sm.seed("onprem-server/web-server-01", {
        "username": "admin",
        "password": "securepassword123",
        "server_type": "linux",
        "created": "2024-01-01T00:00:00Z",
        "rotation_required": True,
        "owner": "platform-team",
    })
    return sm


@pytest.fixture
def secret_client(config, fake_sm, clock):
    return SecretStoreClient(config, client=fake_sm, sts_client=FakeSTS(), clock=clock)


@pytest.fixture
def session_store(config, clock):
    return SessionStore.from_config(config, clock=clock)


@pytest.fixture
def broker(config, secret_client, session_store, clock):
    return CredentialBroker(
        config, secrets=secret_client, sessions=session_store, clock=clock
    )


@pytest.fixture
def sts_factory():
    return FakeSTS
