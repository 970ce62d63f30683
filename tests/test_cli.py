"""Tests for the credential-broker command line."""
import orjson
import pytest
from click.testing import CliRunner

from credential_broker.cli import cli
from credential_broker.render import parse_env, parse_shell
from credential_broker.version import __version__

SERVER = "web-server-01"
SECRET_ID = "onprem-server/web-server-01"


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv("BROKER_PROVISION_PASSWORD", raising=False)
    return CliRunner()


@pytest.fixture
def invoke(runner, broker):
    def run(*args, **kwargs):
        return runner.invoke(cli, list(args), obj=broker, **kwargs)
    return run


def stdout_lines(result, prefix):
    return [line for line in result.output.splitlines() if line.startswith(prefix)]


class TestRetrieve:
    """Tests for the retrieve command."""

    def test_env(self, invoke, session_store):
        result = invoke("retrieve", "-s", SERVER)
        assert result.exit_code == 0, result.output
        assert "Retrieving credentials for: web-server-01" in result.output
        assert "Session data saved to:" in result.output
        assert "USERNAME=admin" in result.output
        assert "PASSWORD=securepassword123" in result.output
        session = session_store.find_latest(SERVER)
        assert f"SESSION_TOKEN={session.session_id}" in result.output

    def test_json(self, invoke, clock):
        result = invoke("retrieve", "--server", SERVER, "--output", "json", "-d", "7200")
        assert result.exit_code == 0, result.output
        start = result.output.index("{")
        end = result.output.rindex("}") + 1
        data = orjson.loads(result.output[start:end])
        assert data["username"] == "admin"
        assert data["token_expiry"] == int(clock() + 7200)

    def test_shell(self, invoke):
        result = invoke("retrieve", "-s", SERVER, "-o", "shell")
        assert result.exit_code == 0, result.output
        exports = "\n".join(stdout_lines(result, "export "))
        assert parse_shell(exports)["password"] == "securepassword123"

    def test_ghost_server(self, invoke):
        result = invoke("retrieve", "-s", "ghost-server")
        assert result.exit_code == 3
        assert "error[not_found]" in result.output

    def test_invalid_duration(self, invoke):
        result = invoke("retrieve", "-s", SERVER, "-d", "100000")
        assert result.exit_code == 7
        assert "error[invalid_duration]" in result.output

    def test_invalid_server_name(self, invoke):
        result = invoke("retrieve", "-s", "../etc")
        assert result.exit_code == 14

    def test_store_unavailable(self, invoke, fake_sm):
        fake_sm.fail["get_secret_value"] = "InternalServiceError"
        result = invoke("retrieve", "-s", SERVER)
        assert result.exit_code == 5

    def test_unknown_format(self, invoke):
        result = invoke("retrieve", "-s", SERVER, "-o", "yaml")
        assert result.exit_code == 2


class TestStatus:
    """Tests for the status command."""

    def test_valid(self, invoke):
        invoke("retrieve", "-s", SERVER)
        result = invoke("status", "-s", SERVER)
        assert result.exit_code == 0, result.output
        assert "Session valid for: 60 minutes" in result.output
        assert "User: admin" in result.output

    def test_expired(self, invoke, clock):
        invoke("retrieve", "-s", SERVER, "-d", "60")
        clock.advance(61)
        result = invoke("status", "-s", SERVER)
        assert result.exit_code == 8
        assert "error[expired]" in result.output

    def test_none_active(self, invoke):
        result = invoke("status", "-s", SERVER)
        assert result.exit_code == 3
        assert "Run: credential-broker retrieve --server web-server-01" in result.output

    def test_token_file_revoked(self, invoke, broker, session_store, clock):
        invoke("retrieve", "-s", SERVER)
        path = broker.session_path(session_store.find_latest(SERVER))
        clock.advance(1)
        invoke("invalidate", "-s", SERVER)
        result = invoke("status", "-t", str(path))
        assert result.exit_code == 9
        assert "error[revoked]" in result.output

    def test_requires_target(self, invoke):
        result = invoke("status")
        assert result.exit_code == 2


class TestAdmin:
    """Tests for rotate, invalidate, provision, purge and whoami."""

    def test_rotate(self, invoke, fake_sm, clock):
        invoke("retrieve", "-s", SERVER)
        clock.advance(1)
        result = invoke("rotate", "-s", SERVER)
        assert result.exit_code == 0, result.output
        assert "1 session(s) revoked" in result.output
        assert fake_sm.payload(SECRET_ID)["password"] != "securepassword123"
        assert fake_sm.payload(SECRET_ID)["password"] not in result.output

    def test_rotate_password_stdin(self, invoke, fake_sm):
        result = invoke("rotate", "-s", SERVER, "--password-stdin", input="N3w-Passw0rd!\n")
        assert result.exit_code == 0, result.output
        assert fake_sm.payload(SECRET_ID)["password"] == "N3w-Passw0rd!"

    def test_rotate_reuse(self, invoke):
        result = invoke(
            "rotate", "-s", SERVER, "--password-stdin", input="securepassword123\n"
        )
        assert result.exit_code == 13
        assert "error[credential_reuse]" in result.output
        forced = invoke(
            "rotate", "-s", SERVER, "--password-stdin", "--force",
            input="securepassword123\n",
        )
        assert forced.exit_code == 0, forced.output

    def test_rotate_ghost(self, invoke):
        assert invoke("rotate", "-s", "ghost-server").exit_code == 3

    def test_invalidate(self, invoke, clock):
        invoke("retrieve", "-s", SERVER)
        clock.advance(1)
        result = invoke("invalidate", "-s", SERVER)
        assert result.exit_code == 0, result.output
        assert "Revoked 1 session(s) for web-server-01" in result.output

    def test_provision(self, invoke, fake_sm):
        result = invoke(
            "provision", "-s", "db-server-01", "-u", "dbadmin",
            "--server-type", "windows", input="dbpassword456\ndbpassword456\n",
        )
        assert result.exit_code == 0, result.output
        payload = fake_sm.payload("onprem-server/db-server-01")
        assert payload["password"] == "dbpassword456"
        assert payload["server_type"] == "windows"
        assert payload["rotation_required"] is True

    def test_provision_env_password(self, invoke, fake_sm, monkeypatch):
        monkeypatch.setenv("BROKER_PROVISION_PASSWORD", "apppass789")
        result = invoke("provision", "-s", "app-server-01", "-u", "appuser")
        assert result.exit_code == 0, result.output
        assert fake_sm.payload("onprem-server/app-server-01")["password"] == "apppass789"

    def test_purge(self, invoke, clock):
        invoke("retrieve", "-s", SERVER, "-d", "60")
        clock.advance(120)
        result = invoke("purge")
        assert result.exit_code == 0, result.output
        assert "Purged 1 of 1 session record(s), 0 error(s)" in result.output

    def test_whoami(self, invoke):
        result = invoke("whoami")
        assert result.exit_code == 0
        assert "arn:aws:iam::123456789012:user/ops" in result.output

    def test_version(self, invoke):
        result = invoke("--version")
        assert __version__ in result.output


class TestEnvOutput:

    def test_env_output_parses(self, invoke):
        result = invoke("retrieve", "-s", SERVER)
        lines = [
            line for line in result.output.splitlines()
            if "=" in line and line.split("=", 1)[0].isupper()
        ]
        data = parse_env("\n".join(lines))
        assert data["server_type"] == "linux"
        assert data["username"] == "admin"
