"""
Credential Broker CLI.

Usage:
    credential-broker retrieve -s web-server-01
    credential-broker retrieve --server db-server-01 --duration 7200 --output json
    credential-broker status -s web-server-01
    credential-broker rotate -s web-server-01
    credential-broker invalidate -s web-server-01
    credential-broker provision -s web-server-01 -u admin
    credential-broker purge --retention 86400
    credential-broker whoami

Rendered credentials go to stdout; diagnostics go to stderr. Failures print
``error[<category>]: <message>`` and exit with the category's exit code.
"""
import sys
import logging
import functools
from pathlib import Path

import click
from pydantic import ValidationError

from .broker import CredentialBroker
from .conf import BrokerConfig
from .exceptions import BrokerError, SessionNotFound
from .models import ServerType
from .render import OutputFormat, render
from .version import __version__

logger = logging.getLogger("credential_broker.cli")

CONFIG_ERROR_EXIT = 2


def handle_errors(func):
    """Turn broker failures into category exit codes."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SessionNotFound as err:
            click.echo(f"error[{err.category}]: {err}", err=True)
            if err.server_name:
                click.echo(
                    f"Run: credential-broker retrieve --server {err.server_name}",
                    err=True,
                )
            raise SystemExit(err.exit_code) from err
        except BrokerError as err:
            click.echo(f"error[{err.category}]: {err}", err=True)
            raise SystemExit(err.exit_code) from err
        except ValidationError as err:
            click.echo(f"error[config]: {err}", err=True)
            raise SystemExit(CONFIG_ERROR_EXIT) from err
    return wrapper


def get_broker() -> CredentialBroker:
    """Broker from the click context, built from the environment on first use."""
    ctx = click.get_current_context()
    root = ctx.find_root()
    if root.obj is None:
        root.obj = CredentialBroker(BrokerConfig.from_env())
    return root.obj


@click.group()
@click.version_option(__version__, prog_name="credential-broker")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr.")
def cli(verbose: bool) -> None:
    """Short-lived credentials for on-prem servers from AWS Secrets Manager."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@cli.command()
@click.option("-s", "--server", "server_name", required=True, help="Server name.")
@click.option(
    "-d", "--duration", type=int, default=None,
    help="Session duration in seconds (default: 3600).",
)
@click.option(
    "-o", "--output", "output_format",
    type=click.Choice([f.value for f in OutputFormat]),
    default=OutputFormat.ENV.value, show_default=True,
    help="Output format.",
)
@handle_errors
def retrieve(server_name: str, duration: int, output_format: str) -> None:
    """Issue a session for a server and print its credentials."""
    broker = get_broker()
    click.echo(f"Retrieving credentials for: {server_name}", err=True)
    session = broker.retrieve(server_name, duration)
    click.echo(render(session.to_artifact(), output_format))
    click.echo(f"Session data saved to: {broker.session_path(session)}", err=True)


@cli.command()
@click.option("-s", "--server", "server_name", default=None, help="Server name.")
@click.option(
    "-t", "--token-file", type=click.Path(path_type=Path), default=None,
    help="Validate this session file instead of the latest one.",
)
@handle_errors
def status(server_name: str, token_file: Path) -> None:
    """Check that a usable session exists."""
    if not server_name and not token_file:
        raise click.UsageError("Either --server or --token-file is required")
    broker = get_broker()
    if token_file:
        session, validation = broker.check_token_file(token_file)
    else:
        session, validation = broker.current(server_name)
    validation.raise_for_status()
    click.echo(f"Session valid for: {validation.remaining_minutes} minutes")
    click.echo(f"User: {session.username}")


@cli.command()
@click.option("-s", "--server", "server_name", required=True, help="Server name.")
@click.option("--username", default=None, help="New username (default: keep).")
@click.option(
    "--password-stdin", is_flag=True,
    help="Read the new password from stdin instead of generating one.",
)
@click.option("-f", "--force", is_flag=True, help="Allow reusing a recent password.")
@handle_errors
def rotate(server_name: str, username: str, password_stdin: bool, force: bool) -> None:
    """Rotate a server credential and revoke its sessions."""
    password = None
    if password_stdin:
        password = click.get_text_stream("stdin").readline().rstrip("\r\n")
        if not password:
            raise click.UsageError("Empty password on stdin")
    result = get_broker().rotate(
        server_name, password=password, username=username, force=force
    )
    click.echo(
        f"Rotated credential for {server_name}: "
        f"{result.revoked} session(s) revoked"
    )


@cli.command()
@click.option("-s", "--server", "server_name", required=True, help="Server name.")
@handle_errors
def invalidate(server_name: str) -> None:
    """Revoke all active sessions of a server (repairs a partial rotation)."""
    count = get_broker().repair(server_name)
    click.echo(f"Revoked {count} session(s) for {server_name}")


@cli.command()
@click.option("-s", "--server", "server_name", required=True, help="Server name.")
@click.option("-u", "--username", required=True, help="Login username.")
@click.option(
    "--password", prompt=True, hide_input=True, confirmation_prompt=True,
    envvar="BROKER_PROVISION_PASSWORD", help="Initial password.",
)
@click.option(
    "--server-type",
    type=click.Choice([t.value for t in ServerType]),
    default=ServerType.LINUX.value, show_default=True,
)
@handle_errors
def provision(server_name: str, username: str, password: str, server_type: str) -> None:
    """Create or overwrite the secret of a server."""
    get_broker().provision(server_name, username, password, server_type)
    click.echo(f"Provisioned secret for {server_name} (rotation required)")


@cli.command()
@click.option(
    "--retention", type=float, default=0.0, show_default=True,
    help="Keep terminal sessions this many seconds past expiry.",
)
@handle_errors
def purge(retention: float) -> None:
    """Remove expired and revoked session records."""
    stats = get_broker().purge(retention=retention)
    click.echo(
        f"Purged {stats['deleted']} of {stats['total']} session record(s), "
        f"{stats['errors']} error(s)"
    )


@cli.command()
@handle_errors
def whoami() -> None:
    """Show the AWS identity used for the secret store."""
    click.echo(get_broker().secrets.check_identity())
