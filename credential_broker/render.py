"""
Output renderers for session artifacts.

Formats:
    env    ``KEY=value`` per line, keys upper-cased
    shell  ``export KEY='value'`` per line, values single-quoted
    json   the mapping itself

Values are stringified the way ``jq tostring`` does: booleans as
``true``/``false``, null as ``null``, numbers verbatim.
"""
import shlex
from enum import Enum
from typing import Any
from collections.abc import Mapping

import orjson

__all__ = ("OutputFormat", "render", "parse_env", "parse_shell", "to_text")


class OutputFormat(str, Enum):
    ENV = "env"
    SHELL = "shell"
    JSON = "json"


def to_text(value: Any) -> str:
    """Stringify a scalar for env/shell output."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode("utf-8")
    return str(value)


def shell_quote(value: str) -> str:
    """Always single-quote, escaping embedded quotes as ``'\\''``."""
    return "'" + value.replace("'", "'\\''") + "'"


def render_env(data: Mapping[str, Any]) -> str:
    return "\n".join(f"{key.upper()}={to_text(value)}" for key, value in data.items())


def render_shell(data: Mapping[str, Any]) -> str:
    return "\n".join(
        f"export {key.upper()}={shell_quote(to_text(value))}"
        for key, value in data.items()
    )


def render_json(data: Mapping[str, Any]) -> str:
    return orjson.dumps(dict(data), option=orjson.OPT_INDENT_2).decode("utf-8")


_RENDERERS = {
    OutputFormat.ENV: render_env,
    OutputFormat.SHELL: render_shell,
    OutputFormat.JSON: render_json,
}


def render(data: Mapping[str, Any], fmt: str = "env") -> str:
    """Render a session mapping.

    Raises:
        ValueError: Unknown format.
    """
    try:
        renderer = _RENDERERS[OutputFormat(fmt)]
    except ValueError:
        raise ValueError(f"Unknown output format: {fmt}") from None
    return renderer(data)


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines back into a mapping (keys lower-cased).

    Only the first ``=`` separates key and value; blank lines are ignored.
    """
    result: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise ValueError(f"Not a KEY=value line: {line!r}")
        result[key.lower()] = value
    return result


def parse_shell(text: str) -> dict[str, str]:
    """Parse ``export KEY='value'`` lines back into a mapping."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        tokens = shlex.split(line)
        if len(tokens) != 2 or tokens[0] != "export" or "=" not in tokens[1]:
            raise ValueError(f"Not an export line: {line!r}")
        key, _, value = tokens[1].partition("=")
        result[key.lower()] = value
    return result
