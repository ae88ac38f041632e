"""Terminal and JSON rendering for the esi command."""

import json
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, NoReturn

import click

# Largest unit first
_UNITS = (("day", 86400), ("hour", 3600), ("minute", 60))


def format_timedelta(td: timedelta) -> str:
    """Describe a duration by its largest whole unit.

    Durations under a minute are given in seconds; negative ones read
    "Expired".
    """
    seconds = int(td.total_seconds())
    if seconds < 0:
        return "Expired"

    for unit, size in _UNITS:
        count = seconds // size
        if count:
            return f"{count} {unit}{'' if count == 1 else 's'}"
    return f"{seconds} seconds"


def format_expiry(expires: datetime, now: datetime | None = None) -> str:
    """Describe when an access token expires relative to now."""
    now = now or datetime.now(timezone.utc)
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)

    remaining = expires - now
    if remaining <= timedelta(0):
        return "Expired"
    return f"in {format_timedelta(remaining)}"


def json_envelope(data: Any) -> str:
    """Wrap a command result for --json mode."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def error_envelope(error: Exception, error_type: str | None = None, help_text: str | None = None) -> str:
    """Wrap a failure for --json mode."""
    detail: dict[str, str] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
    }
    if help_text:
        detail["help"] = help_text
    return json.dumps({"success": False, "error": detail}, indent=2)


class OutputHandler:
    """Writes command results as human text or as JSON envelopes.

    In JSON mode stdout only ever carries one envelope; progress messages
    go to stderr so the output stays machine-readable.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        if self.json_mode:
            click.echo(json_envelope(data))
        else:
            click.echo(human_message if human_message is not None else json.dumps(data, indent=2, default=str))

    def status(self, message: str) -> None:
        click.echo(message, err=self.json_mode)

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> NoReturn:
        """Report a failure and exit with status 1."""
        if self.json_mode:
            click.echo(error_envelope(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.secho(help_text, fg="yellow", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Print aligned columns, or a list of row objects in JSON mode."""
        if self.json_mode:
            click.echo(json_envelope([dict(zip(headers, row)) for row in rows]))
            return

        widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *rows)]

        def line(cells: list[str]) -> str:
            return "  ".join(str(cell).ljust(width) for cell, width in zip(cells, widths)).rstrip()

        click.secho(line(headers), bold=True)
        click.echo("  ".join("-" * width for width in widths))
        for row in rows:
            click.echo(line(row))
