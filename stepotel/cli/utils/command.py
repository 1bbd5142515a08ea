"""Running the wrapped command of a CLI invocation."""

import subprocess
from typing import Sequence

import click

from stepotel.cli.utils.logging import logger

# Exit status reported when the command cannot be started, as a shell does
COMMAND_NOT_FOUND = 127


def exit_status(returncode: int) -> int:
    """Shell-style exit status: 128+N for a process killed by signal N."""
    return 128 - returncode if returncode < 0 else returncode


def run_command(command: Sequence[str]) -> subprocess.CompletedProcess:
    """
    Run ``command`` with inherited stdio.

    A command that cannot be started is reported as a completed process
    with return code 127.
    """
    try:
        return subprocess.run(list(command))
    except OSError as e:
        logger.error(f"Could not run {command[0]}: {e}")
        return subprocess.CompletedProcess(list(command), COMMAND_NOT_FOUND)


def start_merged(command: Sequence[str]) -> subprocess.Popen:
    """Start ``command`` with stderr merged into a text stdout pipe."""
    return subprocess.Popen(
        list(command),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )


def validate_pairs(ctx, param, value):
    """Click callback accepting only ``key=value`` pairs."""
    for pair in value:
        if "=" not in pair or pair.startswith("="):
            raise click.BadParameter(f"expected key=value, got {pair!r}")
    return value


def command_argument(ctx, param, value):
    """Click callback dropping the ``--`` that separates COMMAND from NAME."""
    if value and value[0] == "--":
        value = value[1:]
    if not value:
        raise click.BadParameter("missing command to run")
    return value
