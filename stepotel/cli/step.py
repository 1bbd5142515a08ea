"""cli command wrapping a whole task step"""

import sys

import click

from stepotel.cli.utils.command import (
    COMMAND_NOT_FOUND,
    command_argument,
    exit_status,
    start_merged,
    validate_pairs,
)
from stepotel.cli.utils.logging import logger
from stepotel.telemetry import LogTee, Tracer


@click.command(
    name="step",
    context_settings=dict(allow_interspersed_args=False),
)
@click.option(
    "-a",
    "--attr",
    "attrs",
    multiple=True,
    callback=validate_pairs,
    help="Span attribute as key=value, inherited by child spans, logs and metrics. Repeatable.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write the raw (unprefixed) command output to this file.",
)
@click.argument("name")
@click.argument(
    "command", nargs=-1, type=click.UNPROCESSED, callback=command_argument
)
def step(name, command, attrs, log_file):
    """Run COMMAND as the step span step-NAME.

    Output of COMMAND (stdout and stderr) is exported as log records and
    echoed prefixed with its trace and span ids. Exits with the exit
    status of COMMAND.
    """
    tracer = Tracer()
    tracer.start_step(name, *attrs)
    exit_code = COMMAND_NOT_FOUND
    try:
        tee = LogTee(tracer, log_file)
        try:
            process = start_merged(command)
        except OSError as e:
            logger.error(f"Could not run {command[0]}: {e}")
        else:
            tee.feed(process.stdout)
            exit_code = exit_status(process.wait())
        finally:
            tee.close()
    finally:
        tracer.end_step(exit_code)

    sys.exit(exit_code)
