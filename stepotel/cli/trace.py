"""cli command tracing a single command inside a step"""

import sys

import click

from stepotel.cli.utils.command import command_argument, exit_status, run_command
from stepotel.cli.utils.logging import logger
from stepotel.telemetry import Tracer


def resumed_tracer() -> Tracer:
    """Tracer joined to the step opened by `stepotel step`, if any."""
    tracer = Tracer()
    if tracer.resume_step() is None:
        logger.debug("Not running inside a step, spans carry no step attributes")
    return tracer


@click.command(
    name="trace",
    context_settings=dict(allow_interspersed_args=False),
)
@click.argument("name")
@click.argument(
    "command", nargs=-1, type=click.UNPROCESSED, callback=command_argument
)
def trace(name, command):
    """Run COMMAND as the child span NAME of the current context."""
    tracer = resumed_tracer()
    process = tracer.trace(name, run_command, command)
    tracer.flush()
    sys.exit(exit_status(process.returncode))
