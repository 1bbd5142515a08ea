"""cli command retrying a command with exponential backoff"""

import sys

import click
import humanfriendly

from stepotel.cli.trace import resumed_tracer
from stepotel.cli.utils.command import command_argument, exit_status, run_command
from stepotel.config import parse_duration
from stepotel.telemetry import RetryExecutor, RetryPolicy


def _duration(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_duration(value)
    except (ValueError, humanfriendly.InvalidTimespan) as e:
        raise click.BadParameter(str(e))


@click.command(
    name="retry",
    context_settings=dict(allow_interspersed_args=False),
)
@click.option(
    "-n",
    "--count",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of attempts. Default: $RETRY_COUNT or 30.",
)
@click.option(
    "--delay",
    callback=_duration,
    default=None,
    help="Delay before the second attempt, doubled after each failure. Example: 1, 500ms, 2s. Default: $RETRY_DELAY or 1s.",
)
@click.option(
    "--max-delay",
    callback=_duration,
    default=None,
    help="Upper bound for the delay. Default: $RETRY_MAX_DELAY or 60s.",
)
@click.argument("name")
@click.argument(
    "command", nargs=-1, type=click.UNPROCESSED, callback=command_argument
)
def retry(name, command, count, delay, max_delay):
    """Run COMMAND until it succeeds, recording all attempts as span NAME."""
    tracer = resumed_tracer()
    defaults = RetryPolicy.from_settings(tracer.settings)
    policy = RetryPolicy(
        max_attempts=count if count is not None else defaults.max_attempts,
        initial_delay=delay if delay is not None else defaults.initial_delay,
        max_delay=max_delay if max_delay is not None else defaults.max_delay,
    )

    process = RetryExecutor(tracer, policy).run(name, run_command, command)
    tracer.flush()
    sys.exit(exit_status(process.returncode))
