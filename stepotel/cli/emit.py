"""cli commands emitting a log record or a metric for the current step"""

import click

from stepotel.cli.trace import resumed_tracer


@click.command(name="log")
@click.argument("message")
def log(message):
    """Send MESSAGE as a log record of the current step."""
    tracer = resumed_tracer()
    tracer.log(message)
    tracer.flush()


@click.command(name="metric")
@click.argument("name")
@click.argument("value", type=int)
def metric(name, value):
    """Add VALUE to counter NAME, with an exemplar on the current step span.

    Counters are exported as cumulative sums; query them with increase().
    """
    tracer = resumed_tracer()
    tracer.metric(name, value)
    tracer.flush()
