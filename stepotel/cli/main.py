"""stepotel CLI"""

import click

from stepotel import __version__
from stepotel.cli.emit import log, metric
from stepotel.cli.retry import retry
from stepotel.cli.step import step
from stepotel.cli.trace import trace

from .debug import add_debug_option


@click.group()
@click.version_option(__version__, prog_name="stepotel")
@click.pass_context
def cli(ctx):
    """
    OTLP tracing, logging and metrics for CI task steps.

    \b
    Typical use in a task step script:
      stepotel step --log-file /workspace/build.log build -- ./build.sh
    and inside build.sh:
      stepotel trace compile -- make
      stepotel retry upload -- curl -sf -T out.json "$URL"
      stepotel metric sbomer.taskrun.build.artifacts 3
    """
    ctx.ensure_object(dict)


# Add subcommands to the CLI
cli.add_command(add_debug_option(step))
cli.add_command(add_debug_option(trace))
cli.add_command(add_debug_option(retry))
cli.add_command(add_debug_option(log))
cli.add_command(add_debug_option(metric))

add_debug_option(cli)

if __name__ == "__main__":
    cli(obj={})
