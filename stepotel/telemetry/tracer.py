"""
Step and span lifecycle.

A step is the outermost span of a task step (``step-<name>``). Inside an
open step, ``trace``/``span`` record child spans, and ``log``/``metric``
emit records correlated to the step span. Every record carries the
step's attributes and resource.

Step state is held per tracer on a stack of StepContext objects, so
nested steps and independent tracers never corrupt each other. The
current context is also published through a ContextCarrier (by default
the ``TRACEPARENT`` environment variable) together with the step
variables below, so that commands started from the step nest under the
currently open span and can resume the step themselves.
"""

import logging
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from stepotel.config import TelemetrySettings, load_settings
from stepotel.telemetry.context import ContextCarrier, TraceContext
from stepotel.telemetry.encoder import TelemetryEncoder
from stepotel.telemetry.events import (
    Exemplar,
    LogRecord,
    MetricDataPoint,
    Span,
    SpanStatus,
    generate_span_id,
    generate_trace_id,
    now_ns,
)
from stepotel.telemetry.exporter import (
    LOGS_PATH,
    METRICS_PATH,
    TRACES_PATH,
    Exporter,
)
from stepotel.telemetry.resource import AttributeSet, ResourceDescriptor

logger = logging.getLogger(__name__)

STEP_PREFIX = "step-"
DEFAULT_TRACE_FLAGS = "01"

STEP_NAME_ENV = "STEP_SPAN_NAME"
STEP_SPAN_ID_ENV = "STEP_SPAN_ID"
STEP_PARENT_SPAN_ID_ENV = "STEP_PARENT_SPAN_ID"
STEP_ATTRS_ENV = "STEP_SPAN_ATTRS"
STEP_ENV_KEYS = (STEP_NAME_ENV, STEP_SPAN_ID_ENV, STEP_PARENT_SPAN_ID_ENV, STEP_ATTRS_ENV)


def is_failure(result: Any) -> bool:
    """
    Whether an operation's return value reports failure.

    Only a completed process with a non-zero return code is a failure;
    any other value, integers included, is an ordinary result.
    """
    return isinstance(result, subprocess.CompletedProcess) and result.returncode != 0


def exit_code_of(exc: BaseException) -> int:
    """Exit code a process would report for ``exc``."""
    if isinstance(exc, SystemExit):
        if exc.code is None:
            return 0
        return exc.code if isinstance(exc.code, int) else 1
    return 1


@dataclass(frozen=True)
class StepContext:
    """Everything recorded at step start and needed at step end."""

    name: str
    context: TraceContext
    attributes: AttributeSet
    resource: ResourceDescriptor
    start_time_ns: int
    restore_token: Optional[str] = None
    saved_environ: dict = field(default_factory=dict)
    owned: bool = True


@dataclass
class SpanScope:
    """Handle on a child span while it is open."""

    context: TraceContext
    status: SpanStatus = SpanStatus.OK

    def fail(self) -> None:
        self.status = SpanStatus.ERROR


class Tracer:
    """
    Records step spans, child spans, logs and metrics for one process.

    Usage:
        tracer = Tracer()
        tracer.start_step("build", "component=api")
        try:
            tracer.trace("compile", subprocess.run, ["make"])
            tracer.metric("sbomer.taskrun.build.artifacts", 3)
        finally:
            tracer.end_step(exit_code)
    """

    def __init__(
        self,
        settings: Optional[TelemetrySettings] = None,
        exporter: Optional[Exporter] = None,
        carrier: Optional[ContextCarrier] = None,
        encoder: Optional[TelemetryEncoder] = None,
    ):
        self.settings = settings if settings is not None else load_settings()
        self.exporter = (
            exporter
            if exporter is not None
            else Exporter(self.settings.endpoint, self.settings.export_timeout)
        )
        self.carrier = carrier if carrier is not None else ContextCarrier()
        self.encoder = encoder if encoder is not None else TelemetryEncoder()
        self._steps: list[StepContext] = []

    @property
    def current_step(self) -> Optional[StepContext]:
        return self._steps[-1] if self._steps else None

    def traceparent(self) -> Optional[str]:
        """The context string a command started now should inherit."""
        return self.carrier.traceparent()

    # Steps

    def start_step(self, name: str, *attrs: str) -> StepContext:
        """
        Open the step span ``step-<name>`` under the inbound context.

        Args:
            name: Step name, prefixed with ``step-``.
            attrs: ``key=value`` pairs added to the step attributes, which
                are inherited by child spans, logs and metric datapoints.

        Returns:
            The StepContext now on top of the step stack.
        """
        inbound = self.carrier.current()
        if inbound.trace_id:
            trace_id, trace_flags = inbound.trace_id, inbound.trace_flags
        else:
            logger.debug("No inbound trace context, starting a new trace")
            trace_id, trace_flags = generate_trace_id(), DEFAULT_TRACE_FLAGS

        context = TraceContext(
            trace_id=trace_id,
            span_id=generate_span_id(),
            parent_span_id=inbound.span_id,
            trace_flags=trace_flags,
        )
        step_name = f"{STEP_PREFIX}{name}"
        attributes = AttributeSet.from_pairs([f"step.name={step_name}", *attrs])

        step = StepContext(
            name=step_name,
            context=context,
            attributes=attributes,
            resource=ResourceDescriptor.build(self.settings, step_name),
            start_time_ns=now_ns(),
            restore_token=self.carrier.traceparent(),
            saved_environ=self._publish_step_environ(step_name, context, attributes),
        )
        self.carrier.publish(context)
        self._steps.append(step)
        logger.debug(
            f"Started {step_name} trace_id={context.trace_id} span_id={context.span_id}"
        )
        return step

    def end_step(self, exit_code: Optional[int] = 0) -> None:
        """
        Close the innermost step and wait for its span to be delivered.

        Args:
            exit_code: The step's exit code; non-zero marks the span ERROR.
        """
        if not self._steps:
            logger.warning("end_step called without an open step")
            return

        step = self._steps.pop()
        if not step.owned:
            return

        self._emit_span(
            step.resource,
            Span(
                trace_id=step.context.trace_id,
                span_id=step.context.span_id,
                parent_span_id=step.context.parent_span_id,
                name=step.name,
                start_time_ns=step.start_time_ns,
                end_time_ns=now_ns(),
                status=SpanStatus.from_exit_code(exit_code or 0),
                attributes=tuple(step.attributes),
            ),
        )
        self.carrier.restore(step.restore_token)
        self._restore_step_environ(step.saved_environ)
        self.flush()

    @contextmanager
    def step(self, name: str, *attrs: str):
        """Context manager form of start_step/end_step."""
        step = self.start_step(name, *attrs)
        try:
            yield step
        except BaseException as e:
            self.end_step(exit_code_of(e))
            raise
        self.end_step(0)

    def resume_step(self) -> Optional[StepContext]:
        """
        Rejoin the step opened by a parent process.

        Rebuilds the step from the published step variables so this
        process can add child spans, logs and metrics to it. No step span
        is emitted for a resumed step.

        Returns:
            The resumed StepContext, or None when no step was published.
        """
        environ = self.carrier.environ
        current = self.carrier.current()
        step_name = environ.get(STEP_NAME_ENV, "")
        if not current.trace_id or not step_name:
            logger.debug("No published step to resume")
            return None

        step = StepContext(
            name=step_name,
            context=TraceContext(
                trace_id=current.trace_id,
                span_id=environ.get(STEP_SPAN_ID_ENV) or current.span_id,
                parent_span_id=environ.get(STEP_PARENT_SPAN_ID_ENV, ""),
                trace_flags=current.trace_flags,
            ),
            attributes=AttributeSet.from_pairs(
                p for p in environ.get(STEP_ATTRS_ENV, "").split("\n") if p
            ),
            resource=ResourceDescriptor.build(self.settings, step_name),
            start_time_ns=now_ns(),
            owned=False,
        )
        self._steps.append(step)
        return step

    def _publish_step_environ(
        self, step_name: str, context: TraceContext, attributes: AttributeSet
    ) -> dict:
        environ = self.carrier.environ
        saved = {key: environ.get(key) for key in STEP_ENV_KEYS}
        environ[STEP_NAME_ENV] = step_name
        environ[STEP_SPAN_ID_ENV] = context.span_id
        environ[STEP_PARENT_SPAN_ID_ENV] = context.parent_span_id
        environ[STEP_ATTRS_ENV] = "\n".join(attributes.to_pairs())
        return saved

    def _restore_step_environ(self, saved: dict) -> None:
        environ = self.carrier.environ
        for key, value in saved.items():
            if value is None:
                environ.pop(key, None)
            else:
                environ[key] = value

    # Child spans

    @contextmanager
    def span(self, name: str):
        """
        Record the enclosed block as a child span of the current context.

        The child context is published while the block runs and the
        parent context is restored afterwards. An exception marks the span
        ERROR and propagates unchanged.
        """
        child, token = self.carrier.derive_child()
        scope = SpanScope(child)
        start_time_ns = now_ns()
        try:
            yield scope
        except BaseException:
            scope.fail()
            raise
        finally:
            self.carrier.restore(token)
            self._close_child(name, scope, start_time_ns)

    def trace(self, name: str, operation: Callable, *args, **kwargs):
        """
        Run ``operation(*args, **kwargs)`` as a child span named ``name``.

        The span is ERROR when the operation raises or returns a failing
        completed process (see is_failure). The result is returned and
        exceptions are re-raised unchanged.
        """
        with self.span(name) as scope:
            result = operation(*args, **kwargs)
            if is_failure(result):
                scope.fail()
        return result

    def _close_child(self, name: str, scope: SpanScope, start_time_ns: int) -> None:
        if not scope.context.trace_id:
            logger.debug(f"No trace context for span {name}, not exporting it")
            return

        step = self.current_step
        attributes = step.attributes if step else AttributeSet.empty()
        resource = step.resource if step else ResourceDescriptor.build(self.settings)
        self._emit_span(
            resource,
            Span(
                trace_id=scope.context.trace_id,
                span_id=scope.context.span_id,
                parent_span_id=scope.context.parent_span_id,
                name=name,
                start_time_ns=start_time_ns,
                end_time_ns=now_ns(),
                status=scope.status,
                attributes=tuple(attributes),
            ),
        )

    # Logs and metrics

    def log(self, body: str) -> None:
        """Emit ``body`` as a log record correlated to the step span."""
        step = self.current_step
        if step is None:
            logger.warning("Dropping log record emitted outside of a step")
            return

        record = LogRecord(
            trace_id=step.context.trace_id,
            span_id=step.context.span_id,
            body=body,
            attributes=tuple(step.attributes),
        )
        self._send(LOGS_PATH, lambda: self.encoder.encode_log(step.resource, record))

    def metric(self, name: str, value: int) -> None:
        """
        Emit one counter increment with an exemplar on the step span.

        Exported as a monotonic cumulative Sum; query it with increase().
        """
        step = self.current_step
        if step is None:
            logger.warning(f"Dropping metric {name} emitted outside of a step")
            return

        timestamp_ns = now_ns()
        point = MetricDataPoint(
            name=name,
            value=value,
            exemplar=Exemplar(
                trace_id=step.context.trace_id,
                span_id=step.context.span_id,
                value=value,
                timestamp_ns=timestamp_ns,
            ),
            timestamp_ns=timestamp_ns,
            attributes=tuple(step.attributes),
        )
        self._send(
            METRICS_PATH, lambda: self.encoder.encode_metric(step.resource, point)
        )

    # Delivery

    def _emit_span(self, resource: ResourceDescriptor, span: Span) -> None:
        self._send(TRACES_PATH, lambda: self.encoder.encode_span(resource, span))

    def _send(self, path: str, encode: Callable[[], Optional[str]]) -> None:
        # Telemetry must never change the outcome of the instrumented code.
        try:
            self.exporter.send(path, encode())
        except Exception as e:
            logger.debug(f"Could not export {path} record: {e}")

    def flush(self) -> None:
        """Wait for outstanding deliveries (the last one unless draining)."""
        if self.settings.drain_on_exit:
            self.exporter.wait_all()
        else:
            self.exporter.wait_last()
