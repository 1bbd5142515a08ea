"""
Telemetry core for stepotel.

Sends OTLP/JSON spans, logs and metrics for a task step to an OTLP HTTP
endpoint, without the OpenTelemetry SDK. The trace of a step looks like:

    <inbound TRACEPARENT span>
    └── step-<name>           (start_step / end_step)
        ├── compile           (trace)
        ├── upload            (RetryExecutor.run, one span for all attempts)
        └── ...

Logs and metric exemplars point at the step span.

Usage:
    from stepotel.telemetry import LogTee, RetryExecutor, Tracer

    tracer = Tracer()
    with tracer.step("generate", "component=sbom"):
        with LogTee(tracer, "generate.log"):
            tracer.trace("compile", subprocess.run, ["make"])
            RetryExecutor(tracer).run("upload", upload)
            tracer.metric("sbomer.taskrun.generate.components", 42)
"""

from stepotel.telemetry.context import ContextCarrier, TraceContext
from stepotel.telemetry.encoder import TelemetryEncoder
from stepotel.telemetry.events import SpanStatus
from stepotel.telemetry.exporter import Exporter
from stepotel.telemetry.resource import AttributeSet, ResourceDescriptor
from stepotel.telemetry.retry import RetryExecutor, RetryPolicy
from stepotel.telemetry.tee import LogTee
from stepotel.telemetry.tracer import StepContext, Tracer

__all__ = [
    "AttributeSet",
    "ContextCarrier",
    "Exporter",
    "LogTee",
    "ResourceDescriptor",
    "RetryExecutor",
    "RetryPolicy",
    "SpanStatus",
    "StepContext",
    "TelemetryEncoder",
    "TraceContext",
    "Tracer",
]
