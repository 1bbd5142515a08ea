"""
Record types for OTLP-compatible telemetry.

This module defines the data structures that map to OpenTelemetry's
data model: spans, log records and sum datapoints with exemplars.
Each record knows how to render itself in OTLP/JSON form; wrapping
records in resource and scope envelopes is done by the encoder.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional
import secrets
import time


class SpanKind(IntEnum):
    """OpenTelemetry span kinds. Every stepotel span is internal."""

    INTERNAL = 1


class SpanStatus(IntEnum):
    """OpenTelemetry span status codes."""

    OK = 1
    ERROR = 2

    @classmethod
    def from_exit_code(cls, exit_code: int) -> "SpanStatus":
        """Map a process exit code onto a span status (0 is OK)."""
        return cls.OK if exit_code == 0 else cls.ERROR


class AggregationTemporality(IntEnum):
    """OpenTelemetry metric aggregation temporality."""

    CUMULATIVE = 2


@dataclass(frozen=True)
class Attribute:
    """A key-value attribute for spans, logs, datapoints and resources."""

    key: str
    value: Any

    def to_otlp(self) -> dict:
        """Convert to OTLP attribute format. Values are always strings."""
        return {"key": self.key, "value": {"stringValue": str(self.value)}}


@dataclass(frozen=True)
class Span:
    """
    An OTLP-compatible span representing a unit of work.

    In stepotel, spans represent:
    - A whole task step (the step span)
    - Commands or blocks traced inside the step
    - A retry loop, recorded as one span regardless of attempts
    """

    trace_id: str
    span_id: str
    parent_span_id: Optional[str]
    name: str
    start_time_ns: int
    end_time_ns: int
    status: SpanStatus
    kind: SpanKind = SpanKind.INTERNAL
    attributes: tuple = ()

    def to_otlp(self) -> dict:
        """Convert to OTLP span format."""
        span = {
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "name": self.name,
            "kind": int(self.kind),
            "startTimeUnixNano": str(self.start_time_ns),
            "endTimeUnixNano": str(self.end_time_ns),
            "status": {
                "code": int(self.status),
            },
            "attributes": [a.to_otlp() for a in self.attributes],
        }

        if self.parent_span_id:
            span["parentSpanId"] = self.parent_span_id

        return span


@dataclass(frozen=True)
class LogRecord:
    """
    An OTLP-compatible log record.

    Log records are correlated with the step span via trace_id and span_id.
    """

    trace_id: str
    span_id: str
    body: str
    timestamp_ns: int = field(default_factory=lambda: now_ns())
    attributes: tuple = ()

    def to_otlp(self) -> dict:
        """Convert to OTLP log record format."""
        return {
            "timeUnixNano": str(self.timestamp_ns),
            "observedTimeUnixNano": str(self.timestamp_ns),
            "body": {"stringValue": self.body},
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "attributes": [a.to_otlp() for a in self.attributes],
        }


@dataclass(frozen=True)
class Exemplar:
    """A sample pinning a datapoint to the span that produced it."""

    trace_id: str
    span_id: str
    value: int
    timestamp_ns: int

    def to_otlp(self) -> dict:
        return {
            "timeUnixNano": str(self.timestamp_ns),
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "asInt": str(self.value),
        }


@dataclass(frozen=True)
class MetricDataPoint:
    """
    A single counter increment exported as an OTLP Sum.

    The increment is a delta at the API level, but it is exported with
    cumulative temporality: backends drop exemplars on delta and gauge
    series, so query the result with increase()/rate() over time.
    """

    name: str
    value: int
    exemplar: Exemplar
    timestamp_ns: int = field(default_factory=lambda: now_ns())
    attributes: tuple = ()

    def to_otlp(self) -> dict:
        """Convert to an OTLP metric carrying one sum datapoint."""
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"metric value must be an integer, got {self.value!r}")

        return {
            "name": self.name,
            "sum": {
                "dataPoints": [
                    {
                        "asInt": str(self.value),
                        "timeUnixNano": str(self.timestamp_ns),
                        "attributes": [a.to_otlp() for a in self.attributes],
                        "exemplars": [self.exemplar.to_otlp()],
                    }
                ],
                "aggregationTemporality": int(AggregationTemporality.CUMULATIVE),
                "isMonotonic": True,
            },
        }


def generate_trace_id() -> str:
    """Generate a 32-character hex trace ID (16 random bytes)."""
    return secrets.token_hex(16)


def generate_span_id() -> str:
    """Generate a 16-character hex span ID (8 random bytes)."""
    return secrets.token_hex(8)


def now_ns() -> int:
    """Current time in nanoseconds since Unix epoch."""
    return time.time_ns()
