"""
OTLP/JSON encoder for telemetry records.

Wraps a single span, log record or metric in the resource/scope
envelope expected by the OTLP HTTP endpoints:

    resourceSpans   -> scopeSpans   -> spans
    resourceLogs    -> scopeLogs    -> logRecords
    resourceMetrics -> scopeMetrics -> metrics

Encoding is side-effect free and never raises into the caller: a record
that cannot be encoded is reported as ``None`` (nothing to send).
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from stepotel import __version__
from stepotel.telemetry.events import LogRecord, MetricDataPoint, Span
from stepotel.telemetry.resource import SDK_NAME, ResourceDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryEncoder:
    """Builds the three OTLP/JSON payloads from records and a resource."""

    scope_name: str = SDK_NAME
    scope_version: str = __version__

    def _scope(self) -> dict:
        return {"name": self.scope_name, "version": self.scope_version}

    def _dump(self, kind: str, build) -> Optional[str]:
        try:
            return json.dumps(build(), separators=(",", ":"))
        except (TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Dropping {kind} record that could not be encoded: {e}")
            return None

    def encode_span(self, resource: ResourceDescriptor, span: Span) -> Optional[str]:
        """Encode a single span as an OTLP traces payload."""
        return self._dump(
            "span",
            lambda: {
                "resourceSpans": [
                    {
                        "resource": resource.to_otlp(),
                        "scopeSpans": [
                            {
                                "scope": self._scope(),
                                "spans": [span.to_otlp()],
                            }
                        ],
                    }
                ]
            },
        )

    def encode_log(
        self, resource: ResourceDescriptor, record: LogRecord
    ) -> Optional[str]:
        """Encode a single log record as an OTLP logs payload."""
        return self._dump(
            "log",
            lambda: {
                "resourceLogs": [
                    {
                        "resource": resource.to_otlp(),
                        "scopeLogs": [
                            {
                                "scope": self._scope(),
                                "logRecords": [record.to_otlp()],
                            }
                        ],
                    }
                ]
            },
        )

    def encode_metric(
        self, resource: ResourceDescriptor, point: MetricDataPoint
    ) -> Optional[str]:
        """Encode a single counter datapoint as an OTLP metrics payload."""
        return self._dump(
            "metric",
            lambda: {
                "resourceMetrics": [
                    {
                        "resource": resource.to_otlp(),
                        "scopeMetrics": [
                            {
                                "scope": self._scope(),
                                "metrics": [point.to_otlp()],
                            }
                        ],
                    }
                ]
            },
        )
