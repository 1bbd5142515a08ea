import io
import json
import logging

import pytest

from stepotel.config import TelemetrySettings
from stepotel.telemetry.context import ContextCarrier
from stepotel.telemetry.exporter import Exporter
from stepotel.telemetry.tracer import Tracer

INBOUND_TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
INBOUND_SPAN_ID = "b7ad6b7169203331"
INBOUND_TRACEPARENT = f"00-{INBOUND_TRACE_ID}-{INBOUND_SPAN_ID}-01"


class RecordingExporter(Exporter):
    """Exporter that keeps decoded payloads instead of posting them."""

    def __init__(self):
        super().__init__("http://collector.invalid:4318")
        self.sent = []
        self.waits = 0

    def send(self, path, payload):
        if payload is not None:
            self.sent.append((path, json.loads(payload)))
        return None

    def wait_last(self):
        self.waits += 1

    def wait_all(self):
        self.waits += 1

    def payloads(self, path):
        return [payload for p, payload in self.sent if p == path]

    def spans(self):
        return [
            span
            for payload in self.payloads("v1/traces")
            for resource_spans in payload["resourceSpans"]
            for scope_spans in resource_spans["scopeSpans"]
            for span in scope_spans["spans"]
        ]


@pytest.fixture
def capture_logs():
    """Fixture to capture log output during tests."""
    log_stream = io.StringIO()
    handler = logging.StreamHandler(log_stream)
    logger = logging.getLogger("stepotel")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield log_stream  # Yield the stream to the test function

    # Cleanup after the test
    logger.removeHandler(handler)
    log_stream.close()


@pytest.fixture
def settings():
    return TelemetrySettings(
        service_name="sbomer",
        service_version="1.2.3",
        endpoint="http://collector.invalid:4318",
    )


@pytest.fixture
def environ():
    return {"TRACEPARENT": INBOUND_TRACEPARENT}


@pytest.fixture
def carrier(environ):
    return ContextCarrier(environ)


@pytest.fixture
def exporter():
    return RecordingExporter()


@pytest.fixture
def tracer(settings, exporter, carrier):
    return Tracer(settings=settings, exporter=exporter, carrier=carrier)
