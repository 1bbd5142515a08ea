"""
Fire-and-forget OTLP/HTTP delivery.

Each payload is posted on its own daemon thread so the instrumented
workload never waits for the collector. Only ``wait_last`` (and the
opt-in ``wait_all``) block, and both are bounded by the export timeout.
Delivery is best-effort: failures are logged at debug level and dropped.
"""

import logging
import threading
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)

TRACES_PATH = "v1/traces"
LOGS_PATH = "v1/logs"
METRICS_PATH = "v1/metrics"

DEFAULT_TIMEOUT = 5.0


class Exporter:
    """Posts encoded payloads to ``<endpoint>/<path>`` in the background."""

    def __init__(self, endpoint: Optional[str], timeout: float = DEFAULT_TIMEOUT):
        self.endpoint = (endpoint or "").rstrip("/")
        self.timeout = timeout
        self._last: Optional[threading.Thread] = None
        self._inflight: list[threading.Thread] = []
        self._lock = threading.Lock()

    def url_for(self, path: str) -> str:
        return f"{self.endpoint}/{path.lstrip('/')}"

    def send(self, path: str, payload: Optional[str]) -> Optional[threading.Thread]:
        """Start delivering ``payload`` and return without waiting."""
        if payload is None:
            return None
        if not self.endpoint:
            logger.debug(f"No OTLP endpoint configured, dropping {path} payload")
            return None

        thread = threading.Thread(
            target=self._deliver,
            args=(self.url_for(path), payload),
            name=f"stepotel-export-{path}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            logger.debug(f"Could not start telemetry delivery for {path}: {e}")
            return None

        with self._lock:
            self._inflight = [t for t in self._inflight if t.is_alive()]
            self._inflight.append(thread)
            self._last = thread
        return thread

    def _deliver(self, url: str, payload: str) -> None:
        try:
            response = requests.post(
                url,
                data=payload.encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug(f"Telemetry delivery to {url} failed: {e}")

    def _join(self, thread: threading.Thread, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        if remaining > 0:
            thread.join(remaining)
        if thread.is_alive():
            logger.debug(f"Abandoning telemetry delivery {thread.name}")

    def wait_last(self) -> None:
        """Block until the most recent delivery finished or was abandoned."""
        with self._lock:
            thread = self._last
        if thread is None:
            return
        self._join(thread, time.monotonic() + self.timeout)

    def wait_all(self) -> None:
        """Block until every outstanding delivery finished or was abandoned."""
        with self._lock:
            threads = list(self._inflight)
        deadline = time.monotonic() + self.timeout
        for thread in threads:
            self._join(thread, deadline)
