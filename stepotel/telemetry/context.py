"""
W3C traceparent handling and propagation.

The propagated context lives in the process environment under
``TRACEPARENT`` so that any command launched from the step inherits the
currently open span as its parent.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import MutableMapping, Optional

from stepotel.telemetry.events import generate_span_id

logger = logging.getLogger(__name__)

TRACEPARENT_ENV = "TRACEPARENT"
TRACEPARENT_VERSION = "00"

_TRACEPARENT_RE = re.compile(
    r"^(?P<version>[0-9a-f]{2})-(?P<trace_id>[0-9a-f]{32})-"
    r"(?P<span_id>[0-9a-f]{16})-(?P<trace_flags>[0-9a-f]{2})$"
)


@dataclass(frozen=True)
class TraceContext:
    """
    The (trace id, span id, parent span id, flags) tuple of the open span.

    Fields are lowercase hex strings. A context parsed from a malformed
    traceparent has every field empty.
    """

    trace_id: str = ""
    span_id: str = ""
    parent_span_id: str = ""
    trace_flags: str = ""

    @classmethod
    def parse(cls, value: Optional[str]) -> "TraceContext":
        """
        Parse a ``00-<trace id>-<span id>-<flags>`` string.

        Never raises: anything that does not match the fixed layout yields
        an empty context.
        """
        match = _TRACEPARENT_RE.match((value or "").strip().lower())
        if match is None or match.group("version") != TRACEPARENT_VERSION:
            if value:
                logger.debug(f"Ignoring malformed traceparent: {value!r}")
            return cls()

        return cls(
            trace_id=match.group("trace_id"),
            span_id=match.group("span_id"),
            trace_flags=match.group("trace_flags"),
        )

    @property
    def is_valid(self) -> bool:
        return bool(self.trace_id and self.span_id)

    def to_traceparent(self) -> str:
        return f"{TRACEPARENT_VERSION}-{self.trace_id}-{self.span_id}-{self.trace_flags}"

    def derive_child(self) -> "TraceContext":
        """New span under this one: fresh span id, same trace id and flags."""
        return TraceContext(
            trace_id=self.trace_id,
            span_id=generate_span_id(),
            parent_span_id=self.span_id,
            trace_flags=self.trace_flags,
        )


class ContextCarrier:
    """
    Publishes the current traceparent where collaborators can read it.

    Defaults to the process environment; tests pass a plain dict.
    """

    def __init__(
        self,
        environ: Optional[MutableMapping[str, str]] = None,
        key: str = TRACEPARENT_ENV,
    ):
        self.environ = os.environ if environ is None else environ
        self.key = key

    def traceparent(self) -> Optional[str]:
        """The current context string, as a child process would see it."""
        return self.environ.get(self.key)

    def current(self) -> TraceContext:
        return TraceContext.parse(self.traceparent())

    def publish(self, context: TraceContext) -> None:
        self.environ[self.key] = context.to_traceparent()

    def derive_child(self) -> tuple[TraceContext, Optional[str]]:
        """
        Open a child of the current context and publish it.

        Returns the child and a restore token holding the previously
        published string; hand the token to ``restore`` when the child
        closes so that siblings share the same parent.
        """
        token = self.traceparent()
        child = TraceContext.parse(token).derive_child()
        self.publish(child)
        return child, token

    def restore(self, token: Optional[str]) -> None:
        if token is None:
            self.environ.pop(self.key, None)
        else:
            self.environ[self.key] = token
