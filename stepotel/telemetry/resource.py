"""Step attributes and resource attributes shared by every exported record."""

import os
import platform
from dataclasses import dataclass
from typing import Iterable, Optional

from stepotel.telemetry.events import Attribute

SDK_LANGUAGE = "python"
SDK_NAME = "stepotel"
UNKNOWN = "unknown"


def split_pair(pair: str) -> tuple[str, str]:
    """Split ``key=value`` on the first ``=`` only; values may contain ``=``."""
    key, _, value = pair.partition("=")
    return key, value


@dataclass(frozen=True)
class AttributeSet:
    """
    Ordered, read-only string attributes of a step.

    Keys are not deduplicated. The same instance is shared by the step
    span, its child spans, log records and metric datapoints.
    """

    attributes: tuple = ()

    @classmethod
    def empty(cls) -> "AttributeSet":
        return cls()

    @classmethod
    def from_pairs(cls, pairs: Iterable[str]) -> "AttributeSet":
        return cls(tuple(Attribute(*split_pair(p)) for p in pairs))

    def to_pairs(self) -> list[str]:
        return [f"{a.key}={a.value}" for a in self.attributes]

    def to_otlp(self) -> list[dict]:
        return [a.to_otlp() for a in self.attributes]

    def __iter__(self):
        return iter(self.attributes)

    def __len__(self):
        return len(self.attributes)


def _host_name() -> str:
    return os.environ.get("HOSTNAME") or platform.node() or UNKNOWN


@dataclass(frozen=True)
class ResourceDescriptor:
    """Resource attributes describing the emitting process and its step."""

    service_name: str = UNKNOWN
    service_version: str = UNKNOWN
    host_name: str = UNKNOWN
    step_name: str = ""

    @classmethod
    def build(cls, settings, step_name: str = "", host_name: Optional[str] = None):
        """Resource for ``step_name`` using the process-wide settings."""
        return cls(
            service_name=settings.service_name or UNKNOWN,
            service_version=settings.service_version or UNKNOWN,
            host_name=host_name or _host_name(),
            step_name=step_name,
        )

    @property
    def attributes(self) -> list[Attribute]:
        return [
            Attribute("service.name", self.service_name),
            Attribute("service.version", self.service_version),
            Attribute("host.name", self.host_name),
            Attribute("telemetry.sdk.language", SDK_LANGUAGE),
            Attribute("telemetry.sdk.name", SDK_NAME),
            Attribute("step.name", self.step_name),
        ]

    def to_otlp(self) -> dict:
        return {"attributes": [a.to_otlp() for a in self.attributes]}
