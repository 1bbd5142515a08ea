"""Configuration for the OTLP endpoint, resource identity and retry policy.

Values are read from the environment first (the variables a CI task step
is given), then from the stepotel config file, then from defaults.
Nothing here may fail the instrumented workload: invalid values are
logged and replaced by their defaults.
"""

import configparser
import logging
import math
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import humanfriendly

APP_NAME = "stepotel"

logger = logging.getLogger(__name__)

_home = os.path.expanduser("~")

xdg_config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(_home, ".config")

if platform.system() == "Darwin":
    # macOS
    config_dir = Path("~/Library/Application Support/stepotel").expanduser()
else:
    # Linux or others
    config_dir = Path(os.path.join(xdg_config_home, APP_NAME))


def get_config_file():
    return config_dir / f"{APP_NAME}.cfg"


class ConfigAccessor:
    """
    Read-only access to the stepotel config file.

    Missing files, sections and keys read as defaults; a file that cannot
    be parsed is reported once and treated as empty.

    Usage:
        config = ConfigAccessor()
        value = config.get('otel', 'endpoint', default='http://localhost:4318')
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize a ConfigAccessor with an optional config file path.

        Args:
            config_path: Path to the configuration file. If None, uses the default path.
        """
        if config_path is None:
            self.config_path = get_config_file()
        else:
            self.config_path = config_path

        self.config = configparser.ConfigParser()
        try:
            if self.config_path.exists():
                self.config.read(self.config_path)
        except (OSError, configparser.Error) as e:
            logger.warning(
                f"Could not read configuration from {self.config_path}: {e}. "
                "Using defaults."
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get a configuration value from the specified section and key.

        Args:
            section: The configuration section
            key: The configuration key
            default: Value to return if the section or key doesn't exist

        Returns:
            The configuration value if it exists, otherwise the default value
        """
        try:
            return self.config[section][key]
        except (KeyError, configparser.NoSectionError, configparser.NoOptionError):
            return default


@dataclass(frozen=True)
class TelemetrySettings:
    """Process-wide telemetry settings. Durations are in seconds."""

    service_name: str = "unknown"
    service_version: str = "unknown"
    endpoint: str = ""
    export_timeout: float = 5.0
    retry_count: int = 30
    retry_delay: float = 1.0
    retry_max_delay: float = 60.0
    drain_on_exit: bool = False


# environment variable -> (config section, config key)
ENV_KEYS = {
    "OTEL_SERVICE_NAME": ("otel", "service_name"),
    "OTEL_SERVICE_VERSION": ("otel", "service_version"),
    "OTEL_EXPORTER_OTLP_ENDPOINT": ("otel", "endpoint"),
    "OTEL_EXPORTER_OTLP_TIMEOUT": ("otel", "timeout"),
    "STEPOTEL_DRAIN_ON_EXIT": ("otel", "drain_on_exit"),
    "RETRY_COUNT": ("retry", "count"),
    "RETRY_DELAY": ("retry", "delay"),
    "RETRY_MAX_DELAY": ("retry", "max_delay"),
}


def parse_duration(value: str) -> float:
    """Parse ``"5"``, ``"1.5"``, ``"30s"`` or ``"2m"`` into seconds."""
    try:
        seconds = float(value)
    except ValueError:
        seconds = humanfriendly.parse_timespan(value)
    if not math.isfinite(seconds) or seconds < 0:
        raise ValueError(f"must be a finite, non-negative duration, got {value!r}")
    return seconds


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_count(value: str) -> int:
    count = int(value)
    if count < 1:
        raise ValueError(f"must be at least 1, got {count}")
    return count


def _parse_timeout_ms(value: str) -> float:
    # OTEL_EXPORTER_OTLP_TIMEOUT is expressed in milliseconds
    millis = float(value)
    if not math.isfinite(millis) or millis < 0:
        raise ValueError(f"must be a finite, non-negative number, got {value!r}")
    return millis / 1000.0


_PARSERS = {
    "timeout": ("export_timeout", _parse_timeout_ms),
    "drain_on_exit": ("drain_on_exit", _parse_bool),
    "count": ("retry_count", _parse_count),
    "delay": ("retry_delay", parse_duration),
    "max_delay": ("retry_max_delay", parse_duration),
    "service_name": ("service_name", str),
    "service_version": ("service_version", str),
    "endpoint": ("endpoint", str),
}


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config: Optional[ConfigAccessor] = None,
) -> TelemetrySettings:
    """
    Resolve settings from the environment, the config file and defaults.

    Args:
        environ: Environment mapping, defaults to ``os.environ``.
        config: Config file accessor, defaults to the user config file.

    Returns:
        The resolved TelemetrySettings. Invalid values are replaced by
        their defaults with a warning.
    """
    if environ is None:
        environ = os.environ
    if config is None:
        config = ConfigAccessor()

    values = {}
    for env_key, (section, key) in ENV_KEYS.items():
        raw = environ.get(env_key)
        source = env_key
        if not raw:
            raw = config.get(section, key)
            source = f"[{section}] {key}"
        if not raw:
            continue

        field_name, parse = _PARSERS[key]
        try:
            values[field_name] = parse(raw)
        except (ValueError, humanfriendly.InvalidTimespan) as e:
            logger.warning(f"Ignoring invalid value for {source}: {e}")

    return TelemetrySettings(**values)
