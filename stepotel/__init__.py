"""stepotel: OTLP tracing, logging and metrics for short-lived task steps."""

__version__ = "0.1.0"
