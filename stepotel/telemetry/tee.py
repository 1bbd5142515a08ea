"""
Tee of a step's combined output.

Every line written to the step's stdout/stderr is
1. appended, unchanged, to the step log file,
2. exported as a log record correlated to the step span,
3. echoed to the console prefixed with
   ``traceId=<id> parentId=<id> spanId=<id>``.

The prefix only goes to the console, never to the log file or the
exported record.
"""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import IO, Iterable, Optional, Union

from stepotel.telemetry.tracer import Tracer

logger = logging.getLogger(__name__)

# How long detach() waits for the pump to drain the pipe.
DRAIN_TIMEOUT = 5.0


def _stream_fd(stream) -> Optional[int]:
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


def _console_handlers() -> list:
    """Stream handlers of the stepotel and root loggers writing to fd 1 or 2."""
    handlers = []
    for name in ("stepotel", None):
        for handler in logging.getLogger(name).handlers:
            if not isinstance(handler, logging.StreamHandler):
                continue
            if _stream_fd(handler.stream) in (1, 2):
                handlers.append(handler)
    return handlers


class LogTee:
    """
    Splits step output between log file, OTLP logs and the console.

    Use ``feed`` for a stream you already hold (e.g. a subprocess pipe with
    stderr merged into stdout), or ``attach``/``detach`` (or ``with``) to
    capture everything written to file descriptors 1 and 2, including
    output of child processes.
    """

    def __init__(
        self,
        tracer: Tracer,
        log_path: Union[str, Path, None] = None,
        console: Optional[IO] = None,
    ):
        step = tracer.current_step
        if step is None:
            raise RuntimeError("Must start a step before attaching the log tee")

        self.tracer = tracer
        self.step = step
        self.log_path = Path(log_path) if log_path else None
        self.console = console
        self._log_file: Optional[IO] = None
        self._owned_console: Optional[IO] = None
        self._diagnostics: Optional[IO] = None
        self._redirected_handlers: list = []
        self._saved_fds: Optional[tuple[int, int]] = None
        self._pump: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(self.log_path, "w", encoding="utf-8", buffering=1)

    @property
    def prefix(self) -> str:
        ctx = self.step.context
        return (
            f"traceId={ctx.trace_id} parentId={ctx.parent_span_id} spanId={ctx.span_id}"
        )

    def handle_line(self, line: str) -> None:
        """Persist, export and echo one line of output."""
        line = line.rstrip("\r\n")
        with self._lock:
            if self._log_file is not None:
                self._log_file.write(line + "\n")
            self.tracer.log(line)
            console = self.console or sys.stdout
            console.write(f"{self.prefix} {line}\n")
            console.flush()

    def feed(self, stream: Iterable[str]) -> None:
        """Handle every line of ``stream`` until it is exhausted."""
        for line in stream:
            self.handle_line(line)

    def attach(self) -> "LogTee":
        """Redirect file descriptors 1 and 2 through the tee."""
        if self._saved_fds is not None:
            return self

        sys.stdout.flush()
        sys.stderr.flush()
        self._saved_fds = (os.dup(1), os.dup(2))
        if self.console is None:
            self._owned_console = os.fdopen(
                os.dup(self._saved_fds[0]), "w", encoding="utf-8", buffering=1
            )
            self.console = self._owned_console

        # stepotel's own diagnostics must not be fed back into the pipe
        self._diagnostics = os.fdopen(
            os.dup(self._saved_fds[1]), "w", encoding="utf-8", buffering=1
        )
        for handler in _console_handlers():
            self._redirected_handlers.append((handler, handler.stream))
            handler.setStream(self._diagnostics)

        read_fd, write_fd = os.pipe()
        os.dup2(write_fd, 1)
        os.dup2(write_fd, 2)
        os.close(write_fd)

        reader = os.fdopen(read_fd, "r", encoding="utf-8", errors="replace")
        self._pump = threading.Thread(
            target=self._run_pump, args=(reader,), name="stepotel-tee", daemon=True
        )
        self._pump.start()
        return self

    def _run_pump(self, reader: IO) -> None:
        with reader:
            try:
                self.feed(reader)
            except OSError as e:
                logger.debug(f"Log tee stopped: {e}")

    def detach(self) -> None:
        """Restore the original descriptors and drain pending output."""
        if self._saved_fds is None:
            return

        sys.stdout.flush()
        sys.stderr.flush()
        saved_out, saved_err = self._saved_fds
        os.dup2(saved_out, 1)
        os.dup2(saved_err, 2)
        os.close(saved_out)
        os.close(saved_err)
        self._saved_fds = None

        # EOF arrives once no process holds the write end of the pipe
        if self._pump is not None:
            self._pump.join(DRAIN_TIMEOUT)
            self._pump = None

        for handler, stream in self._redirected_handlers:
            handler.setStream(stream)
        self._redirected_handlers = []
        if self._diagnostics is not None:
            self._diagnostics.close()
            self._diagnostics = None

    def close(self) -> None:
        self.detach()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
        if self._owned_console is not None:
            self._owned_console.close()
            self.console = self._owned_console = None

    def __enter__(self):
        return self.attach()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
