"""Retry with exponential backoff, traced as a single span."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from stepotel.config import TelemetrySettings
from stepotel.telemetry.tracer import Tracer, is_failure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often to retry and how long to wait in between (seconds)."""

    max_attempts: int = 30
    initial_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings: TelemetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_count,
            initial_delay=settings.retry_delay,
            max_delay=settings.retry_max_delay,
        )

    def delays(self):
        """Delays slept before attempts 2..max_attempts."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = min(delay * 2, self.max_delay)


class RetryExecutor:
    """
    Runs an operation until it succeeds or the attempts are exhausted.

    The whole attempt sequence is one span named after the operation; its
    duration is the total cost of the retries and its status the final
    outcome. Individual attempts are not traced.
    """

    def __init__(
        self,
        tracer: Tracer,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tracer = tracer
        self.policy = policy or RetryPolicy.from_settings(tracer.settings)
        self.sleep = sleep

    def run(
        self,
        name: str,
        operation: Callable,
        *args,
        policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        """
        Run ``operation(*args, **kwargs)`` with retries inside span ``name``.

        An attempt fails when it raises or returns a completed process with
        a non-zero return code.
        After the last attempt, its exception is re-raised or its failing
        result returned.
        """
        policy = policy or self.policy

        def attempts():
            delays = policy.delays()
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = operation(*args, **kwargs)
                except Exception as e:
                    error, result = e, None
                else:
                    if not is_failure(result):
                        return result
                    error = None

                delay = next(delays, None)
                if delay is None:
                    logger.debug(f"{name}: giving up after {attempt} attempts")
                    if error is not None:
                        raise error
                    return result

                logger.debug(
                    f"{name}: attempt {attempt}/{policy.max_attempts} failed, "
                    f"retrying in {delay}s"
                )
                self.sleep(delay)

        return self.tracer.trace(name, attempts)
