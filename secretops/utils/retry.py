"""Bounded retry with exponential backoff for backing-store calls."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry budget for transient store failures.

    With the defaults an operation is tried 3 times, sleeping 1s and then 2s
    between attempts.
    """

    attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailable,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def call(self, description: str, func: Callable[[], T]) -> T:
        """Run ``func`` until it succeeds or the budget is spent.

        The last exception is re-raised unchanged when every attempt fails.
        """

        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "%s failed (attempt %d/%d): %s",
                description,
                state.attempt_number,
                self.attempts,
                error,
            )

        retrying = Retrying(
            retry=retry_if_exception_type(self.retry_on),
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential(multiplier=self.initial_delay, min=self.initial_delay, max=self.max_delay),
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(func)

    @classmethod
    def from_config(cls, config: dict) -> "RetryPolicy":
        return cls(
            attempts=int(config.get("attempts", 3)),
            initial_delay=float(config.get("initial_delay", 1.0)),
            max_delay=float(config.get("max_delay", 30.0)),
        )
