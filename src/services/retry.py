"""Retry utilities using tenacity."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Type, TypeVar, ParamSpec

from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import get_settings
from core.exceptions import PartialWriteError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

P = ParamSpec("P")
T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    retry_exceptions: tuple[Type[Exception], ...] = (ConnectionError, TimeoutError),
    min_wait: float = 1,
    max_wait: float = 10,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator to add retry logic to a collaborator call.

    Args:
        max_attempts: Maximum number of attempts.
        retry_exceptions: Tuple of exception types to retry on.
        min_wait: Minimum wait time between retries.
        max_wait: Maximum wait time between retries.

    Example:
        @with_retry(max_attempts=3, retry_exceptions=(httpx.TransportError,))
        def fetch():
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @retry(
            retry=retry_if_exception_type(retry_exceptions),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=min_wait or 1, min=min_wait, max=max_wait),
            before_sleep=before_sleep_log(LOGGER, log_level=logging.INFO),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return func(*args, **kwargs)

        return wrapper

    return decorator


@dataclass(frozen=True)
class ProjectionRetryPolicy:
    """How hard a transition tries to land its projection writes."""

    attempts: int
    min_wait: float
    max_wait: float

    @classmethod
    def from_settings(cls) -> "ProjectionRetryPolicy":
        return cls(
            attempts=SETTINGS.projection_retry_attempts,
            min_wait=SETTINGS.projection_retry_min_wait,
            max_wait=SETTINGS.projection_retry_max_wait,
        )

    def retrying(self) -> Retrying:
        """Build a tenacity Retrying that only retries partial projection writes."""
        return Retrying(
            retry=retry_if_exception_type(PartialWriteError),
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            before_sleep=before_sleep_log(LOGGER, log_level=logging.INFO),
            reraise=True,
        )


__all__ = [
    "with_retry",
    "ProjectionRetryPolicy",
]
