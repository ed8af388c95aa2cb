"""
Retry engine for QuickBooks API calls.

Retries transient failures (network errors, 429, 500, 502, 503, 504) with
exponential backoff and jitter. Client errors (400, 401, 403, 404) are
re-raised on the first attempt.

Usage:
    response = await execute(lambda: client.request(...), RetryConfig())
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from qbo_sync.errors import QBOAPIError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings. `max_retries=3` means up to 4 attempts."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception should trigger a retry.

    Anything carrying an HTTP status is classified by that status; transport
    failures have no status and are always retryable.
    """
    if isinstance(exception, (httpx.TransportError, httpx.TimeoutException)):
        return True

    if not isinstance(exception, QBOAPIError):
        return False

    if exception.status_code is None:
        return True

    return exception.status_code in RETRYABLE_STATUS_CODES


def compute_delay(
    attempt: int,
    config: RetryConfig,
    rng: random.Random | None = None,
) -> float:
    """
    Delay in seconds before retry number `attempt` (0-based).

    min(base * exponential_base ** attempt, max_delay), then scaled by a
    factor drawn from [0.8, 1.2] when jitter is on.
    """
    delay = min(config.base_delay * config.exponential_base ** attempt, config.max_delay)
    if config.jitter:
        delay *= (rng or random).uniform(0.8, 1.2)
    return delay


class wait_jittered_exponential(wait_base):
    """tenacity wait strategy backed by `compute_delay`."""

    def __init__(self, config: RetryConfig, rng: random.Random | None = None):
        self.config = config
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_delay(retry_state.attempt_number - 1, self.config, self.rng)


def _log_before_sleep(log: Any, config: RetryConfig) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.info(
            "Retrying API call",
            attempt=retry_state.attempt_number,
            max_retries=config.max_retries,
            delay_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            status_code=getattr(exc, "status_code", None),
            error=str(exc),
        )

    return before_sleep


async def execute(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
    log: Any = None,
) -> T:
    """
    Run `fn` until it succeeds, a fatal error occurs, or retries run out.

    Each call of `fn` must perform exactly one externally observable attempt.
    On exhaustion the last error is raised with an `attempts` attribute.
    """
    config = config or RetryConfig()
    log = log or logger

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(config.max_retries + 1),
        wait=wait_jittered_exponential(config, rng),
        before_sleep=_log_before_sleep(log, config),
        sleep=sleep,
        reraise=True,
    )

    try:
        result = await retrying(fn)
    except Exception as exc:
        attempts = retrying.statistics.get("attempt_number", 1)
        exc.attempts = attempts
        if is_retryable_error(exc):
            log.error(
                "Retries exhausted",
                attempts=attempts,
                status_code=getattr(exc, "status_code", None),
                error=str(exc),
            )
        else:
            log.error(
                "Non-retryable error",
                attempts=attempts,
                status_code=getattr(exc, "status_code", None),
                error=str(exc),
            )
        raise

    attempts = retrying.statistics.get("attempt_number", 1)
    if attempts > 1:
        log.info("API call succeeded after retries", attempts=attempts)
    return result
