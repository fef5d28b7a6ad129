"""
Bounded retry with exponential backoff for remote calls.

`with_retry` never raises for transient conditions: it returns a RetryResult
tagged OK, TRANSIENT_FAILURE or TIMEOUT and lets the caller map that onto
its own exceptions.
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget: attempts include the first call."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 8000


class RetryOutcome(str, enum.Enum):
    OK = "ok"
    TRANSIENT_FAILURE = "transient_failure"
    TIMEOUT = "timeout"


@dataclass
class RetryResult(Generic[T]):
    outcome: RetryOutcome
    value: Optional[T] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == RetryOutcome.OK


def calculate_backoff_ms(attempt: int, *, base_delay_ms: int, max_delay_ms: int) -> int:
    """
    Delay before the retry that follows `attempt` (1-based).

        delay = base_delay_ms * 2 ** (attempt - 1), capped at max_delay_ms

    Large attempt numbers are clamped without computing huge powers.
    """
    exponent = max(attempt - 1, 0)

    if base_delay_ms <= 0 or max_delay_ms <= 0:
        return 0
    if base_delay_ms >= max_delay_ms:
        return max_delay_ms

    # smallest exponent whose multiplier reaches ceil(max / base)
    required_multiplier = (max_delay_ms + base_delay_ms - 1) // base_delay_ms
    threshold = required_multiplier.bit_length() - 1
    if required_multiplier & (required_multiplier - 1):
        threshold += 1
    if exponent >= threshold:
        return max_delay_ms

    return min(base_delay_ms * (1 << exponent), max_delay_ms)


def is_retryable_response(response: httpx.Response) -> bool:
    """5xx and rate-limit responses are transient"""
    return response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    timeout_seconds: Optional[float] = None,
    is_retryable: Callable[[T], bool] = is_retryable_response,
    operation_name: str = "remote_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    Run `operation` under `policy`.

    - transport errors and values for which `is_retryable` is true are retried
      with exponential backoff until the attempt budget is spent;
    - a timeout cancels the in-flight call and returns TIMEOUT at once;
    - anything else is returned as OK, including client-error responses.
    """
    max_attempts = max(policy.max_attempts, 1)
    last_value: Optional[T] = None
    last_error: Optional[str] = None

    for attempt in range(1, max_attempts + 1):
        try:
            if timeout_seconds:
                value = await asyncio.wait_for(operation(), timeout=timeout_seconds)
            else:
                value = await operation()
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning(
                f"{operation_name} timed out",
                extra_data={
                    "operation": operation_name,
                    "attempt": attempt,
                    "timeout_seconds": timeout_seconds,
                    "error": str(exc) or type(exc).__name__,
                },
            )
            return RetryResult(
                outcome=RetryOutcome.TIMEOUT,
                error=f"timed out after {timeout_seconds}s" if timeout_seconds else "timed out",
                attempts=attempt,
            )
        except httpx.TransportError as exc:
            last_value = None
            last_error = f"{type(exc).__name__}: {exc}"
        else:
            if not is_retryable(value):
                return RetryResult(outcome=RetryOutcome.OK, value=value, attempts=attempt)
            last_value = value
            last_error = f"retryable response: {getattr(value, 'status_code', value)}"

        if attempt < max_attempts:
            delay_ms = calculate_backoff_ms(
                attempt,
                base_delay_ms=policy.base_delay_ms,
                max_delay_ms=policy.max_delay_ms,
            )
            logger.info(
                f"{operation_name} failed, retrying",
                extra_data={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay_ms": delay_ms,
                    "error": last_error,
                },
            )
            await sleep(delay_ms / 1000)

    logger.warning(
        f"{operation_name} exhausted retry budget",
        extra_data={
            "operation": operation_name,
            "attempts": max_attempts,
            "error": last_error,
        },
    )
    return RetryResult(
        outcome=RetryOutcome.TRANSIENT_FAILURE,
        value=last_value,
        error=last_error,
        attempts=max_attempts,
    )
