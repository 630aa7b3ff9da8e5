import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.utils.logger import logger

T = TypeVar("T")


def _always_retry(error: BaseException, attempt: int) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for flaky native tool invocations."""

    attempts: int = 3
    base_delay_ms: float = 200
    max_delay_ms: float = 2000
    jitter: float = 0.2
    should_retry: Callable[[BaseException, int], bool] = field(default=_always_retry)


def compute_delay(
    base_delay_ms: float,
    max_delay_ms: float,
    jitter: float,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay in milliseconds before retrying after failed attempt number `attempt` (1-based).

    The exponential value is capped at `max_delay_ms` and then shifted by a uniform
    offset in [-delay * jitter, +delay * jitter], never going below zero.
    """
    delay = min(max_delay_ms, base_delay_ms * 2 ** (attempt - 1))
    jitter_amount = delay * jitter
    return max(0.0, delay + (rand() * 2 - 1) * jitter_amount)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or the policy gives up.

    The last error is re-raised as soon as the final attempt fails or
    `should_retry` declines; no delay is spent in that case.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except Exception as err:
            last_error = err
            if attempt >= policy.attempts:
                break
            if not policy.should_retry(err, attempt):
                break
            delay_ms = compute_delay(policy.base_delay_ms, policy.max_delay_ms, policy.jitter, attempt)
            logger.warning(f"Attempt {attempt}/{policy.attempts} failed ({err}); retrying in {delay_ms:.0f} ms")
            await sleep(delay_ms / 1000.0)
    if last_error is not None:
        raise last_error
    raise AppError(ErrorCode.COMMAND_FAILED, "retry failed")
