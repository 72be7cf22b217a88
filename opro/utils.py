from __future__ import annotations

import asyncio
import functools
import random
import re
from typing import (
    Awaitable,
    Callable,
    List,
    Optional,
    ParamSpec,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from loguru import logger

from .constants import DEFAULT_RETRY_DELAY, PROPOSER_MAX_ATTEMPTS

P = ParamSpec("P")
R = TypeVar("R")
T = TypeVar("T")


def backoff_delay(initial_delay: float, attempt: int) -> float:
    """Delay before the retry that follows failed attempt number ``attempt``."""
    return initial_delay * attempt * attempt


def retry_on_exception(
    max_attempts: int = PROPOSER_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_RETRY_DELAY,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """
    A decorator that retries a coroutine function with quadratic back-off upon specified exceptions.

    After failed attempt ``n`` the wrapper sleeps ``initial_delay * n**2``
    seconds, so the waits grow 1x, 4x, 9x... of the base unit.

    Args:
        max_attempts (int): Total number of attempts, the first one included.
        initial_delay (float): Base delay unit in seconds.
        exceptions (Tuple[Type[Exception], ...]): Exception types that trigger a retry.

    Returns:
        Callable: A decorator that applies retry logic to the target coroutine function.

    Raises:
        The last exception encountered if all attempts fail. Exceptions outside
        ``exceptions`` propagate immediately.

    Example:
        @retry_on_exception(max_attempts=2, initial_delay=1.0)
        async def unreliable_call():
            ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.bind(func=func.__name__, attempt=attempt).error(
                            "failed: {}", e
                        )
                        raise
                    delay = backoff_delay(initial_delay, attempt)
                    logger.bind(func=func.__name__, attempt=attempt).warning(
                        "failed: {}; retrying in {:.1f}s", e, delay
                    )
                    await asyncio.sleep(delay)
            raise RuntimeError("Function did not return a value after retries.")

        return wrapper

    return decorator


# ─────────────────────────── Sampling ────────────────────────────────────
Sampler = Callable[[Sequence[T], int], List[T]]


def random_sampler(rng: Optional[random.Random] = None) -> Sampler:
    """
    Build a "pick n of m" sampler: uniform, without replacement, clamped to ``len(items)``.
    """
    rng = rng or random.Random()

    def sample(items: Sequence[T], n: int) -> List[T]:
        return rng.sample(list(items), min(n, len(items)))

    return sample


# ─────────────────────────── Text helpers ────────────────────────────────
_START_TAG = re.compile(r"</?Start>")


def strip_delimiters(text: str) -> str:
    """Remove echoed ``<Start>``/``</Start>`` markers and surrounding whitespace."""
    return _START_TAG.sub("", text).strip()


def preview(text: str, limit: int = 60) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
