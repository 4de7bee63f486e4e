"""
kubesetup/utils/async_retry.py

Retry decorator for idempotent async steps: reading join credentials from a
control plane, fetching stable release markers from dl.k8s.io. Detached
remote jobs are never retried through here.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)

AsyncFn = Callable[P, Coroutine[Any, Any, R]]


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    *,
    linear_backoff: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[[AsyncFn], AsyncFn]:
    """Retries the decorated coroutine function when it raises `retry_on`.

    Args:
        retries (int, optional):
            Total attempts, at least one. Defaults to 3.
        delay (float, optional):
            Seconds to wait before the next attempt. Defaults to 1.0.
        noisy (bool, optional):
            Log a warning per failed attempt and an error when giving up.
        linear_backoff (bool, optional):
            Wait `attempt * delay` seconds instead of a flat `delay`.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exceptions worth another attempt; anything else propagates at once.

    Returns:
        A decorator preserving the wrapped function's signature.
    """
    attempts = max(retries, 1)

    def decorator(func: AsyncFn) -> AsyncFn:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= attempts:
                        if noisy:
                            logger.error("%s failed after %d attempt(s)", func.__qualname__, attempts)
                        raise
                    if noisy:
                        logger.warning(
                            "%s attempt %d/%d failed: %s", func.__qualname__, attempt, attempts, exc
                        )
                    await asyncio.sleep(delay * attempt if linear_backoff else delay)
                    attempt += 1

        return wrapper

    return decorator
