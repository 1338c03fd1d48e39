"""
Timeout and bounded-retry helpers for blocking external calls.

Both helpers are stateless: every call gets its own executor and its own
attempt counter, so nothing is shared between call sites.
"""

import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Tuple, Type, TypeVar

from deal_recorder.core.errors import ExternalToolFailure, Timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[..., T], timeout_sec: float, label: str, *args, **kwargs) -> T:
    """
    Run ``fn`` on a helper thread and wait at most ``timeout_sec`` seconds.
    On expiry the call is abandoned (the thread is not joined) and
    ``Timeout`` is raised. Exceptions from ``fn`` propagate unchanged.
    """
    if timeout_sec is None or timeout_sec <= 0:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ext-{label}")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_sec)
    except FutureTimeout:
        future.cancel()
        raise Timeout(f"{label} did not finish within {timeout_sec:g}s")
    finally:
        executor.shutdown(wait=False)


def with_retry(
    attempts: int,
    delay: float,
    label: str,
    retry_on: Tuple[Type[BaseException], ...] = (ExternalToolFailure, Timeout),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator factory: call the wrapped function up to ``attempts`` times,
    sleeping ``delay * n`` seconds after the n-th failure (linear backoff).
    Only ``retry_on`` exceptions are retried; the last one is re-raised.
    """
    attempts = max(1, int(attempts))

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    if attempt == attempts:
                        raise
                    wait = delay * attempt
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %.1fs",
                        label, attempt, attempts, exc, wait,
                    )
                    if wait > 0:
                        sleep(wait)
            raise RuntimeError("Unreachable")

        return wrapper

    return decorator
