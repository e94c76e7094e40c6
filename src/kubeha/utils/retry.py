# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable

from kubeha.errors import RetryError


def backoff_delay(attempt: int, *, base: float, factor: float, cap: float | None = None) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    delay = base * (factor ** (attempt - 1))
    if cap is not None:
        delay = min(delay, cap)
    return delay


def retry(
    *,
    retries: int,
    delay: float,
    backoff: float = 2.0,
    max_delay: float | None = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Retry decorator for idempotent operations.

    retries: total number of attempts
    delay: seconds to wait after the first failure
    backoff: multiplier applied to the delay after every further failure
    retry_on: exception types to retry; anything else propagates at once
    on_retry: callback(attempt, exception), called for every caught failure
    sleep: used for the backoff wait
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == retries:
                        break
                    sleep(backoff_delay(attempt, base=delay, factor=backoff, cap=max_delay))
            raise RetryError(
                f"{fn.__name__} failed after {retries} attempts: {last_exc}",
                attempts=retries,
            ) from last_exc
        return wrapper
    return decorator
