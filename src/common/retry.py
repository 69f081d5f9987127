import functools
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, ParamSpec, TypeVar

import httpx

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        return delay + random.uniform(0, self.jitter * delay)


def is_retryable_http_error(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, httpx.RequestError):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


def retry_call(
    func: Callable[[], T],
    *,
    config: RetryConfig,
    is_retryable: Callable[[Exception], bool] = is_retryable_http_error,
    label: str = "call",
) -> T:
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except Exception as e:
            last_exception = e
            if not is_retryable(e) or attempt == config.max_retries:
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for {label} after {delay:.1f}s: {e}"
            )
            time.sleep(delay)

    if last_exception:
        raise last_exception
    raise RuntimeError("Unexpected retry loop exit")


def with_retry(func: Callable[P, T]) -> Callable[P, T]:
    """Retry an httpx-backed method using the owner's ``retry_config``."""

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        owner = args[0] if args else None
        config = getattr(owner, "retry_config", None) or RetryConfig()
        return retry_call(
            lambda: func(*args, **kwargs),
            config=config,
            label=func.__qualname__,
        )

    return wrapper
