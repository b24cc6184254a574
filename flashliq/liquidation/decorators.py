"""
Retry decorator for JSON-RPC calls.
"""

import functools
import logging
import time
from typing import Any, Callable

import requests

TRANSIENT_ERRORS = (requests.RequestException, TimeoutError, ConnectionError)


def retry_rpc(logger: logging.Logger, max_retries: int = 3, delay: float = 2) -> Callable:
    """
    Decorator to retry a function on transient transport errors.

    Web3's HTTP provider surfaces socket drops and timeouts as
    ``requests`` exceptions, so those are the ones retried. Anything else
    (reverts, ABI errors) propagates immediately.

    Args:
        logger: Logger instance for retry logging.
        max_retries: Maximum number of retry attempts.
        delay: Delay between retries in seconds.

    Returns:
        Decorated function with retry logic. Returns None once retries are exhausted.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    logger.warning(
                        "Transient RPC error in %s, attempt %s/%s: %s",
                        func.__name__, attempt, max_retries, e,
                    )

                    if attempt == max_retries:
                        logger.error("%s failed after %s attempts.", func.__name__, max_retries)
                        return None

                    time.sleep(delay)

        return wrapper

    return decorator
