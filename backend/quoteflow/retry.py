# retry.py
# Exponential backoff around a flaky external call
import logging
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def retry_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    is_retriable: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds. Only errors for which is_retriable(err) is true are
    retried; delays grow as base_delay * 2**attempt (1s, 2s, 4s ...). The last
    error is re-raised once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as err:
            last = attempt == max_attempts - 1
            if last or is_retriable is None or not is_retriable(err):
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Retriable failure (%s), retrying in %.1fs (attempt %d/%d)",
                err, delay, attempt + 1, max_attempts,
                extra={"attempt": attempt + 1, "delay": delay},
            )
            sleep(delay)
            attempt += 1
