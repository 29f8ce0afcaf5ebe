import logging
import time
from typing import Callable, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


def error_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception, if any."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return int(status) if status is not None else None


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    status = error_status(exc)
    return status is not None and (status >= 500 or status == 429)


def retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    delay: float = 0.5,
    backoff_factor: float = 2,
) -> T:
    """
    Call `fn` until it succeeds, sleeping delay * backoff_factor**attempt
    between attempts. Client errors (4xx other than 429) are raised at once.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt == max_retries:
                raise
            status = error_status(exc)
            if status is not None and 400 <= status < 500 and status != 429:
                raise
            logger.warning("Retrying failed operation (attempt %s/%s): %s", attempt + 1, max_retries, exc)
            time.sleep(delay * backoff_factor ** attempt)
    raise RuntimeError("unreachable")
