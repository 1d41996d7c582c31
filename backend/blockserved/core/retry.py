from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retries(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` up to ``attempts`` times with linear backoff (delay * attempt).

    The last exception is re-raised once every attempt has failed.
    """
    last_err: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            last_err = exc
            if attempt >= attempts:
                break
            logger.warning("%s attempt failed (%s/%s): %s", label, attempt, attempts, exc)
            if delay > 0:
                sleep(delay * attempt)
    assert last_err is not None
    raise last_err
