"""Bounded retry with a fixed delay for network operations."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from commasync.core.errors import RemoteAuthError

T = TypeVar("T")


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    exceptions: tuple[type[BaseException], ...],
    description: str,
    logger: logging.Logger | None = None,
    log_extra: dict | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` up to ``attempts`` times, sleeping ``delay`` between tries.

    Authentication failures are never retried. The last exception is re-raised
    once the attempts are exhausted.
    """

    logger = logger or logging.getLogger(__name__)
    log_extra = log_extra or {}
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RemoteAuthError:
            raise
        except exceptions as exc:
            if attempt >= attempts:
                logger.error(
                    "%s failed attempts=%d error=%s", description, attempts, exc, extra=log_extra
                )
                raise
            logger.warning(
                "%s failed attempt=%d/%d error=%s retry_in=%ss",
                description,
                attempt,
                attempts,
                exc,
                delay,
                extra=log_extra,
            )
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
