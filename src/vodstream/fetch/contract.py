"""
The fetch capability the stream core depends on.

A fetcher is any callable ``fetch(locator, timeout) -> bytes``. The HTTP
implementation lives in ``vodstream.fetch.http``; tests substitute a plain
function. Nothing here subclasses anything: swapping transports means
passing a different callable.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError
from typing import Callable, Optional, Protocol, Tuple, Type, TypeVar

from ..errors import FetchError
from ..manifest.model import Locator

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Fetcher(Protocol):
    def __call__(self, locator: Locator, timeout: Optional[float] = None) -> bytes:
        """Return the bytes at ``locator``.

        Implementations raise FetchError (or TimeoutError / OSError, which
        are normalized) on failure and must honor ``timeout`` in seconds.
        """
        ...


def fetch_once(fetch: Fetcher, locator: Locator, timeout: Optional[float]) -> bytes:
    """Call the fetcher once, normalizing transport failures to FetchError."""
    try:
        data = fetch(locator, timeout)
    except FetchError as e:
        if e.locator is None:
            e.locator = locator
        raise
    except (TimeoutError, OSError) as e:
        raise FetchError(f"Failed to fetch {locator}: {e}", locator=locator) from e
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"Fetcher returned {type(data).__name__}, expected bytes")
    return bytes(data)


def retrying(
    operation: Callable[[], T],
    *,
    retries: int,
    backoff: float,
    cancelled: threading.Event,
    retry_on: Tuple[Type[BaseException], ...] = (FetchError,),
    describe: str = "operation",
) -> T:
    """Run ``operation`` with up to ``retries`` extra attempts.

    Waits ``backoff * attempt`` seconds between attempts. The wait is cut
    short by ``cancelled``; once it is set no new attempt starts and
    CancelledError is raised. The last retryable error propagates when the
    budget is spent; errors outside ``retry_on`` propagate immediately.
    """
    attempt = 0
    while True:
        if cancelled.is_set():
            raise CancelledError()
        try:
            return operation()
        except retry_on as e:
            attempt += 1
            if attempt > retries:
                raise
            delay = backoff * attempt
            LOGGER.debug("%s failed (%s), retry %d/%d in %.2fs", describe, e, attempt, retries, delay)
            if cancelled.wait(delay):
                raise CancelledError() from e
