from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

logger = logging.getLogger("parking_sync.retry")

_LOCK_MARKERS = ("lock wait timeout", "database is locked", "deadlock", "could not obtain lock")
_CONNECTION_MARKERS = (
    "connection refused",
    "can't connect",
    "could not connect",
    "connection reset",
    "server has gone away",
    "lost connection",
    "timed out",
    "too many connections",
)

async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    attempts: int,
    base_delay: float,
    is_transient: Callable[[BaseException], bool],
    backoff: str = "exponential",
    delay_for: Optional[Callable[[BaseException, int], float]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    """
    Calls `fn` until it succeeds or `attempts` are used up.

    Only exceptions accepted by `is_transient` are retried; anything else, and
    the last transient failure, propagates to the caller.
    - backoff="linear": base_delay * attempt (1, 2, 3 ...)
    - backoff="exponential": base_delay * 2 ** (attempt - 1)
    - delay_for(exc, attempt) overrides both when given.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not is_transient(e):
                raise
            if delay_for is not None:
                delay = delay_for(e, attempt)
            elif backoff == "linear":
                delay = base_delay * attempt
            else:
                delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s")
            await sleep(delay)

def is_transient_http_error(exc: BaseException) -> bool:
    # ConnectError covers refused connections and DNS resolution failures;
    # TimeoutException covers connect/read/write and pool timeouts.
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError))

def is_lock_error(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_MARKERS)

def is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if not isinstance(exc, (OperationalError, ConnectionError)):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_MARKERS)

def is_transient_store_error(exc: BaseException) -> bool:
    return is_lock_error(exc) or is_connection_error(exc)

def store_retry_delay(base_delay: float) -> Callable[[BaseException, int], float]:
    """Lock waits back off from base_delay, connectivity errors from twice that."""
    def _delay(exc: BaseException, attempt: int) -> float:
        start = base_delay if is_lock_error(exc) else base_delay * 2
        return start * (2 ** (attempt - 1))
    return _delay
