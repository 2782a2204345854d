import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from parking_sync.erp.retry import (
    is_lock_error, is_transient_http_error, is_transient_store_error, retry_async, store_retry_delay,
)

class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)

def flaky(failures, exc_factory, result="ok"):
    state = {"calls": 0}

    async def _fn():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise exc_factory()
        return result
    return _fn, state

@pytest.mark.asyncio
async def test_linear_backoff_until_success():
    sleep = Recorder()
    fn, state = flaky(2, lambda: httpx.ConnectError("refused"))

    result = await retry_async(fn, attempts=3, base_delay=1.0, is_transient=is_transient_http_error,
                               backoff="linear", sleep=sleep)

    assert result == "ok"
    assert state["calls"] == 3
    assert sleep.delays == [1.0, 2.0]

@pytest.mark.asyncio
async def test_exponential_backoff_gives_up_after_attempts():
    sleep = Recorder()
    fn, state = flaky(10, lambda: httpx.ConnectTimeout("slow"))

    with pytest.raises(httpx.ConnectTimeout):
        await retry_async(fn, attempts=4, base_delay=0.5, is_transient=is_transient_http_error, sleep=sleep)

    assert state["calls"] == 4
    assert sleep.delays == [0.5, 1.0, 2.0]

@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    sleep = Recorder()
    fn, state = flaky(1, lambda: ValueError("bad data"))

    with pytest.raises(ValueError):
        await retry_async(fn, attempts=5, base_delay=1, is_transient=is_transient_http_error, sleep=sleep)
    assert state["calls"] == 1
    assert sleep.delays == []

def test_store_error_classification():
    locked = OperationalError("INSERT", {}, Exception("database is locked"))
    lock_wait = OperationalError("UPDATE", {}, Exception("Lock wait timeout exceeded; try restarting transaction"))
    refused = OperationalError("SELECT", {}, Exception("Can't connect to server: Connection refused"))
    duplicate = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    assert is_lock_error(locked) and is_lock_error(lock_wait)
    assert not is_lock_error(refused)
    assert is_transient_store_error(refused)
    assert not is_transient_store_error(duplicate)

def test_store_delay_lock_vs_connection():
    delay = store_retry_delay(0.5)
    locked = OperationalError("INSERT", {}, Exception("database is locked"))
    refused = OperationalError("SELECT", {}, Exception("connection refused"))
    assert [delay(locked, n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert [delay(refused, n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
