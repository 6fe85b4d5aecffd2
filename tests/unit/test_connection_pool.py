"""Unit tests for pooled connection acquisition, without a MySQL server"""

import threading
import time

import pytest
from mysql.connector.errors import PoolError

from mysql_repl_checker.common import Cancelled
from mysql_repl_checker.config import StoreSettings
from mysql_repl_checker.connection_pool import PooledConnection, get_pool_manager


class FakeConnection:
    def __init__(self):
        self.closed = False

    def cursor(self):
        return FakeCursor()

    def close(self):
        self.closed = True


class FakeCursor:
    def close(self):
        pass


class ExhaustedPool:
    """Pool that stays empty for the first `busy_calls` requests."""

    def __init__(self, busy_calls=None):
        self.busy_calls = busy_calls
        self.calls = 0

    def get_connection(self):
        self.calls += 1
        if self.busy_calls is None or self.calls <= self.busy_calls:
            raise PoolError('Failed getting connection; pool exhausted')
        return FakeConnection()


@pytest.mark.unit
def test_acquire_waits_for_free_connection():
    pool = ExhaustedPool(busy_calls=3)

    with PooledConnection(pool, acquire_timeout=5.0) as (connection, cursor):
        assert isinstance(connection, FakeConnection)

    assert pool.calls == 4
    assert connection.closed, "connection goes back to the pool on exit"


@pytest.mark.unit
def test_acquire_times_out_on_exhausted_pool():
    pooled = PooledConnection(ExhaustedPool(), acquire_timeout=0.1)

    with pytest.raises(PoolError):
        pooled.acquire()


@pytest.mark.unit
def test_acquire_gives_up_when_run_is_cancelled():
    cancel_event = threading.Event()
    pooled = PooledConnection(ExhaustedPool(), acquire_timeout=30.0, cancel_event=cancel_event)
    threading.Timer(0.1, cancel_event.set).start()

    start = time.monotonic()
    with pytest.raises(Cancelled):
        pooled.acquire()

    assert time.monotonic() - start < 5.0


@pytest.mark.unit
def test_close_pool_survives_connector_without_drain_method():
    settings = StoreSettings(pool_name='close-test')
    manager = get_pool_manager()
    pool_key = f'{settings.host}:{settings.port}:{settings.user}:{settings.database}:{settings.pool_name}'
    manager._pools[pool_key] = ExhaustedPool()

    manager.close_pool(settings)

    assert pool_key not in manager._pools
