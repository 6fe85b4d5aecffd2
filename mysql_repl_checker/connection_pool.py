"""MySQL Connection Pool Manager for mysql-repl-checker"""

import hashlib
import threading
import time
from logging import getLogger

from mysql.connector import Error as MySQLError
from mysql.connector.errors import PoolError
from mysql.connector.pooling import MySQLConnectionPool

from .common import Cancelled
from .config import MAX_POOL_SIZE, StoreSettings

logger = getLogger(__name__)


ACQUIRE_TIMEOUT = 30.0
ACQUIRE_INTERVAL = 0.05


class ConnectionPoolManager:
    """Singleton connection pool manager for MySQL connections"""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._pools = {}
            self._initialized = True

    def _generate_short_pool_name(self, pool_key: str, user: str) -> str:
        """
        Generate shortened pool name for MySQLConnectionPool.

        MySQL connector limits pool names to ~64 characters, so the full
        pool_key is only used for internal dictionary lookups.

        Returns:
            Shortened pool name in format: pool_{user}_{hash8}
        """
        hash_digest = hashlib.sha256(pool_key.encode("utf-8")).hexdigest()[:8]
        safe_user = user[:16] if len(user) > 16 else user
        return f"pool_{safe_user}_{hash_digest}"

    def get_or_create_pool(self, settings: StoreSettings) -> MySQLConnectionPool:
        """
        Get or create a connection pool for the given store settings

        Pools are keyed by host, port, user, database and pool name, so the
        upstream and downstream stores never share connections.
        """
        pool_key = (
            f"{settings.host}:{settings.port}:{settings.user}:"
            f"{settings.database}:{settings.pool_name}"
        )

        if pool_key not in self._pools:
            with self._lock:
                if pool_key not in self._pools:
                    try:
                        config = settings.get_connection_config(autocommit=True)
                        pool_size = min(settings.pool_size, MAX_POOL_SIZE)
                        short_pool_name = self._generate_short_pool_name(pool_key, settings.user)

                        self._pools[pool_key] = MySQLConnectionPool(
                            pool_name=short_pool_name,
                            pool_size=pool_size,
                            pool_reset_session=True,
                            **config,
                        )

                        logger.info(
                            f"Created MySQL connection pool '{short_pool_name}' "
                            f"for {settings.describe()} with {pool_size} connections"
                        )

                    except MySQLError as e:
                        logger.error(
                            f"Failed to create connection pool for {settings.describe()}: {e}"
                        )
                        raise

        return self._pools[pool_key]

    def close_pool(self, settings: StoreSettings):
        pool_key = (
            f"{settings.host}:{settings.port}:{settings.user}:"
            f"{settings.database}:{settings.pool_name}"
        )
        with self._lock:
            pool = self._pools.pop(pool_key, None)
        if pool is None:
            return
        # mysql-connector has no public call closing idle pooled connections
        try:
            pool._remove_connections()
        except (MySQLError, AttributeError) as e:
            logger.warning(f"Error closing pool for {settings.describe()}: {e}")
        logger.info(f"Connection pool for {settings.describe()} closed")


class PooledConnection:
    """Context manager for pooled MySQL connections.

    Waits for a free connection when the pool is exhausted instead of failing.
    The wait gives up with Cancelled once cancel_event is set.
    """

    def __init__(self, pool: MySQLConnectionPool, acquire_timeout: float = ACQUIRE_TIMEOUT, cancel_event=None):
        self.pool = pool
        self.acquire_timeout = acquire_timeout
        self.cancel_event = cancel_event
        self.connection = None
        self.cursor = None

    def acquire(self):
        deadline = time.monotonic() + self.acquire_timeout
        while True:
            try:
                return self.pool.get_connection()
            except PoolError:
                if time.monotonic() > deadline:
                    logger.error("Timed out waiting for a pooled connection")
                    raise
                if self.cancel_event is None:
                    time.sleep(ACQUIRE_INTERVAL)
                elif self.cancel_event.wait(ACQUIRE_INTERVAL):
                    raise Cancelled()

    def __enter__(self):
        try:
            self.connection = self.acquire()
            self.cursor = self.connection.cursor()
            return self.connection, self.cursor
        except MySQLError as e:
            logger.error(f"Failed to get connection from pool: {e}")
            raise

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.cursor:
            self.cursor.close()
        if self.connection:
            self.connection.close()  # Returns connection to pool


def get_pool_manager() -> ConnectionPoolManager:
    """Get the singleton connection pool manager"""
    return ConnectionPoolManager()
