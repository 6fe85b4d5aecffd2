import math
from contextlib import contextmanager
from logging import getLogger

from mysql.connector import Error as MySQLError

from .common import StoreError
from .config import StoreSettings
from .connection_pool import PooledConnection, get_pool_manager
from .transaction import Transaction

logger = getLogger(__name__)


class MySQLTransaction(Transaction):
    """Transaction pinned to one pooled connection for its whole lifetime."""

    def __init__(self, pooled: PooledConnection, timeout=None, cancel_event=None):
        super().__init__(timeout=timeout, cancel_event=cancel_event)
        self.pooled = pooled
        self.connection, self.cursor = pooled.__enter__()
        try:
            if timeout:
                # a lock wait must not outlive the attempt
                self.cursor.execute(
                    "SET SESSION innodb_lock_wait_timeout = %s", (max(1, math.ceil(timeout)),)
                )
            self.connection.start_transaction()
        except BaseException:
            pooled.__exit__(None, None, None)
            raise

    def _query(self, sql, args):
        self.cursor.execute(sql, args)
        return self.cursor.fetchall()

    def _execute(self, sql, args):
        self.cursor.execute(sql, args)

    def _commit(self):
        self.connection.commit()

    def _rollback(self):
        self.connection.rollback()

    def _release(self):
        self.pooled.__exit__(None, None, None)


class MySQLApi:
    """Store adapter over a MySQL-compatible server (upstream, or a MySQL downstream)."""

    def __init__(self, name: str, mysql_settings: StoreSettings, cancel_event=None):
        self.name = name
        self.mysql_settings = mysql_settings
        self.cancel_event = cancel_event
        self.pool_manager = get_pool_manager()
        self.connection_pool = self.pool_manager.get_or_create_pool(mysql_settings)
        logger.info(
            f"MySQLApi '{name}' initialized for {mysql_settings.describe()} "
            f"using connection pool '{mysql_settings.pool_name}'"
        )

    @contextmanager
    def get_connection(self):
        """Get a connection from the pool with automatic cleanup"""
        with PooledConnection(self.connection_pool, cancel_event=self.cancel_event) as (connection, cursor):
            yield connection, cursor

    def close(self):
        self.pool_manager.close_pool(self.mysql_settings)

    def ping(self):
        self.query("SELECT 1")

    def execute(self, command, args=None):
        with self.get_connection() as (connection, cursor):
            cursor.execute(command, args)

    def query(self, command, args=None, timeout=None) -> list:
        with self.get_connection() as (connection, cursor):
            if timeout:
                cursor.execute(
                    "SET SESSION max_execution_time = %s", (int(timeout * 1000),)
                )
            try:
                cursor.execute(command, args)
                return cursor.fetchall()
            except MySQLError as e:
                logger.error(f"[{self.name}] query failed: {command} ({e})")
                raise StoreError(f"{self.name} query failed: {e}") from e

    def table_exists(self, table_name) -> bool:
        with self.get_connection() as (connection, cursor):
            cursor.execute("SHOW TABLES LIKE %s", (table_name,))
            return bool(cursor.fetchall())

    def drop_table(self, table_name):
        logger.info(f"[{self.name}] drop table {table_name}")
        self.execute(f"DROP TABLE IF EXISTS `{table_name}`")

    def transaction(self, timeout=None, cancel_event=None) -> MySQLTransaction:
        return MySQLTransaction(
            PooledConnection(self.connection_pool, cancel_event=cancel_event or self.cancel_event),
            timeout=timeout,
            cancel_event=cancel_event or self.cancel_event,
        )
