import time
from logging import getLogger

import clickhouse_connect.driver.exceptions
from mysql.connector import errors as mysql_errors

from .common import SetupError


logger = getLogger(__name__)


MAX_RETRIES = 5
RETRY_INTERVAL = 0.1

TRANSIENT_ERRORS = (
    mysql_errors.OperationalError,
    mysql_errors.InterfaceError,
    mysql_errors.PoolError,
    clickhouse_connect.driver.exceptions.OperationalError,
    ConnectionError,
    TimeoutError,
)


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TRANSIENT_ERRORS)


def run_with_retry(operation, max_attempts=MAX_RETRIES, interval=RETRY_INTERVAL, description=''):
    """Run an idempotent operation, retrying transient failures.

    Only for DDL, bulk insert and bootstrap checks. Workload transactions are
    never retried here.
    """
    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as e:
            if not is_transient(e):
                raise
            logger.warning(f'attempt {attempt + 1}/{max_attempts} of {description or operation} failed: {e}')
            if attempt == max_attempts - 1:
                raise SetupError(
                    f'{description or operation} failed after {max_attempts} attempts: {e}'
                ) from e
            time.sleep(interval)


def must_execute(store, query, args=None, max_attempts=MAX_RETRIES, interval=RETRY_INTERVAL):
    return run_with_retry(
        lambda: store.execute(query, args),
        max_attempts=max_attempts,
        interval=interval,
        description=f'{store.name}: {query.strip()}',
    )
