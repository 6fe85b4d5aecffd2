from logging import getLogger

import clickhouse_connect
import clickhouse_connect.driver.exceptions

from .common import StoreError
from .config import StoreSettings


logger = getLogger(__name__)


class ClickhouseApi:
    """Downstream store adapter for a ClickHouse replica.

    Replicated tables are ReplacingMergeTree, so every read is done with
    final = 1 to see deduplicated rows. The replica is never written by the
    checker except for cleanup drops.
    """

    def __init__(self, name: str, clickhouse_settings: StoreSettings):
        self.name = name
        self.database = clickhouse_settings.database
        self.clickhouse_settings = clickhouse_settings
        self.client = clickhouse_connect.get_client(
            host=clickhouse_settings.host,
            port=clickhouse_settings.port,
            username=clickhouse_settings.user,
            password=clickhouse_settings.password,
            database=clickhouse_settings.database,
            connect_timeout=clickhouse_settings.connection_timeout,
            send_receive_timeout=clickhouse_settings.send_receive_timeout,
        )
        logger.info(f"ClickhouseApi '{name}' initialized for {clickhouse_settings.describe()}")

    def close(self):
        self.client.close()

    def ping(self):
        self.query('SELECT 1')

    def execute(self, command, args=None):
        self.client.command(command, parameters=args)

    def query(self, command, args=None, timeout=None) -> list:
        settings = {'final': 1}
        if timeout:
            settings['max_execution_time'] = max(1, int(timeout))
        try:
            result = self.client.query(command, parameters=args, settings=settings)
        except clickhouse_connect.driver.exceptions.ClickHouseError as e:
            logger.error(f'[{self.name}] query failed: {command} ({e})')
            raise StoreError(f'{self.name} query failed: {e}') from e
        return [tuple(row) for row in result.result_rows]

    def table_exists(self, table_name) -> bool:
        result = self.client.query(
            'EXISTS TABLE {db:Identifier}.{table:Identifier}',
            parameters={'db': self.database, 'table': table_name},
        )
        return bool(result.result_rows and result.result_rows[0][0])

    def drop_table(self, table_name):
        logger.info(f'[{self.name}] drop table {table_name}')
        self.execute(f'DROP TABLE IF EXISTS `{self.database}`.`{table_name}`')

    def transaction(self, timeout=None, cancel_event=None):
        raise StoreError(f'{self.name}: clickhouse store is read-only for the checker')
