"""
Invariant scenarios.

A scenario owns one table per shard, a workload step that mutates it inside
the shared round transaction, and a verify step checking an invariant that
must hold on both stores regardless of replication timing:

    scenario.cleanup(store, accounts, shard, force=False)
    scenario.prepare(store, accounts, shard, concurrency)
    loop: scenario.workload(tx, accounts, shard)   -- upstream only
    loop: scenario.verify(store, accounts, shard, tag)  -- both stores

New scenarios implement table_name, create_table_sql, insert_batch_sql,
workload and verify, and are added to build_scenarios.
"""

import random
from logging import getLogger

from .bootstrap import bootstrap
from .common import Cancelled, InvariantViolation, StoreError
from .retry import MAX_RETRIES, RETRY_INTERVAL, run_with_retry


logger = getLogger(__name__)


class Scenario:
    name = 'scenario'

    def __init__(self, retry_attempts=MAX_RETRIES, retry_interval=RETRY_INTERVAL, rng=None):
        self.retry_attempts = retry_attempts
        self.retry_interval = retry_interval
        self.rng = rng or random.Random()

    def table_name(self, shard_id: int) -> str:
        raise NotImplementedError()

    def create_table_sql(self, shard_id: int) -> str:
        raise NotImplementedError()

    def insert_batch_sql(self, shard_id: int, offset: int, size: int) -> str:
        raise NotImplementedError()

    def workload(self, tx, accounts: int, shard_id: int):
        raise NotImplementedError()

    def verify(self, store, accounts: int, shard_id: int, tag: str, timeout=None):
        raise NotImplementedError()

    def prepare(self, store, accounts: int, shard_id: int, concurrency: int,
                batch_size: int = 100, cancel_event=None):
        return bootstrap(
            self, store, accounts, shard_id, concurrency,
            batch_size=batch_size, cancel_event=cancel_event,
        )

    def drop(self, store, shard_id: int):
        table_name = self.table_name(shard_id)
        run_with_retry(
            lambda: store.drop_table(table_name),
            max_attempts=self.retry_attempts,
            interval=self.retry_interval,
            description=f'{store.name}: drop table {table_name}',
        )

    def cleanup(self, store, accounts: int, shard_id: int, force: bool) -> bool:
        """Drop the shard table unless it exists and passes verify.

        Returns True when the table was dropped and has to be rebuilt. Any
        verify failure, including a failed read, counts as corruption.
        """
        if force:
            self.drop(store, shard_id)
            return True

        table_name = self.table_name(shard_id)
        exists = run_with_retry(
            lambda: store.table_exists(table_name),
            max_attempts=self.retry_attempts,
            interval=self.retry_interval,
            description=f'{store.name}: check table {table_name}',
        )
        if not exists:
            self.drop(store, shard_id)
            return True

        try:
            self.verify(store, accounts, shard_id, 'cleanup')
        except Cancelled:
            raise
        except Exception as e:
            logger.warning(f'[{store.name}] {table_name} failed verify, rebuilding: {e}')
            self.drop(store, shard_id)
            return True

        logger.info(f'[{store.name}] {table_name} is valid, reusing existing data')
        return False


class BankScenario(Scenario):
    """Transfers between accounts; total balance and row count never change.

    Transfer amount is drawn from [0, from_balance // 2], so the source
    account can never go negative and no transfer is ever skipped.
    """

    name = 'bank'

    def __init__(self, initial_balance=1000, **kwargs):
        super().__init__(**kwargs)
        self.initial_balance = initial_balance

    def table_name(self, shard_id):
        return f'accounts{shard_id}'

    def create_table_sql(self, shard_id):
        return f'''
CREATE TABLE IF NOT EXISTS `{self.table_name(shard_id)}` (
    id BIGINT PRIMARY KEY,
    balance BIGINT NOT NULL,
    marker BIGINT NOT NULL
)'''

    def insert_batch_sql(self, shard_id, offset, size):
        values = ','.join(
            f'({account_id}, {self.initial_balance}, 0)'
            for account_id in range(offset, offset + size)
        )
        return f'INSERT IGNORE INTO `{self.table_name(shard_id)}` (id, balance, marker) VALUES {values}'

    def pick_accounts(self, accounts):
        while True:
            from_id = self.rng.randrange(accounts)
            to_id = self.rng.randrange(accounts)
            if from_id != to_id:
                return from_id, to_id

    def workload(self, tx, accounts, shard_id):
        table_name = self.table_name(shard_id)
        from_id, to_id = self.pick_accounts(accounts)

        rows = tx.query(
            f'SELECT id, balance FROM `{table_name}` WHERE id IN (%s, %s) ORDER BY id FOR UPDATE',
            (from_id, to_id),
        )
        balances = {row[0]: int(row[1]) for row in rows}
        if from_id not in balances or to_id not in balances:
            raise StoreError(f'{table_name}: missing account {from_id} or {to_id}')

        amount = self.rng.randint(0, balances[from_id] // 2)
        update = f'UPDATE `{table_name}` SET balance = %s, marker = %s WHERE id = %s'
        tx.execute(update, (balances[from_id] - amount, tx.marker, from_id))
        tx.execute(update, (balances[to_id] + amount, tx.marker, to_id))

    def verify(self, store, accounts, shard_id, tag, timeout=None):
        table_name = self.table_name(shard_id)
        rows = store.query(f'SELECT SUM(balance), COUNT(*) FROM `{table_name}`', timeout=timeout)
        total, count = rows[0]
        total = int(total or 0)
        count = int(count)

        expected = accounts * self.initial_balance
        if total != expected:
            raise InvariantViolation(
                self.name, shard_id, tag,
                f'verify balance failed, {table_name} expected={expected}, obtained={total}',
            )
        if count != accounts:
            raise InvariantViolation(
                self.name, shard_id, tag,
                f'verify count failed, {table_name} expected={accounts}, obtained={count}',
            )
        logger.info(f'bank verify pass, table={table_name}, tag={tag}')


class SequenceScenario(Scenario):
    """Every round bumps a global sequence; observed values have no gaps.

    Row 0 is the cursor holding (counter, max sequence). Each round writes
    max + 1 into the cursor and into the next row in round-robin order, so
    sorted sequence values only ever repeat or step by one.
    """

    name = 'sequence'
    CURSOR_ID = 0

    def table_name(self, shard_id):
        return f'accounts_seq{shard_id}'

    def create_table_sql(self, shard_id):
        return f'''
CREATE TABLE IF NOT EXISTS `{self.table_name(shard_id)}` (
    id BIGINT PRIMARY KEY,
    counter BIGINT NOT NULL,
    sequence BIGINT NOT NULL,
    marker BIGINT NOT NULL
)'''

    def insert_batch_sql(self, shard_id, offset, size):
        values = ','.join(f'({row_id}, 0, 0, 0)' for row_id in range(offset, offset + size))
        return (
            f'INSERT IGNORE INTO `{self.table_name(shard_id)}` '
            f'(id, counter, sequence, marker) VALUES {values}'
        )

    @classmethod
    def next_row(cls, counter, accounts):
        """Returns (row id to update, new counter)."""
        next_id = counter % accounts
        if next_id == cls.CURSOR_ID:
            next_id += 1
            counter += 1
        return next_id, counter + 1

    def workload(self, tx, accounts, shard_id):
        table_name = self.table_name(shard_id)
        row = tx.query_one(
            f'SELECT counter, sequence FROM `{table_name}` WHERE id = %s FOR UPDATE',
            (self.CURSOR_ID,),
        )
        if row is None:
            raise StoreError(f'{table_name}: missing cursor row')
        counter, max_sequence = int(row[0]), int(row[1])

        next_id, counter = self.next_row(counter, accounts)
        tx.execute(
            f'UPDATE `{table_name}` SET counter = %s, sequence = %s, marker = %s WHERE id IN (%s, %s)',
            (counter, max_sequence + 1, tx.marker, self.CURSOR_ID, next_id),
        )

    def verify(self, store, accounts, shard_id, tag, timeout=None):
        table_name = self.table_name(shard_id)
        rows = store.query(f'SELECT sequence FROM `{table_name}` ORDER BY sequence', timeout=timeout)

        previous = 0
        for row in rows:
            current = int(row[0])
            if previous != 0 and current not in (previous, previous + 1):
                raise InvariantViolation(
                    self.name, shard_id, tag,
                    f'missing changes sequence {table_name}, '
                    f'current sequence={current}, previous sequence={previous}',
                )
            previous = current
        logger.info(f'sequence verify pass, table={table_name}, tag={tag}')


def build_scenarios(settings):
    common = {
        'retry_attempts': settings.retry_attempts,
        'retry_interval': settings.retry_interval,
    }
    return [
        SequenceScenario(**common),
        BankScenario(initial_balance=settings.initial_balance, **common),
    ]
