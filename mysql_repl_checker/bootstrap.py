import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from logging import getLogger

from .common import Cancelled, SetupError
from .retry import must_execute


logger = getLogger(__name__)


DEFAULT_BATCH_SIZE = 100


def plan_batches(accounts, batch_size=DEFAULT_BATCH_SIZE):
    """Split accounts into (offset, size) batches, the last one clipped."""
    job_count = (accounts + batch_size - 1) // batch_size
    batches = []
    for job in range(job_count):
        offset = job * batch_size
        batches.append((offset, min(batch_size, accounts - offset)))
    return batches


def insert_batch(scenario, store, shard_id, offset, size, cancel_event=None):
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled()
    query = scenario.insert_batch_sql(shard_id, offset, size)
    start = time.time()
    must_execute(
        store, query,
        max_attempts=scenario.retry_attempts, interval=scenario.retry_interval,
    )
    logger.info(
        f'[{store.name}] insert {size} rows into {scenario.table_name(shard_id)} '
        f'at offset {offset} takes {time.time() - start:.3f}s'
    )
    return size


def bootstrap(scenario, store, accounts, shard_id, concurrency,
              batch_size=DEFAULT_BATCH_SIZE, cancel_event=None) -> bool:
    """Create and fill one scenario table of a shard.

    Existing valid data is reused, so running bootstrap again is a no-op.
    Returns True when the table was (re)built.
    """
    if not scenario.cleanup(store, accounts, shard_id, force=False):
        return False

    table_name = scenario.table_name(shard_id)
    must_execute(
        store, scenario.create_table_sql(shard_id),
        max_attempts=scenario.retry_attempts, interval=scenario.retry_interval,
    )

    batches = plan_batches(accounts, batch_size)
    logger.info(
        f'[{store.name}] bootstrap {table_name}: {accounts} rows in {len(batches)} batches, '
        f'{concurrency} workers'
    )

    inserted = 0
    first_error = None
    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f'bootstrap-{table_name}') as executor:
        futures = [
            executor.submit(insert_batch, scenario, store, shard_id, offset, size, cancel_event)
            for offset, size in batches
        ]
        for future in as_completed(futures):
            try:
                inserted += future.result()
            except Exception as e:
                if first_error is None:
                    first_error = e
                    for pending in futures:
                        pending.cancel()

    if isinstance(first_error, (Cancelled, SetupError)):
        raise first_error
    if first_error is not None:
        raise SetupError(f'bootstrap of {table_name} failed: {first_error}') from first_error

    logger.info(f'[{store.name}] bootstrap {table_name} done, {inserted} rows')
    return True


def bootstrap_shard(scenarios, store, accounts, shard_id, concurrency,
                    batch_size=DEFAULT_BATCH_SIZE, cancel_event=None):
    for scenario in scenarios:
        scenario.prepare(
            store, accounts, shard_id, concurrency,
            batch_size=batch_size, cancel_event=cancel_event,
        )
