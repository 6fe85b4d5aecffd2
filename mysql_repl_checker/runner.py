import threading
import time
from logging import getLogger

from fastapi import APIRouter, FastAPI
from uvicorn import Config, Server

from .bootstrap import bootstrap_shard
from .clickhouse_api import ClickhouseApi
from .common import BarrierTimeout, Cancelled, CheckerError, RunState, Status
from .config import MAX_POOL_SIZE, Settings, StoreSettings
from .mysql_api import MySQLApi
from .retry import must_execute, run_with_retry
from .scenarios import build_scenarios
from .utils import format_floats


logger = getLogger(__name__)


BARRIER_TABLE = 'finishmark'


def open_store(name: str, settings: StoreSettings, cancel_event=None):
    if settings.kind == 'clickhouse':
        return ClickhouseApi(name, settings)
    return MySQLApi(name, settings, cancel_event=cancel_event)


class Runner:
    """Drives bootstrap, the replication barrier and the per-shard loops.

    BOOTSTRAPPING -> AWAITING_BARRIER -> RUNNING -> DRAINING -> STOPPED

    Every shard gets one workload thread writing upstream and one verify
    thread checking both stores. All of them share self.state: the round
    counter, the cancellation event and the first fatal error.
    """

    def __init__(self, config: Settings, upstream=None, downstream=None, scenarios=None, state=None):
        self.config = config
        self.upstream = upstream
        self.downstream = downstream
        self.owns_stores = upstream is None and downstream is None
        self.scenarios = scenarios if scenarios is not None else build_scenarios(config)
        self.state = state or RunState(target_rounds=config.test_round)
        self.threads: list[threading.Thread] = []
        self.http_server = None
        self.server_thread = None
        self.start_time = time.time()

    # http control server

    def get_status(self):
        status = self.state.to_dict()
        status['elapsed'] = time.time() - self.start_time
        return format_floats(status)

    def request_stop(self):
        self.state.cancel('stop requested over http')
        return {'stopping': True}

    def run_server(self):
        app = FastAPI()
        router = APIRouter()
        router.add_api_route('/status', self.get_status, methods=['GET'])
        router.add_api_route('/stop', self.request_stop, methods=['POST'])
        app.include_router(router)

        config = Config(app=app, host=self.config.http_host, port=self.config.http_port, log_level='warning')
        self.http_server = Server(config)
        self.http_server.run()

    def start_server(self):
        if not self.config.http_host or not self.config.http_port:
            logger.info('http server disabled')
            return
        logger.info(f'starting http server on {self.config.http_host}:{self.config.http_port}')
        self.server_thread = threading.Thread(target=self.run_server, daemon=True, name='http-server')
        self.server_thread.start()

    # stores

    def open_stores(self):
        if self.upstream is None:
            settings = self.config.upstream
            settings.pool_size = min(
                max(settings.pool_size, self.config.concurrency + 1, 2 * self.config.tables + 1),
                MAX_POOL_SIZE,
            )
            self.upstream = open_store('upstream', settings, self.state.cancel_event)
        if self.downstream is None:
            settings = self.config.downstream
            settings.pool_size = min(max(settings.pool_size, self.config.tables + 1), MAX_POOL_SIZE)
            self.downstream = open_store('downstream', settings, self.state.cancel_event)

        for store in (self.upstream, self.downstream):
            run_with_retry(
                store.ping,
                max_attempts=self.config.retry_attempts,
                interval=self.config.retry_interval,
                description=f'ping {store.name}',
            )

    def close_stores(self):
        if not self.owns_stores:
            return
        for store in (self.upstream, self.downstream):
            if store is None:
                continue
            try:
                store.close()
            except Exception as e:
                logger.warning(f'error closing {store.name}: {e}')

    # phases

    def cleanup_all(self):
        self.state.set_status(Status.CLEANING, 'cleanup only')
        for shard_id in range(self.config.tables):
            for scenario in self.scenarios:
                scenario.cleanup(self.upstream, self.config.accounts, shard_id, force=True)
                scenario.cleanup(self.downstream, self.config.accounts, shard_id, force=True)
        for store in (self.upstream, self.downstream):
            run_with_retry(
                lambda: store.drop_table(BARRIER_TABLE),
                max_attempts=self.config.retry_attempts,
                interval=self.config.retry_interval,
                description=f'{store.name}: drop table {BARRIER_TABLE}',
            )
        logger.info('cleanup done')

    def bootstrap_all(self):
        self.state.set_status(Status.BOOTSTRAPPING, f'{self.config.tables} shards')
        for shard_id in range(self.config.tables):
            self.state.check()
            bootstrap_shard(
                self.scenarios, self.upstream, self.config.accounts, shard_id,
                self.config.concurrency,
                batch_size=self.config.batch_size,
                cancel_event=self.state.cancel_event,
            )

    def wait_barrier(self):
        """Create the barrier table upstream and wait until it is replicated.

        DDL is a sync point for the pipeline: once the barrier shows up
        downstream, everything written before it has been replicated too.
        """
        self.state.set_status(Status.AWAITING_BARRIER, f'waiting for {BARRIER_TABLE}')
        self.must_execute(
            self.upstream, f'CREATE TABLE IF NOT EXISTS `{BARRIER_TABLE}` (foo BIGINT PRIMARY KEY)',
        )

        deadline = time.monotonic() + self.config.barrier_timeout
        while True:
            exists = run_with_retry(
                lambda: self.downstream.table_exists(BARRIER_TABLE),
                max_attempts=self.config.retry_attempts,
                interval=self.config.retry_interval,
                description=f'{self.downstream.name}: check table {BARRIER_TABLE}',
            )
            if exists:
                logger.info('all tables synced')
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BarrierTimeout(
                    f'{BARRIER_TABLE} did not reach {self.downstream.name} '
                    f'within {self.config.barrier_timeout}s'
                )
            logger.info(f'wait table {BARRIER_TABLE}')
            if self.state.wait(min(self.config.barrier_poll_interval, remaining)):
                raise Cancelled()

    def run_loops(self):
        self.state.set_status(Status.RUNNING, f'{self.config.tables} shards')
        for shard_id in range(self.config.tables):
            for target, role in ((self.verify_loop, 'verify'), (self.workload_loop, 'workload')):
                thread = threading.Thread(target=target, args=(shard_id,), name=f'{role}-{shard_id}')
                self.threads.append(thread)
                thread.start()

        while not self.state.wait(1.0):
            pass

        self.state.set_status(Status.DRAINING, self.state.cancel_reason)
        for thread in self.threads:
            thread.join()

    # per-shard tasks

    def verify_pass(self, shard_id):
        for scenario in self.scenarios:
            for store in (self.upstream, self.downstream):
                if self.state.cancelled:
                    return False
                scenario.verify(
                    store, self.config.accounts, shard_id, store.name,
                    timeout=self.config.verify_timeout,
                )
        return True

    def verify_loop(self, shard_id):
        try:
            while not self.state.wait(self.config.interval):
                if not self.verify_pass(shard_id):
                    break
                self.state.increment_round()
        except Cancelled:
            pass
        except Exception as e:
            logger.critical(f'verify fails on shard {shard_id}: {e}', exc_info=not isinstance(e, CheckerError))
            self.state.fail(e)

    def run_workload_round(self, shard_id):
        with self.upstream.transaction(
            timeout=self.config.workload_timeout,
            cancel_event=self.state.cancel_event,
        ) as tx:
            for scenario in self.scenarios:
                scenario.workload(tx, self.config.accounts, shard_id)
            tx.commit()

    def workload_loop(self, shard_id):
        while not self.state.cancelled:
            try:
                self.run_workload_round(shard_id)
            except Cancelled:
                break
            except Exception as e:
                failures = self.state.record_failure()
                logger.warning(f'workload failed on shard {shard_id} ({failures} failures so far): {e}')
                continue
            self.state.record_commit()

    # helpers

    def must_execute(self, store, query):
        must_execute(
            store, query,
            max_attempts=self.config.retry_attempts,
            interval=self.config.retry_interval,
        )

    def stop(self):
        self.state.cancel_event.set()
        for thread in self.threads:
            thread.join()
        self.close_stores()
        if self.http_server:
            self.http_server.should_exit = True
        if self.server_thread is not None:
            self.server_thread.join(timeout=5.0)
        self.state.set_status(Status.STOPPED, self.state.cancel_reason or 'done')

    def run(self):
        self.start_server()
        try:
            self.open_stores()
            if self.config.cleanup_only:
                self.cleanup_all()
            else:
                self.bootstrap_all()
                self.wait_barrier()
                self.run_loops()
        except Cancelled:
            logger.info('run cancelled before workload started')
        except CheckerError as e:
            logger.critical(f'run failed: {e}')
            self.state.fail(e)
        finally:
            self.stop()

        if self.state.fatal_error is not None:
            raise self.state.fatal_error
        logger.info(
            f'stopped after {self.state.verified_rounds} verified rounds, '
            f'{self.state.commits} commits, {self.state.failures} workload failures'
        )
