"""Shared test fixtures and utilities for mysql-repl-checker tests"""

import random

import pytest

from mysql_repl_checker.common import RunState
from mysql_repl_checker.config import Settings
from mysql_repl_checker.scenarios import BankScenario, SequenceScenario
from tests.utils.sqlite_store import SqliteStore


ACCOUNTS = 10
INITIAL_BALANCE = 1000


@pytest.fixture
def store():
    store = SqliteStore('upstream')
    yield store
    store.close()


@pytest.fixture
def downstream():
    store = SqliteStore('downstream')
    yield store
    store.close()


@pytest.fixture
def bank():
    return BankScenario(
        initial_balance=INITIAL_BALANCE, retry_attempts=3, retry_interval=0.001, rng=random.Random(42),
    )


@pytest.fixture
def sequence():
    return SequenceScenario(retry_attempts=3, retry_interval=0.001)


@pytest.fixture
def settings():
    """Settings tuned for fast in-process runs"""
    config = Settings()
    config.accounts = ACCOUNTS
    config.tables = 2
    config.concurrency = 2
    config.interval = 0.01
    config.test_round = 6
    config.workload_timeout = 5.0
    config.verify_timeout = 5.0
    config.barrier_timeout = 1.0
    config.barrier_poll_interval = 0.05
    config.retry_attempts = 3
    config.retry_interval = 0.001
    return config


@pytest.fixture
def run_state():
    return RunState(target_rounds=0)


def run_rounds(store, scenarios, accounts, shard_id, rounds):
    """Commit `rounds` workload transactions, every scenario in each."""
    for _ in range(rounds):
        with store.transaction() as tx:
            for scenario in scenarios:
                scenario.workload(tx, accounts, shard_id)
            tx.commit()
