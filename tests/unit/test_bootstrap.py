"""Unit tests for dataset bootstrap: batching, idempotence and rebuild"""

import threading

import pytest

from mysql_repl_checker.bootstrap import bootstrap, bootstrap_shard, plan_batches
from mysql_repl_checker.common import Cancelled, SetupError
from tests.conftest import ACCOUNTS, INITIAL_BALANCE, run_rounds


def insert_statements(store):
    return [query for query in store.executed if query.startswith('INSERT IGNORE')]


@pytest.mark.unit
@pytest.mark.parametrize("accounts,batch_size,expected", [
    (250, 100, [(0, 100), (100, 100), (200, 50)]),
    (200, 100, [(0, 100), (100, 100)]),
    (5, 100, [(0, 5)]),
    (7, 3, [(0, 3), (3, 3), (6, 1)]),
    (0, 100, []),
])
def test_plan_batches(accounts, batch_size, expected):
    assert plan_batches(accounts, batch_size) == expected


@pytest.mark.unit
def test_bootstrap_odd_account_count(store, bank):
    assert bootstrap(bank, store, 250, 0, concurrency=4) is True

    ids = [row[0] for row in store.query('SELECT id FROM `accounts0` ORDER BY id')]
    assert ids == list(range(250))
    assert len(insert_statements(store)) == 3
    total = store.query('SELECT SUM(balance) FROM `accounts0`')[0][0]
    assert total == 250 * INITIAL_BALANCE
    bank.verify(store, 250, 0, 'test')


@pytest.mark.unit
def test_bootstrap_is_idempotent(store, bank, sequence):
    bootstrap_shard([sequence, bank], store, ACCOUNTS, 0, concurrency=2)
    run_rounds(store, [sequence, bank], ACCOUNTS, 0, rounds=20)
    before = (store.rows('accounts0'), store.rows('accounts_seq0'))
    executed = len(store.executed)

    assert bootstrap(bank, store, ACCOUNTS, 0, concurrency=2) is False
    assert bootstrap(sequence, store, ACCOUNTS, 0, concurrency=2) is False

    assert (store.rows('accounts0'), store.rows('accounts_seq0')) == before
    assert len(store.executed) == executed, "second bootstrap should not write anything"


@pytest.mark.unit
def test_bootstrap_rebuilds_corrupted_dataset(store, bank):
    bootstrap(bank, store, ACCOUNTS, 0, concurrency=2)
    run_rounds(store, [bank], ACCOUNTS, 0, rounds=10)
    store.execute('DELETE FROM `accounts0` WHERE id = 3')

    assert bootstrap(bank, store, ACCOUNTS, 0, concurrency=2) is True

    balances = [row[1] for row in store.rows('accounts0')]
    assert balances == [INITIAL_BALANCE] * ACCOUNTS
    bank.verify(store, ACCOUNTS, 0, 'test')


@pytest.mark.unit
def test_bootstrap_retries_transient_failures(store, sequence):
    # the drop issued by cleanup fails twice before going through
    store.transient_failures = 2

    assert bootstrap(sequence, store, ACCOUNTS, 0, concurrency=1) is True
    sequence.verify(store, ACCOUNTS, 0, 'test')
    assert len(store.query('SELECT id FROM `accounts_seq0`')) == ACCOUNTS


@pytest.mark.unit
def test_bootstrap_fails_when_retries_exhausted(store, bank):
    store.transient_failures = 100

    with pytest.raises(SetupError):
        bootstrap(bank, store, ACCOUNTS, 0, concurrency=2)


@pytest.mark.unit
def test_bootstrap_stops_when_cancelled(store, bank):
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(Cancelled):
        bootstrap(bank, store, 250, 0, concurrency=2, cancel_event=cancel_event)

    assert insert_statements(store) == []
