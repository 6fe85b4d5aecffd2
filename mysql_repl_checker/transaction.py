import time
from logging import getLogger

from .common import Cancelled, TransactionTimeout


logger = getLogger(__name__)


class Transaction:
    """One workload round: every statement runs in a single transaction.

    Each call checks the run cancellation event and the attempt deadline
    first, so a workload is preempted at every I/O boundary. Leaving the
    scope without commit() rolls back.

    Subclasses implement _query, _execute, _commit, _rollback and _release.
    """

    def __init__(self, timeout=None, cancel_event=None):
        self.marker = time.time_ns()
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancel_event = cancel_event
        self.finished = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if not self.finished:
                self.rollback()
        finally:
            self._release()

    def check_alive(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled()
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise TransactionTimeout('transaction attempt timed out')

    def query(self, sql, args=None) -> list:
        self.check_alive()
        return self._query(sql, args)

    def query_one(self, sql, args=None):
        rows = self.query(sql, args)
        if not rows:
            return None
        return rows[0]

    def execute(self, sql, args=None):
        self.check_alive()
        self._execute(sql, args)

    def commit(self):
        self.check_alive()
        self._commit()
        self.finished = True

    def rollback(self):
        self.finished = True
        try:
            self._rollback()
        except Exception as e:
            logger.warning(f'rollback failed: {e}')

    def _query(self, sql, args):
        raise NotImplementedError()

    def _execute(self, sql, args):
        raise NotImplementedError()

    def _commit(self):
        raise NotImplementedError()

    def _rollback(self):
        raise NotImplementedError()

    def _release(self):
        pass
