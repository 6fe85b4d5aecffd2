import threading
from enum import Enum
from logging import getLogger


logger = getLogger(__name__)


class Status(Enum):
    NONE = 0
    BOOTSTRAPPING = 1
    AWAITING_BARRIER = 2
    RUNNING = 3
    DRAINING = 4
    STOPPED = 5
    CLEANING = 6


class CheckerError(Exception):
    pass


class InvariantViolation(CheckerError):
    """Upstream or downstream data breaks a scenario invariant. Always fatal."""

    def __init__(self, scenario, shard_id, tag, message):
        super().__init__(f'{scenario} invariant violated on shard {shard_id} ({tag}): {message}')
        self.scenario = scenario
        self.shard_id = shard_id
        self.tag = tag


class SetupError(CheckerError):
    """Structural setup (DDL, bulk load) could not be completed."""


class BarrierTimeout(CheckerError):
    pass


class StoreError(CheckerError):
    pass


class TransactionTimeout(CheckerError):
    pass


class Cancelled(Exception):
    """The run is shutting down. Not an error."""


class RunState:
    """Process-wide state shared by every shard task.

    Holds the cancellation signal, the verified round counter and the first
    fatal error. Passed explicitly to every thread at spawn time.
    """

    def __init__(self, target_rounds: int = 0):
        self.target_rounds = target_rounds
        self.cancel_event = threading.Event()
        self.status = Status.NONE
        self.verified_rounds = 0
        self.commits = 0
        self.failures = 0
        self.fatal_error: BaseException | None = None
        self.cancel_reason = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def set_status(self, status: Status, reason: str = ''):
        old_status = self.status
        self.status = status
        logger.info(f'STATUS CHANGE: {old_status.name} -> {status.name}, reason={reason!r}')

    def cancel(self, reason: str):
        with self._lock:
            if self.cancel_reason is None:
                self.cancel_reason = reason
                logger.info(f'cancelling run: {reason}')
        self.cancel_event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True when the run is cancelled."""
        return self.cancel_event.wait(timeout)

    def check(self):
        if self.cancel_event.is_set():
            raise Cancelled()

    def fail(self, error: BaseException):
        with self._lock:
            if self.fatal_error is None:
                self.fatal_error = error
        self.cancel(f'fatal error: {error}')

    def increment_round(self) -> int:
        with self._lock:
            self.verified_rounds += 1
            rounds = self.verified_rounds
        if rounds == self.target_rounds:
            self.cancel(f'reached {rounds} verified rounds')
        return rounds

    def record_commit(self):
        with self._lock:
            self.commits += 1

    def record_failure(self) -> int:
        with self._lock:
            self.failures += 1
            return self.failures

    def to_dict(self):
        return {
            'status': self.status.name,
            'verified_rounds': self.verified_rounds,
            'target_rounds': self.target_rounds,
            'commits': self.commits,
            'failures': self.failures,
            'cancel_reason': self.cancel_reason,
            'fatal_error': str(self.fatal_error) if self.fatal_error is not None else None,
        }
