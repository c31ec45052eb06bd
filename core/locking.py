"""Per-batch locking and conflict retry.

Every count mutation of a batch runs while holding that batch's lock.
Operations touching several batches take their locks in sorted id order, so
two operations can never wait on each other in a cycle. A lock that cannot be
taken within the timeout raises ConcurrencyConflict; ``run_with_retry`` backs
off and tries again a bounded number of times.

Committing staged records and reading a consistent view share one snapshot
lock, held only for the moment of the swap or the read.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from core.config import EngineSettings, RetryConfig, get_settings
from core.errors import ConcurrencyConflict
from core.observability.logging import get_logger
from core.observability.metrics import record_conflict_retry

logger = get_logger(__name__)

T = TypeVar("T")


class BatchLockManager:
    """Hands out one re-entrant lock per batch id.

    A lock exists only while some caller holds or waits for it; the last
    user to leave drops it, so ids seen once do not pile up in a long-running
    process.
    """

    def __init__(self, settings: Optional[EngineSettings] = None, timeout: Optional[float] = None):
        settings = settings or get_settings()
        self.timeout = settings.lock_timeout_seconds if timeout is None else timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()
        self._snapshot_lock = threading.RLock()

    def _checkout(self, batch_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(batch_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[batch_id] = lock
            self._users[batch_id] = self._users.get(batch_id, 0) + 1
            return lock

    def _checkin(self, batch_id: str) -> None:
        with self._registry_lock:
            remaining = self._users[batch_id] - 1
            if remaining:
                self._users[batch_id] = remaining
            else:
                del self._users[batch_id]
                del self._locks[batch_id]

    def active_ids(self) -> List[str]:
        """Ids whose lock is currently held or awaited."""
        with self._registry_lock:
            return sorted(self._locks)

    @contextmanager
    def hold(self, batch_ids: Iterable[str]):
        """Hold the locks of all ``batch_ids`` for the duration of the block.

        Raises:
            ConcurrencyConflict: If any lock is not acquired within the timeout
        """
        ordered = sorted({b for b in batch_ids if b})
        locks = [self._checkout(batch_id) for batch_id in ordered]
        acquired = 0
        try:
            for batch_id, lock in zip(ordered, locks):
                if not lock.acquire(timeout=self.timeout):
                    raise ConcurrencyConflict([batch_id])
                acquired += 1
            yield ordered
        finally:
            for lock in reversed(locks[:acquired]):
                lock.release()
            for batch_id in ordered:
                self._checkin(batch_id)

    @contextmanager
    def snapshot(self):
        """Hold the snapshot lock so a commit or a read sees one consistent state."""
        with self._snapshot_lock:
            yield


def run_with_retry(
    operation: str,
    func: Callable[[], T],
    retry_config: Optional[RetryConfig] = None,
) -> T:
    """Call ``func`` and retry it after a ConcurrencyConflict.

    Other errors propagate immediately. After ``max_retries`` retries the
    last conflict is raised with the total number of attempts.
    """
    retry_config = retry_config or get_settings().retry

    for attempt in range(retry_config.max_retries + 1):
        try:
            return func()
        except ConcurrencyConflict as e:
            if attempt < retry_config.max_retries:
                delay = retry_config.get_delay(attempt)
                logger.warning(
                    f"{operation}: batch lock busy for {', '.join(e.batch_ids)}, "
                    f"retrying in {delay:.2f}s (attempt {attempt + 1}/{retry_config.max_retries})",
                    extra_fields={"batch_ids": e.batch_ids, "attempt": attempt + 1},
                )
                record_conflict_retry(operation, attempt + 1)
                time.sleep(delay)
                continue
            raise ConcurrencyConflict(e.batch_ids, attempts=attempt + 1) from e
