"""
Worker pool that runs image migrations concurrently.

The pool owns a fixed number of worker threads (the host's logical CPU count
unless told otherwise). A global transfer budget is split evenly across the
workers once, when the pool starts. Every submission returns a Future, and
every failure is also kept on the pool so callers can drain them after close().
"""

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from wormhole.error_utils import PoolStateError
from wormhole.image import Image
from wormhole.logging_utils import get_logger
from wormhole.migration_engine import MigrationEngine, MigrationResult


class PoolState(Enum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class MigrationFailure:
    """A migration that raised, kept for reporting after the pool closes."""

    image: Image
    error: BaseException

    def to_dict(self) -> dict:
        return {
            "image": self.image.reference_string,
            "error_type": type(self.error).__name__,
            "category": getattr(getattr(self.error, "category", None), "value", None),
            "error": getattr(self.error, "message", None) or str(self.error),
        }


def logical_cpu_count() -> int:
    return os.cpu_count() or 1


def divide_rate_limit(global_rate_limit: Optional[float], workers: int) -> Optional[float]:
    """Return each worker's share of the global budget, or None when unthrottled."""
    if global_rate_limit is None or workers <= 0:
        return None
    return global_rate_limit / workers


class WorkerPool:
    """Fixed-size pool dispatching image migrations to a MigrationEngine."""

    def __init__(
        self,
        engine: MigrationEngine,
        size: Optional[int] = None,
        queue_size: int = 0,
        global_rate_limit: Optional[float] = None,
    ):
        """Initialize WorkerPool

        Args:
            engine: Engine every worker calls migrate() on
            size: Number of workers (default: logical CPU count)
            queue_size: Extra submissions allowed to wait beyond the running ones;
                submit() blocks once the backlog is full. 0 = unbounded.
            global_rate_limit: Total bytes/sec budget shared by all workers (None = unthrottled)
        """
        self.engine = engine
        self.size = logical_cpu_count() if size is None else size
        if self.size < 1:
            raise ValueError(f"Pool size must be at least 1, got: {self.size}")
        if queue_size < 0:
            raise ValueError(f"queue_size must be non-negative, got: {queue_size}")
        self.queue_size = queue_size
        self.global_rate_limit = None
        self.logger = get_logger(self.__class__.__name__)

        self._state = PoolState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._worker_rate_limit: Optional[float] = None
        self._slots = threading.BoundedSemaphore(self.size + queue_size) if queue_size else None

        self._results_lock = threading.Lock()
        self._results: List[MigrationResult] = []
        self._failures: List[MigrationFailure] = []

        if global_rate_limit is not None:
            self.configure(global_rate_limit)

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def worker_rate_limit(self) -> Optional[float]:
        """Rate limit each worker passes to the engine, fixed when the pool started."""
        return self._worker_rate_limit

    @property
    def results(self) -> List[MigrationResult]:
        with self._results_lock:
            return list(self._results)

    @property
    def failures(self) -> List[MigrationFailure]:
        with self._results_lock:
            return list(self._failures)

    def configure(self, global_rate_limit: Optional[float]) -> None:
        """Set the global bytes/sec budget. Only takes effect on the next start()."""
        if global_rate_limit is not None and global_rate_limit < 0:
            raise ValueError(f"Rate limit must be non-negative, got: {global_rate_limit}")
        self.global_rate_limit = global_rate_limit
        if self._state is not PoolState.UNINITIALIZED:
            self.logger.warning("Rate limit changed after the pool started; running workers keep their current share")

    def start(self) -> "WorkerPool":
        with self._state_lock:
            if self._state is not PoolState.UNINITIALIZED:
                raise PoolStateError(f"Cannot start a pool in state {self._state.value}")
            self._worker_rate_limit = divide_rate_limit(self.global_rate_limit, self.size)
            self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="wormhole-worker")
            self._state = PoolState.OPEN

        if self._worker_rate_limit is not None:
            self.logger.info(
                f"Started {self.size} workers, {self._worker_rate_limit:.0f} B/s each "
                f"(global {self.global_rate_limit:.0f} B/s)"
            )
        else:
            self.logger.info(f"Started {self.size} workers, unthrottled")
        return self

    def submit(self, image: Image) -> "Future[MigrationResult]":
        """Queue image for migration and return a Future for its result.

        Raises:
            PoolStateError: If the pool is not open
        """
        if self._state is not PoolState.OPEN:
            raise PoolStateError(f"Cannot submit to a pool in state {self._state.value}")

        if self._slots is not None:
            # Backpressure: wait for a running or queued migration to finish
            self._slots.acquire()

        with self._state_lock:
            if self._state is not PoolState.OPEN:
                if self._slots is not None:
                    self._slots.release()
                raise PoolStateError(f"Cannot submit to a pool in state {self._state.value}")
            future = self._executor.submit(self._run, image)

        if self._slots is not None:
            future.add_done_callback(lambda _: self._slots.release())
        self.logger.debug(f"Submitted {image}")
        return future

    def _run(self, image: Image) -> MigrationResult:
        try:
            result = self.engine.migrate(image, self._worker_rate_limit)
        except Exception as e:
            self.logger.error(f"Migration of {image} failed: {getattr(e, 'message', None) or e}")
            with self._results_lock:
                self._failures.append(MigrationFailure(image=image, error=e))
            raise

        with self._results_lock:
            self._results.append(result)
        return result

    def cancel(self) -> None:
        """Stop in-flight migrations at their next step and drop queued ones."""
        self.logger.warning("Cancelling migrations")
        self.engine.cancel_event.set()
        with self._state_lock:
            if self._executor is not None and self._state is PoolState.OPEN:
                self._state = PoolState.DRAINING
                self._executor.shutdown(wait=False, cancel_futures=True)

    def close(self) -> None:
        """Wait for queued and in-flight migrations, then release the workers."""
        with self._state_lock:
            if self._state is PoolState.CLOSED:
                return
            if self._state is PoolState.UNINITIALIZED:
                self._state = PoolState.CLOSED
                return
            self._state = PoolState.DRAINING

        self._executor.shutdown(wait=True)

        with self._state_lock:
            self._state = PoolState.CLOSED
        self.logger.info(f"Pool closed: {len(self.results)} succeeded, {len(self.failures)} failed")

    def __enter__(self) -> "WorkerPool":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, KeyboardInterrupt):
            self.cancel()
        self.close()
