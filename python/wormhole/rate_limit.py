"""
Token bucket rate limiting for blob streams.

A RateLimitedReader wraps any object with a read(size) method and caps the
average number of bytes handed out per second, allowing bursts up to the
bucket capacity.
"""

import threading
import time
from typing import Callable, Iterator, Optional

from wormhole.error_utils import MigrationCancelledError
from wormhole.logging_utils import get_logger

logger = get_logger(__name__)

# Burst allowance relative to the configured rate
BURST_FACTOR = 1.2

DEFAULT_CHUNK_SIZE = 1024 * 1024


class TokenBucket:
    """Thread-safe token bucket. One token is one byte."""

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize token bucket

        Args:
            rate: Refill rate in tokens (bytes) per second
            capacity: Maximum number of tokens the bucket holds; the bucket starts full
            clock: Monotonic time source
            sleep: Function used to wait for tokens
        """
        if rate is None or rate <= 0:
            raise ValueError(f"rate must be a positive number, got: {rate}")
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got: {capacity}")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._last_update = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._last_update = now

    def available(self) -> float:
        """Return the number of tokens currently in the bucket."""
        with self._lock:
            self._refill()
            return self._tokens

    def take(self, count: int) -> float:
        """Take up to capacity tokens immediately and return the wait owed.

        The bucket may go negative; the caller must wait the returned number of
        seconds before consuming what it took.
        """
        count = min(count, self.capacity)
        with self._lock:
            self._refill()
            self._tokens -= count
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def wait(self, count: int, cancel_event: Optional[threading.Event] = None) -> None:
        """Block until count tokens have been acquired.

        Requests larger than the capacity are served in capacity-sized slices.

        Raises:
            MigrationCancelledError: If cancel_event is set while waiting
        """
        remaining = count
        while remaining > 0:
            portion = min(remaining, self.capacity)
            wait_time = self.take(portion)
            if wait_time > 0:
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s for {portion} bytes")
                if cancel_event is not None:
                    # Event.wait returns True as soon as the event is set
                    if cancel_event.wait(wait_time):
                        raise MigrationCancelledError("Transfer cancelled while rate limited")
                else:
                    self._sleep(wait_time)
            elif cancel_event is not None and cancel_event.is_set():
                raise MigrationCancelledError("Transfer cancelled while rate limited")
            remaining -= portion


class RateLimitedReader:
    """File-like wrapper that throttles reads through a TokenBucket."""

    def __init__(
        self,
        stream,
        bucket: TokenBucket,
        cancel_event: Optional[threading.Event] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.stream = stream
        self.bucket = bucket
        self.cancel_event = cancel_event
        self.chunk_size = chunk_size
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        # Never hand out more than one bucket's worth at a time
        if size is None or size < 0 or size > self.bucket.capacity:
            size = self.bucket.capacity
        data = self.stream.read(size)
        if data:
            self.bucket.wait(len(data), self.cancel_event)
            self.bytes_read += len(data)
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            data = self.read(self.chunk_size)
            if not data:
                return
            yield data

    def close(self) -> None:
        close = getattr(self.stream, "close", None)
        if close is not None:
            close()


def new_limited_reader(
    stream,
    rate: float,
    cancel_event: Optional[threading.Event] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> RateLimitedReader:
    """Wrap a stream in a reader capped at rate bytes/sec with a 1.2x burst allowance."""
    capacity = max(1, int(rate * BURST_FACTOR))
    return RateLimitedReader(stream, TokenBucket(rate, capacity), cancel_event=cancel_event, chunk_size=chunk_size)
