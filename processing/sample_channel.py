"""
Bounded channel between the acquisition thread and the processing loop.

A live producer never blocks: when the channel is full the oldest queued sample
is discarded so the newest data always gets through. A replayed source can
wait for room instead, see ``wait_for_room``. Control markers (stop, cancel,
end of stream, link dropped) travel through the same FIFO so the
consumer sees them in order, and they are never discarded.
"""
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum

from .models import ForceSample

logger = logging.getLogger(__name__)


class StreamControl(Enum):
    STOP = 'stop'  # Finish the test with whatever has been measured
    CANCEL = 'cancel'  # Abandon the test
    END = 'end'  # Finite source exhausted


@dataclass(frozen=True)
class LinkDropped:
    """Terminal marker pushed by a producer whose link went away."""
    reason: str


class SampleChannel:
    """
    Single-producer / single-consumer FIFO with a drop-oldest policy.
    Uses a deque guarded by a condition variable; the capacity only counts
    samples, control markers ride along without taking a slot.
    """

    def __init__(self, capacity):
        """
        Args:
            capacity: Maximum number of samples held before the oldest is dropped
        """
        if capacity <= 0:
            raise ValueError(f"Channel capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items = deque()
        self._sample_count = 0
        self._cond = threading.Condition()
        self._closed = False

        self.dropped = 0
        self.delivered = 0

    def put(self, sample: ForceSample):
        """Queue a sample, discarding the oldest queued sample if full. Never blocks."""
        with self._cond:
            if self._closed:
                return
            if self._sample_count >= self.capacity:
                self._drop_oldest_sample()
            self._items.append(sample)
            self._sample_count += 1
            self._cond.notify_all()

    def put_control(self, marker):
        """Queue a control marker (StreamControl or LinkDropped) behind everything already queued."""
        with self._cond:
            self._items.append(marker)
            if isinstance(marker, LinkDropped) or marker is StreamControl.END:
                self._closed = True
            self._cond.notify_all()

    def get(self, timeout=None):
        """
        Take the next item, blocking the consumer up to ``timeout`` seconds.

        Raises:
            queue.Empty: Nothing arrived within the timeout
        """
        with self._cond:
            if not self._cond.wait_for(lambda: len(self._items) > 0, timeout=timeout):
                raise queue.Empty
            item = self._items.popleft()
            if isinstance(item, ForceSample):
                self._sample_count -= 1
                self.delivered += 1
                self._cond.notify_all()
            return item

    def wait_for_room(self, count, timeout=None):
        """
        Block a producer that must not lose data until ``count`` samples fit.

        Returns:
            bool: True when there is room or the channel has closed, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: self.capacity - self._sample_count >= count or self._closed, timeout=timeout)

    def _drop_oldest_sample(self):
        for i, item in enumerate(self._items):
            if isinstance(item, ForceSample):
                del self._items[i]
                self._sample_count -= 1
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 1000 == 0:
                    logger.warning(f"Consumer falling behind: {self.dropped} samples dropped so far")
                return

    @property
    def closed(self):
        """True once the producer has signalled the end of its stream."""
        return self._closed

    def __len__(self):
        with self._cond:
            return len(self._items)
