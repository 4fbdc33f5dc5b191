# ⚠️ DISCLAIMER
# This software communicates directly with live vehicle systems.
# You use this software entirely at your own risk.
#
# The developers, contributors, and any associated parties accept no liability for:
# - Damage to vehicles, ECUs, batteries, or electronics
# - Data loss, unintended resets, or corrupted configurations
# - Physical injury, legal consequences, or financial loss
#
# This tool is intended only for qualified professionals who
# understand the risks of direct OBD/CAN access.

"""
Outbound/inbound frame queues and the single-permit write gate.

At most one write may be awaiting its link-level acknowledgment. The worker
takes the permit before dequeuing a write; the ack handler (or the write
path on exception) gives it back.
"""

import logging
import queue
import threading
import time
from typing import Callable, Optional

from .frame_codec import Frame

logger = logging.getLogger(__name__)


class WriteGate:
    """Binary permit bounding in-flight writes to one"""

    def __init__(self, ack_timeout: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._sem = threading.BoundedSemaphore(1)
        self._lock = threading.Lock()
        self._acquired_at: Optional[float] = None
        # writes whose permit was forced away; their late acks must not free it
        self._superseded = 0
        self.ack_timeout = ack_timeout
        self._clock = clock

    def try_acquire(self) -> bool:
        if self._sem.acquire(blocking=False):
            with self._lock:
                self._acquired_at = self._clock()
            return True

        # Optional fallback for an acknowledgment that never arrives
        if self.ack_timeout is not None:
            with self._lock:
                held_since = self._acquired_at
                if held_since is not None and self._clock() - held_since > self.ack_timeout:
                    logger.warning(f"Write ack not received after {self.ack_timeout:.1f}s, forcing permit")
                    self._superseded += 1
                    self._acquired_at = self._clock()
                    return True
        return False

    def release(self) -> None:
        """Acknowledgment received for the write in flight"""
        with self._lock:
            # acks arrive in write order, so the oldest superseded write answers first
            if self._superseded:
                self._superseded -= 1
                logger.debug("Late ack of a superseded write ignored")
                return
        self._free()

    def cancel(self) -> None:
        """The write in flight never reached the link; give the permit back"""
        self._free()

    def _free(self) -> None:
        with self._lock:
            self._acquired_at = None
        try:
            self._sem.release()
        except ValueError:
            logger.warning("Write permit released without a write in flight")

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._acquired_at is not None


class LinkQueues:
    """Queues that live for exactly one connection"""

    def __init__(self, ack_timeout: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.write_queue: "queue.Queue[bytes]" = queue.Queue()
        self.read_queue: "queue.Queue[Frame]" = queue.Queue()
        self.gate = WriteGate(ack_timeout=ack_timeout, clock=clock)

    def queue_write(self, data: bytes) -> None:
        self.write_queue.put(bytes(data))

    def queue_read(self, frame: Frame) -> None:
        self.read_queue.put(frame)

    def next_write(self) -> Optional[bytes]:
        """Dequeue one write if the permit is free; caller owns the permit"""
        if self.write_queue.empty():
            return None
        if not self.gate.try_acquire():
            return None
        try:
            return self.write_queue.get_nowait()
        except queue.Empty:
            self.gate.cancel()
            return None

    def next_read(self) -> Optional[Frame]:
        try:
            return self.read_queue.get_nowait()
        except queue.Empty:
            return None

    def clear(self) -> None:
        """Discard anything still queued"""
        for q in (self.write_queue, self.read_queue):
            while True:
                try:
                    q.get_nowait()
                except queue.Empty:
                    break

    def reset(self) -> None:
        """Discard queued items and any permit held by an unacknowledged write"""
        self.clear()
        self.gate = WriteGate(ack_timeout=self.gate.ack_timeout, clock=self.gate._clock)

    def pending(self) -> tuple:
        return self.write_queue.qsize(), self.read_queue.qsize()
