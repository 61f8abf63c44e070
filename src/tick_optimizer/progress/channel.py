"""
ProgressChannel — bounded single-consumer queue between a run and its observer.

The producing run never blocks on a slow consumer: when the buffer is full the
oldest non-terminal event is dropped. Terminal events are never dropped and
nothing is accepted after one. A consumer that goes away calls ``close()``,
which cancels the run through its CancellationToken.
"""

import asyncio
import threading
from collections import deque
from dataclasses import replace
from typing import AsyncIterator, Iterator

from tick_optimizer.exceptions import RunCancelledError
from tick_optimizer.logging import get_logger
from tick_optimizer.progress.events import OptimizationProgress

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 256


class CancellationToken:
    """Cooperative, thread-safe cancellation flag for one run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested", reason=reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class ProgressChannel:
    """Thread-safe bounded event buffer with drop-oldest-non-terminal overflow."""

    def __init__(
        self,
        maxsize: int = DEFAULT_BUFFER_SIZE,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.cancel_token = cancel_token
        self._buffer: deque[OptimizationProgress] = deque()
        self._cond = threading.Condition()
        self._sequence = 0
        self._dropped = 0
        self._terminated = False  # terminal event accepted
        self._finished = False  # terminal event handed to the consumer
        self._closed = False

    # =========================================================================
    # Producer side
    # =========================================================================

    def publish(self, event: OptimizationProgress) -> bool:
        """Queue ``event``. Returns False when it was ignored."""
        with self._cond:
            if self._terminated or self._closed:
                return False

            self._sequence += 1
            event = replace(event, sequence=self._sequence)

            if len(self._buffer) >= self.maxsize:
                self._drop_oldest()
            self._buffer.append(event)

            if event.is_terminal:
                self._terminated = True
            self._cond.notify_all()
            return True

    def _drop_oldest(self) -> None:
        for i, queued in enumerate(self._buffer):
            if not queued.is_terminal:
                del self._buffer[i]
                self._dropped += 1
                return

    # =========================================================================
    # Consumer side
    # =========================================================================

    def get(self, timeout: float | None = None) -> OptimizationProgress | None:
        """Next event, or None on timeout / after the terminal event / after close."""
        with self._cond:
            while not self._buffer:
                if self._finished or self._closed:
                    return None
                if not self._cond.wait(timeout):
                    return None
            event = self._buffer.popleft()
            if event.is_terminal:
                self._finished = True
            return event

    def drain(self) -> list[OptimizationProgress]:
        """Pop every buffered event without waiting."""
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            if any(e.is_terminal for e in events):
                self._finished = True
            return events

    def __iter__(self) -> Iterator[OptimizationProgress]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return

    async def __aiter__(self) -> AsyncIterator[OptimizationProgress]:
        while True:
            event = await asyncio.to_thread(self.get, 0.1)
            if event is None:
                if self._finished or self._closed:
                    return
                continue
            yield event
            if event.is_terminal:
                return

    def close(self, reason: str = "consumer disconnected") -> None:
        """Consumer is gone: stop delivery and cancel the run if still active."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._buffer.clear()
            still_running = not self._terminated
            self._cond.notify_all()

        if still_running and self.cancel_token is not None:
            self.cancel_token.cancel(reason)
        logger.debug("Progress channel closed", dropped=self._dropped)

    # =========================================================================
    # State
    # =========================================================================

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed
