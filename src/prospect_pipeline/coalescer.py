"""Time-window coalescing of streamed batches."""

import asyncio
import time
from typing import Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar

from .logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class BatchCoalescer(Generic[T]):
    """Buffer items and hand them to ``flush`` at most once per interval.

    The first item after a quiet period is flushed on the next loop
    iteration; items arriving within the interval are held and delivered
    together, so the merge cost is bounded by time rather than batch count.
    """

    def __init__(
        self,
        flush: Callable[[List[T]], Awaitable[None]],
        interval: float = 0.016,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._flush_callback = flush
        self.interval = interval
        self._clock = clock
        self._buffer: List[T] = []
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._last_flush: Optional[float] = None
        self._error: Optional[BaseException] = None
        self.flush_count = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def add(self, items: Iterable[T]) -> None:
        """Buffer items and schedule a flush if none is pending."""
        self._raise_pending_error()
        self._buffer.extend(items)
        if self._buffer and self._timer is None:
            self._timer = asyncio.get_running_loop().create_task(
                self._flush_later(self._delay())
            )

    async def flush(self) -> None:
        """Deliver buffered items now."""
        self._cancel_timer()
        if not self._buffer:
            return
        items, self._buffer = self._buffer, []
        self._last_flush = self._clock()
        self.flush_count += 1
        await self._flush_callback(items)

    async def close(self, discard: bool = False) -> None:
        """Stop the timer, wait for a running flush, then deliver or drop the rest."""
        self._cancel_timer()
        inflight = self._inflight
        if inflight is not None and inflight is not asyncio.current_task():
            await inflight
        if discard:
            self._buffer.clear()
            self._error = None
            return
        await self.flush()
        self._raise_pending_error()

    def _delay(self) -> float:
        if self._last_flush is None:
            return 0.0
        return max(0.0, self._last_flush + self.interval - self._clock())

    async def _flush_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        self._inflight = asyncio.current_task()
        try:
            await self.flush()
        except Exception as e:
            logger.error(f"Coalesced flush failed: {e}")
            self._error = e
        finally:
            self._inflight = None

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _raise_pending_error(self) -> None:
        if self._error is not None:
            error, self._error = self._error, None
            raise error
