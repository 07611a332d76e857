"""Single-threaded timer loop that owns all tracking session mutation.

Every timer callback and every marshalled call runs on one worker thread, so
session state is never touched concurrently. Without a running thread the loop
can be driven by hand with ``run_pending``; tests use this together with a
fake clock.
"""

from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
import heapq
import itertools
import logging
import threading
from typing import Any, Callable, TypeVar

from src.logic.time_math import seconds_until, utc_now

logger = logging.getLogger("rnvtrack.loop")

T = TypeVar("T")

# Lower runs first when several callbacks fall due at the same instant.
PRIORITY_CALL = 0
PRIORITY_DEADLINE = 1
PRIORITY_TICK = 2

# Rebuild the heap once cancelled entries are both this many and the majority.
COMPACT_MIN_ENTRIES = 100


class TimerHandle:
    """A scheduled callback; ``cancel`` guarantees it will not run again."""

    def __init__(
        self,
        when: datetime,
        callback: Callable[[], None],
        priority: int,
        interval_seconds: float | None = None,
        name: str = "",
        loop: TrackingLoop | None = None,
    ) -> None:
        self.when = when
        self.callback: Callable[[], None] | None = callback
        self.priority = priority
        self.interval_seconds = interval_seconds
        self.name = name or getattr(callback, "__name__", "callback")
        self.fired = 0
        self._cancelled = False
        self._loop = loop
        self._queued = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._loop is not None:
            self._loop._cancel_timer(self)
        else:
            self._mark_cancelled()

    def _mark_cancelled(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        # Drop the callback so a queued entry no longer pins its owner.
        self.callback = None
        return True

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "pending"
        return f"<TimerHandle {self.name} at {self.when.isoformat()} {state}>"


class TrackingLoop:
    """Cooperative timer queue processed by a single background thread."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        max_wait_seconds: float = 1.0,
    ) -> None:
        self._clock = clock
        self._max_wait_seconds = max_wait_seconds
        self._heap: list[tuple[datetime, int, int, TimerHandle]] = []
        self._cancelled_count = 0
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def now(self) -> datetime:
        return self._clock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self) -> None:
        """Start the worker thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tracking-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the worker thread to stop and wait for it."""
        self._stop_event.set()
        self._wakeup.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def call_at(
        self,
        when: datetime,
        callback: Callable[[], None],
        priority: int = PRIORITY_DEADLINE,
        name: str = "",
    ) -> TimerHandle:
        """Run ``callback`` once at ``when``; a past instant runs on the next pass."""
        handle = TimerHandle(when, callback, priority, name=name, loop=self)
        self._push(handle)
        return handle

    def call_every(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        name: str = "",
    ) -> TimerHandle:
        """Run ``callback`` every ``interval_seconds`` until the handle is cancelled."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        when = self.now() + timedelta(seconds=interval_seconds)
        handle = TimerHandle(
            when, callback, PRIORITY_TICK, interval_seconds=interval_seconds, name=name, loop=self
        )
        self._push(handle)
        return handle

    def call_soon(self, callback: Callable[[], None], name: str = "") -> TimerHandle:
        return self.call_at(self.now(), callback, priority=PRIORITY_CALL, name=name)

    def run_sync(self, func: Callable[..., T], *args: Any) -> T:
        """Run ``func`` on the loop and return its result to the caller.

        Runs inline when called from the loop thread or when no thread is
        running, so there is still exactly one executor at a time. If the
        thread stops before picking the call up, the call runs inline.
        """
        if not self.is_running or self.in_loop_thread():
            return func(*args)
        future: Future[T] = Future()

        def _call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(func(*args))
            except BaseException as exc:
                future.set_exception(exc)

        handle = self.call_soon(_call, name=getattr(func, "__name__", "call"))
        while True:
            try:
                return future.result(timeout=self._max_wait_seconds)
            except FutureTimeout:
                if self.is_running:
                    continue
            if future.cancel():
                handle.cancel()
                logger.warning("Loop stopped before running %s; running inline", handle.name)
                return func(*args)

    def pending(self) -> list[TimerHandle]:
        with self._lock:
            return [entry[3] for entry in sorted(self._heap) if not entry[3].cancelled]

    def queued_count(self) -> int:
        """Entries held in the timer queue, cancelled ones included."""
        with self._lock:
            return len(self._heap)

    def next_deadline(self) -> datetime | None:
        with self._lock:
            self._drop_cancelled()
            return self._heap[0][0] if self._heap else None

    def run_pending(self) -> int:
        """Run every callback due at the current clock time; returns how many ran."""
        ran = 0
        while True:
            handle = self._pop_due(self.now())
            if handle is None:
                return ran
            self._execute(handle)
            ran += 1

    def _push(self, handle: TimerHandle) -> None:
        with self._lock:
            handle._queued = True
            heapq.heappush(self._heap, (handle.when, handle.priority, next(self._counter), handle))
        self._wakeup.set()

    def _pop(self) -> TimerHandle:
        handle = heapq.heappop(self._heap)[3]
        handle._queued = False
        if handle.cancelled:
            self._cancelled_count -= 1
        return handle

    def _cancel_timer(self, handle: TimerHandle) -> None:
        with self._lock:
            if not handle._mark_cancelled() or not handle._queued:
                return
            self._cancelled_count += 1
            if (
                self._cancelled_count > COMPACT_MIN_ENTRIES
                and self._cancelled_count * 2 > len(self._heap)
            ):
                kept = []
                for entry in self._heap:
                    if entry[3].cancelled:
                        entry[3]._queued = False
                    else:
                        kept.append(entry)
                heapq.heapify(kept)
                self._heap = kept
                self._cancelled_count = 0

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0][3].cancelled:
            self._pop()

    def _pop_due(self, now: datetime) -> TimerHandle | None:
        with self._lock:
            self._drop_cancelled()
            if not self._heap or self._heap[0][0] > now:
                return None
            return self._pop()

    def _execute(self, handle: TimerHandle) -> None:
        callback = handle.callback
        if handle.cancelled or callback is None:
            return
        handle.fired += 1
        try:
            callback()
        except Exception:
            logger.exception("Loop callback %s failed", handle.name)
        if handle.interval_seconds is None or handle.cancelled:
            return
        next_when = handle.when + timedelta(seconds=handle.interval_seconds)
        now = self.now()
        if next_when <= now:
            # Fell behind (sleep or clock jump); skip the missed ticks.
            next_when = now + timedelta(seconds=handle.interval_seconds)
        handle.when = next_when
        self._push(handle)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.clear()
            self.run_pending()
            deadline = self.next_deadline()
            timeout = self._max_wait_seconds
            if deadline is not None:
                timeout = min(max(seconds_until(deadline, self.now()), 0.0), self._max_wait_seconds)
            self._wakeup.wait(timeout=timeout)


__all__ = [
    "TimerHandle",
    "TrackingLoop",
    "PRIORITY_CALL",
    "PRIORITY_DEADLINE",
    "PRIORITY_TICK",
]
