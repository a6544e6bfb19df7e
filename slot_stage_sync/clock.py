from __future__ import annotations

import heapq
from typing import Any, Callable


class TimerHandle:
    __slots__ = ("when_ms", "seq", "_callback", "_args", "cancelled")

    def __init__(self, when_ms: int, seq: int, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self.when_ms = when_ms
        self.seq = seq
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def _run(self) -> None:
        self._callback(*self._args)

    def __repr__(self) -> str:
        state = " cancelled" if self.cancelled else ""
        return f"<TimerHandle when={self.when_ms}ms seq={self.seq}{state}>"


class LogicalClock:
    """
    Monotonic millisecond clock advanced explicitly by the host.

    Rules:
    - Timers fire only inside advance()/advance_to(), in (when_ms, seq) order.
    - now_ms equals the timer's when_ms while its callback runs.
    - Timers scheduled from a callback fire in the same advance() if due.
    - A cancelled handle is skipped at fire time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now = int(start_ms)
        self._seq = 0
        self._heap: list[tuple[int, int, TimerHandle]] = []

    @property
    def now_ms(self) -> int:
        return self._now

    def call_at(self, when_ms: int, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        when = max(int(when_ms), self._now)
        self._seq += 1
        handle = TimerHandle(when, self._seq, callback, args)
        heapq.heappush(self._heap, (when, self._seq, handle))
        return handle

    def call_later(self, delay_ms: int, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0 (got {delay_ms})")
        return self.call_at(self._now + int(delay_ms), callback, *args)

    def pending_count(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def next_deadline(self) -> int | None:
        self._drop_cancelled_head()
        if not self._heap:
            return None
        return self._heap[0][0]

    def advance(self, delta_ms: int) -> int:
        if delta_ms < 0:
            raise ValueError(f"clock cannot go backward (delta={delta_ms})")
        return self.advance_to(self._now + int(delta_ms))

    def advance_to(self, target_ms: int) -> int:
        """Fire every due timer up to target_ms. Returns the number fired."""
        target = int(target_ms)
        if target < self._now:
            raise ValueError(f"clock cannot go backward ({self._now} -> {target})")
        fired = 0
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = when
            handle._run()
            fired += 1
        self._now = target
        return fired

    def run_until_idle(self, limit_ms: int | None = None) -> int:
        """Advance through every pending timer (optionally capped at limit_ms)."""
        fired = 0
        while True:
            deadline = self.next_deadline()
            if deadline is None:
                break
            if limit_ms is not None and deadline > limit_ms:
                self.advance_to(limit_ms)
                break
            fired += self.advance_to(deadline)
        return fired

    def _drop_cancelled_head(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
