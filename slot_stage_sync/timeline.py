from __future__ import annotations

from typing import Callable, Iterable

from slot_stage_sync.errors import OutOfOrderStagesError, TimelineCursorError
from slot_stage_sync.stages import StageEvent


class StageTimeline:
    """
    Ordered stage sequence for the current spin plus a forward-only cursor.

    Holds no timers and fires no callbacks; the scheduler reads from it.
    """

    def __init__(self) -> None:
        self._stages: tuple[StageEvent, ...] = ()
        self._cursor = -1

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def stages(self) -> tuple[StageEvent, ...]:
        return self._stages

    @property
    def cursor(self) -> int:
        return self._cursor

    def load(self, stages: Iterable[StageEvent]) -> None:
        """
        Replace the sequence and reset the cursor to -1.

        Timestamps must be non-decreasing. On violation the previous
        sequence and cursor are kept.
        """
        seq = tuple(stages)
        for i, s in enumerate(seq):
            if s.timestamp_ms < 0:
                raise OutOfOrderStagesError(f"stage {i} ({s.stage_type}) has negative timestamp {s.timestamp_ms}")
            if i > 0 and s.timestamp_ms < seq[i - 1].timestamp_ms:
                raise OutOfOrderStagesError(
                    f"stage {i} ({s.stage_type} @ {s.timestamp_ms}ms) is earlier than "
                    f"stage {i - 1} ({seq[i - 1].stage_type} @ {seq[i - 1].timestamp_ms}ms)"
                )
        self._stages = seq
        self._cursor = -1

    def clear(self) -> None:
        self._stages = ()
        self._cursor = -1

    def advance_to(self, index: int) -> StageEvent:
        if index < self._cursor:
            raise TimelineCursorError(f"cursor cannot move backward ({self._cursor} -> {index})")
        if index >= len(self._stages) or index < 0:
            raise TimelineCursorError(f"index {index} is outside the timeline (len={len(self._stages)})")
        self._cursor = index
        return self._stages[index]

    def current(self) -> StageEvent | None:
        if self._cursor < 0:
            return None
        return self._stages[self._cursor]

    def find_next(self, predicate: Callable[[StageEvent], bool]) -> int | None:
        for i in range(self._cursor + 1, len(self._stages)):
            if predicate(self._stages[i]):
                return i
        return None

    def last_index_of(self, predicate: Callable[[StageEvent], bool]) -> int | None:
        for i in range(len(self._stages) - 1, -1, -1):
            if predicate(self._stages[i]):
                return i
        return None

    def progress(self) -> float:
        if not self._stages:
            return 0.0
        return (self._cursor + 1) / len(self._stages)
