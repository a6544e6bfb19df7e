from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from slot_stage_sync.clock import LogicalClock
    from slot_stage_sync.controller import SessionState


class RenderSink(ABC):
    """
    Rendering-layer observer. The controller and scheduler write to it; it
    never calls back into them except through the skip completion callback.
    """

    @abstractmethod
    def trigger_stage(self, stage_type: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    def on_state_change(self, state: SessionState) -> None: ...

    @abstractmethod
    def request_skip_presentation(self, on_complete: Callable[[], None]) -> None:
        """
        Wind down the current presentation and call on_complete once done.
        With nothing on screen, on_complete may be called immediately.
        """

    def on_spin_error(self, spin_id: str | None, error: Exception) -> None:
        return None


@dataclass(frozen=True, slots=True)
class TriggerRecord:
    seq: int
    at_ms: int
    stage_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class InMemoryRenderSink(RenderSink):
    """
    Recording sink for tests/demos.

    Owns trigger seq numbering. auto_complete_skip=False holds skip callbacks
    until complete_pending_skips() is called, which lets tests observe the
    window between the skip request and its completion.
    """

    clock: LogicalClock | None = None
    auto_complete_skip: bool = True
    triggers: list[TriggerRecord] = field(default_factory=list)
    states: list[SessionState] = field(default_factory=list)
    errors: list[tuple[str | None, Exception]] = field(default_factory=list)
    skip_requests: int = 0
    _pending_skips: list[Callable[[], None]] = field(default_factory=list, init=False)
    _seq: int = field(default=0, init=False)

    def trigger_stage(self, stage_type: str, payload: dict[str, Any]) -> None:
        self._seq += 1
        at = self.clock.now_ms if self.clock is not None else 0
        self.triggers.append(TriggerRecord(seq=self._seq, at_ms=at, stage_type=stage_type, payload=dict(payload)))

    def on_state_change(self, state: SessionState) -> None:
        self.states.append(state)

    def request_skip_presentation(self, on_complete: Callable[[], None]) -> None:
        self.skip_requests += 1
        if self.auto_complete_skip:
            on_complete()
        else:
            self._pending_skips.append(on_complete)

    def on_spin_error(self, spin_id: str | None, error: Exception) -> None:
        self.errors.append((spin_id, error))

    @property
    def pending_skip_count(self) -> int:
        return len(self._pending_skips)

    def complete_pending_skips(self) -> int:
        pending, self._pending_skips = self._pending_skips, []
        for cb in pending:
            cb()
        return len(pending)

    def stage_types(self) -> list[str]:
        return [t.stage_type for t in self.triggers]

    def count(self, stage_type: str) -> int:
        return sum(1 for t in self.triggers if t.stage_type == stage_type)

    def clear(self) -> None:
        self.triggers.clear()
        self.states.clear()
        self.errors.clear()
        self.skip_requests = 0
