from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from slot_stage_sync.clock import LogicalClock, TimerHandle
from slot_stage_sync.config import ReelTimingConfig
from slot_stage_sync.errors import DuplicateTriggerGuardViolation
from slot_stage_sync.render_sink import RenderSink
from slot_stage_sync.stages import StageEvent, StageType, reel_index_of, reel_stop

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduledTrigger:
    """
    One pending stage trigger.

    fire_at_ms is relative to the start of the spin that scheduled it.
    seq orders triggers of the same batch; generation ties the trigger to the
    scheduler state that created it.
    """

    stage_type: str
    fire_at_ms: int
    seq: int
    generation: int
    payload: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    fired: bool = False
    _handle: TimerHandle | None = field(default=None, repr=False, compare=False)

    @property
    def is_pending(self) -> bool:
        return not (self.cancelled or self.fired)


def reel_stop_offsets(timing: ReelTimingConfig, reel_count: int, is_turbo: bool) -> list[int]:
    """
    Visual stop time (ms after spin start) per reel:

        stagger(i) + animation_duration + per_reel_delay(i)

    Every term is scaled by turbo_factor in turbo mode.
    """
    f = timing.turbo_factor if is_turbo else 1.0
    out: list[int] = []
    for i in range(reel_count):
        stagger = i * timing.reel_start_stagger_ms * f
        animation = timing.reel_spin_ms * f
        per_reel_delay = i * timing.reel_stop_interval_ms * f
        out.append(int(round(stagger + animation + per_reel_delay)))
    return out


class VisualSyncScheduler:
    """
    Cancellable logical timers that fire stage triggers into a RenderSink.

    Rules:
    - schedule() invalidates everything pending, then arms SPIN_START (offset 0)
      and one REEL_STOP_<i> per reel.
    - When the second-to-last reel fires, anticipation_check() is asked whether
      the pending result qualifies. If so, ANTICIPATION_ON is scheduled after a
      lead delay, the last reel is pushed back by anticipation_extension_ms, and
      ANTICIPATION_OFF is armed just ahead of it.
    - When the last reel fires, on_all_reels_stopped() runs exactly once.
    - schedule_chain() is only legal after that.
    - cancel_all() is idempotent and bumps the generation; stale timers are
      dropped at fire time.
    - pause() holds until resume(), across cancel_all() and new batches.
      Anything armed while paused waits in the paused queue.
    - No trigger ever fires twice.
    """

    def __init__(
        self,
        clock: LogicalClock,
        sink: RenderSink,
        timing: ReelTimingConfig | None = None,
        *,
        anticipation_check: Callable[[], bool] | None = None,
        on_all_reels_stopped: Callable[[], None] | None = None,
        on_chain_complete: Callable[[], None] | None = None,
        on_fire: Callable[[ScheduledTrigger], None] | None = None,
    ) -> None:
        self._clock = clock
        self._sink = sink
        self._timing = timing if timing is not None else ReelTimingConfig()
        self._timing.validate()

        self.anticipation_check = anticipation_check
        self.on_all_reels_stopped = on_all_reels_stopped
        self.on_chain_complete = on_chain_complete
        self.on_fire = on_fire

        self._generation = 0
        self._seq = 0
        self._triggers: list[ScheduledTrigger] = []
        self._origin_ms = clock.now_ms
        self._is_turbo = False
        self._reel_count = 0
        self._all_reels_stopped = False
        self._anticipation_active = False

        self._chain_done: TimerHandle | None = None
        self._chain_done_at_ms: int | None = None

        self._paused_at: int | None = None
        self._paused_remaining: list[tuple[ScheduledTrigger, int]] = []
        self._paused_chain_remaining: int | None = None

    # --- introspection ------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def triggers(self) -> list[ScheduledTrigger]:
        return list(self._triggers)

    @property
    def all_reels_stopped(self) -> bool:
        return self._all_reels_stopped

    @property
    def anticipation_active(self) -> bool:
        return self._anticipation_active

    @property
    def is_paused(self) -> bool:
        return self._paused_at is not None

    def elapsed_ms(self) -> int:
        return self._now() - self._origin_ms

    def pending_triggers(self) -> list[ScheduledTrigger]:
        return [t for t in self._triggers if t.is_pending]

    # --- scheduling ---------------------------------------------------

    def schedule(self, stage_count: int, is_turbo: bool = False) -> list[ScheduledTrigger]:
        """Arm SPIN_START plus stage_count reel stops, relative to now."""
        if stage_count < 1:
            raise ValueError(f"stage_count must be >= 1 (got {stage_count})")

        self.cancel_all()
        self._triggers = []
        self._origin_ms = self._now()
        self._is_turbo = bool(is_turbo)
        self._reel_count = int(stage_count)

        batch = [self._arm(StageType.SPIN_START.value, 0, {"turbo": self._is_turbo})]
        for i, offset in enumerate(reel_stop_offsets(self._timing, stage_count, self._is_turbo)):
            batch.append(self._arm(reel_stop(i), offset, {"reelIndex": i}))

        logger.debug(
            "scheduled spin batch gen=%d reels=%d turbo=%s offsets=%s",
            self._generation,
            stage_count,
            self._is_turbo,
            [t.fire_at_ms for t in batch[1:]],
        )
        return batch

    def schedule_chain(self, stages: Sequence[StageEvent], base_timestamp_ms: int) -> list[ScheduledTrigger]:
        """
        Arm presentation stages relative to now.

        Offset per stage = stage.timestamp_ms - base_timestamp_ms, clamped at 0.
        on_chain_complete runs after the last of them (immediately-due when
        the chain is empty).
        """
        if not self._all_reels_stopped:
            raise RuntimeError("presentation chain cannot be scheduled before all reels have stopped")

        now_rel = self.elapsed_ms()
        chain: list[ScheduledTrigger] = []
        for s in stages:
            offset = max(0, int(s.timestamp_ms) - int(base_timestamp_ms))
            chain.append(self._arm(s.stage_type, now_rel + offset, dict(s.payload)))

        done_at = max((t.fire_at_ms for t in chain), default=now_rel)
        self._chain_done_at_ms = done_at
        if self._paused_at is not None:
            self._paused_chain_remaining = max(0, self._origin_ms + done_at - self._paused_at)
        else:
            self._chain_done = self._clock.call_at(
                self._origin_ms + done_at, self._fire_chain_done, self._generation
            )
        logger.debug("scheduled presentation chain gen=%d stages=%d done_at=%dms", self._generation, len(chain), done_at)
        return chain

    def cancel_all(self) -> None:
        for t in self._triggers:
            if t.is_pending:
                t.cancelled = True
            if t._handle is not None:
                t._handle.cancel()
        if self._chain_done is not None:
            self._chain_done.cancel()
            self._chain_done = None
        self._chain_done_at_ms = None
        self._paused_remaining = []
        self._paused_chain_remaining = None
        self._all_reels_stopped = False
        self._anticipation_active = False
        self._generation += 1

    # --- pause / resume -----------------------------------------------

    def pause(self) -> None:
        """Freeze pending timers, remembering how long each still had to go.

        Stays in effect until resume(); batches scheduled in the meantime
        are queued rather than armed.
        """
        if self._paused_at is not None:
            return
        now = self._clock.now_ms
        self._paused_at = now
        pending = sorted(
            (t for t in self._triggers if t.is_pending and t._handle is not None),
            key=lambda t: (t._handle.when_ms, t._handle.seq),
        )
        self._paused_remaining = []
        for t in pending:
            self._paused_remaining.append((t, max(0, t._handle.when_ms - now)))
            t._handle.cancel()
            t._handle = None
        if self._chain_done is not None:
            self._paused_chain_remaining = max(0, self._chain_done.when_ms - now)
            self._chain_done.cancel()
            self._chain_done = None
        logger.debug("scheduler paused with %d pending triggers", len(self._paused_remaining))

    def resume(self) -> None:
        if self._paused_at is None:
            return
        shift = self._clock.now_ms - self._paused_at
        self._origin_ms += shift
        self._paused_at = None

        remaining, self._paused_remaining = self._paused_remaining, []
        # stable: equal delays keep the order they were armed in
        remaining.sort(key=lambda item: item[1])
        for t, left in remaining:
            # fire_at_ms stays relative to the (shifted) spin origin
            t._handle = self._clock.call_later(left, self._fire, t)

        if self._paused_chain_remaining is not None:
            self._chain_done = self._clock.call_later(
                self._paused_chain_remaining, self._fire_chain_done, self._generation
            )
            self._paused_chain_remaining = None
        logger.debug("scheduler resumed after %dms with %d triggers", shift, len(remaining))

    # --- internals ----------------------------------------------------

    def _arm(self, stage_type: str, fire_at_ms: int, payload: dict[str, Any]) -> ScheduledTrigger:
        self._seq += 1
        t = ScheduledTrigger(
            stage_type=stage_type,
            fire_at_ms=int(fire_at_ms),
            seq=self._seq,
            generation=self._generation,
            payload=payload,
        )
        self._set_timer(t)
        self._triggers.append(t)
        return t

    def _rearm(self, t: ScheduledTrigger, fire_at_ms: int) -> None:
        if t._handle is not None:
            t._handle.cancel()
            t._handle = None
        self._paused_remaining = [(p, left) for p, left in self._paused_remaining if p is not t]
        t.fire_at_ms = int(fire_at_ms)
        self._set_timer(t)

    def _now(self) -> int:
        return self._paused_at if self._paused_at is not None else self._clock.now_ms

    def _set_timer(self, t: ScheduledTrigger) -> None:
        if self._paused_at is not None:
            self._paused_remaining.append((t, max(0, self._origin_ms + t.fire_at_ms - self._paused_at)))
            return
        t._handle = self._clock.call_at(self._origin_ms + t.fire_at_ms, self._fire, t)

    def _fire(self, t: ScheduledTrigger) -> None:
        if t.cancelled or t.generation != self._generation:
            return
        if t.fired:
            raise DuplicateTriggerGuardViolation(f"trigger {t.stage_type} (seq={t.seq}) fired twice")
        t.fired = True
        t._handle = None

        if self.on_fire is not None:
            self.on_fire(t)
        logger.debug("fire %s at +%dms gen=%d", t.stage_type, t.fire_at_ms, t.generation)
        self._sink.trigger_stage(t.stage_type, t.payload)

        reel = reel_index_of(t.stage_type)
        if reel is None:
            return
        if reel == self._reel_count - 2:
            self._maybe_start_anticipation(t.generation)
        if reel == self._reel_count - 1:
            self._finish_reels(t.generation)

    def _maybe_start_anticipation(self, generation: int) -> None:
        if self.anticipation_check is None or generation != self._generation:
            return
        if not self.anticipation_check():
            return
        # callbacks may have cancelled the batch
        if generation != self._generation:
            return

        last = next(
            (t for t in self._triggers if t.stage_type == reel_stop(self._reel_count - 1) and t.is_pending),
            None,
        )
        if last is None:
            return

        f = self._timing.turbo_factor if self._is_turbo else 1.0
        now_rel = self.elapsed_ms()
        lead = max(1, int(round(self._timing.anticipation_lead_ms * f)))
        extension = int(round(self._timing.anticipation_extension_ms * f))
        on_at = now_rel + lead
        last_at = max(last.fire_at_ms + extension, on_at)

        self._anticipation_active = True
        reel_index = self._reel_count - 1
        self._arm(StageType.ANTICIPATION_ON.value, on_at, {"reelIndex": reel_index})
        self._arm(StageType.ANTICIPATION_OFF.value, last_at, {"reelIndex": reel_index})
        # re-armed after OFF so OFF wins the same-instant tie
        self._rearm(last, last_at)
        logger.debug("anticipation armed: on=+%dms last reel moved to +%dms", on_at, last_at)

    def _finish_reels(self, generation: int) -> None:
        if self._all_reels_stopped or generation != self._generation:
            return
        self._all_reels_stopped = True
        self._anticipation_active = False
        logger.debug("all reels stopped at +%dms", self.elapsed_ms())
        if self.on_all_reels_stopped is not None:
            self.on_all_reels_stopped()

    def _fire_chain_done(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._chain_done = None
        self._chain_done_at_ms = None
        if self.on_chain_complete is not None:
            self.on_chain_complete()
