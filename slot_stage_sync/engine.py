from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future
from typing import Union

from slot_stage_sync.classifier import classify
from slot_stage_sync.config import ReelTimingConfig, TierConfig
from slot_stage_sync.errors import NotReadyError
from slot_stage_sync.scheduler import reel_stop_offsets
from slot_stage_sync.stages import (
    EngineWinTier,
    ForcedOutcome,
    SpinResult,
    StageEvent,
    StageType,
    jackpot_present_stage,
    reel_stop,
)

ScriptItem = Union[SpinResult, None, BaseException]

# Win/bet multiple used when synthesizing a forced outcome.
FORCED_MULTIPLIERS: dict[ForcedOutcome, float] = {
    ForcedOutcome.LOSE: 0.0,
    ForcedOutcome.NEAR_MISS: 0.0,
    ForcedOutcome.SMALL_WIN: 1.5,
    ForcedOutcome.MEDIUM_WIN: 5.0,
    ForcedOutcome.CASCADE: 4.0,
    ForcedOutcome.FREE_SPINS: 3.0,
    ForcedOutcome.BIG_WIN: 25.0,
    ForcedOutcome.MEGA_WIN: 60.0,
    ForcedOutcome.EPIC_WIN: 150.0,
    ForcedOutcome.JACKPOT_GRAND: 100.0,
    ForcedOutcome.ULTRA_WIN: 600.0,
}

EVALUATE_DELAY_MS = 100
PRESENT_DELAY_MS = 200
SPIN_END_DELAY_MS = 200


class GameEngine(ABC):
    """
    External game/audio engine. Results arrive asynchronously as a Future;
    the done-callback runs on whichever thread resolves it.
    """

    @property
    @abstractmethod
    def is_ready(self) -> bool: ...

    @abstractmethod
    def spin(self, bet: float) -> Future[SpinResult | None]: ...

    @abstractmethod
    def spin_forced(self, outcome: ForcedOutcome, bet: float) -> Future[SpinResult | None]: ...


def _engine_hint(tiers: TierConfig, multiplier: float) -> EngineWinTier:
    if multiplier <= 0:
        return EngineWinTier.NONE
    if multiplier < tiers.big_win_threshold:
        return EngineWinTier.WIN
    ladder = [EngineWinTier.BIG_WIN, EngineWinTier.MEGA_WIN, EngineWinTier.EPIC_WIN, EngineWinTier.ULTRA_WIN]
    result = classify(multiplier, 1.0, tiers)
    idx = (result.big_win_max_tier or 1) - 1
    return ladder[min(idx, len(ladder) - 1)]


def synthesize_result(
    spin_id: str,
    bet: float,
    multiplier: float,
    *,
    tiers: TierConfig | None = None,
    timing: ReelTimingConfig | None = None,
    outcome: ForcedOutcome | None = None,
) -> SpinResult:
    """
    Build a plausible stage sequence for a win of `multiplier` x bet.

    Reel stops follow the non-turbo visual timing so the engine and the
    scheduler agree on where the reel phase ends.
    """
    tiers = tiers if tiers is not None else TierConfig.legacy()
    timing = timing if timing is not None else ReelTimingConfig()

    total_win = round(bet * multiplier, 2)
    stages: list[StageEvent] = [StageEvent(StageType.SPIN_START.value, 0)]

    offsets = reel_stop_offsets(timing, timing.reel_count, False)
    near_miss = outcome == ForcedOutcome.NEAR_MISS
    for i, at in enumerate(offsets):
        if near_miss and i == timing.reel_count - 1 and i > 0:
            stages.append(StageEvent(StageType.ANTICIPATION_ON.value, offsets[i - 1] + timing.anticipation_lead_ms))
            stages.append(StageEvent(StageType.ANTICIPATION_OFF.value, at))
        stages.append(StageEvent(reel_stop(i), at, {"reelIndex": i}))

    t = offsets[-1] + EVALUATE_DELAY_MS
    stages.append(StageEvent(StageType.EVALUATE_WINS.value, t))

    if outcome == ForcedOutcome.CASCADE:
        stages.append(StageEvent(StageType.CASCADE_START.value, t))
        for step in range(3):
            t += 400
            stages.append(StageEvent(StageType.CASCADE_STEP.value, t, {"step": step}))
        stages.append(StageEvent(StageType.CASCADE_END.value, t))

    if outcome == ForcedOutcome.FREE_SPINS:
        stages.append(StageEvent(StageType.FEATURE_ENTER.value, t, {"feature": "freeSpins", "count": 10}))

    result = classify(total_win, bet, tiers)
    if not result.is_empty:
        t += PRESENT_DELAY_MS
        if result.is_big_win and result.big_win_max_tier is not None:
            stages.append(StageEvent("BIG_WIN_INTRO", t, {"amount": total_win}))
            t += tiers.intro_duration_ms
            stages.append(StageEvent(StageType.ROLLUP_START.value, t, {"amount": total_win}))
            for rung in tiers.big_win_tiers_up_to(result.big_win_max_tier):
                stages.append(StageEvent(rung.stage_name, t, {"tierId": rung.tier_id, "label": rung.display_label}))
                t += rung.duration_ms
            stages.append(StageEvent(StageType.ROLLUP_END.value, t, {"amount": total_win}))
            stages.append(StageEvent("BIG_WIN_END", t))
            t += tiers.end_duration_ms
            stages.append(StageEvent("BIG_WIN_FADE_OUT", t))
            t += tiers.fade_out_duration_ms
        else:
            tier = result.regular_tier
            stages.append(StageEvent(result.present_stage_name or StageType.WIN_PRESENT.value, t, {"amount": total_win}))
            if tier is not None and tier.rollup_duration_ms > 0:
                stages.append(StageEvent(StageType.ROLLUP_START.value, t, {"amount": total_win}))
                if tier.rollup_tick_rate_hz > 0:
                    step_ms = max(1, 1000 // tier.rollup_tick_rate_hz)
                    for tick_at in range(t + step_ms, t + tier.rollup_duration_ms, step_ms):
                        stages.append(StageEvent(StageType.ROLLUP_TICK.value, tick_at))
                t += tier.rollup_duration_ms
                stages.append(StageEvent(StageType.ROLLUP_END.value, t, {"amount": total_win}))

    if outcome == ForcedOutcome.JACKPOT_GRAND:
        stages.append(StageEvent(StageType.JACKPOT_TRIGGER.value, t, {"tier": "GRAND"}))
        t += 1000
        stages.append(StageEvent(jackpot_present_stage("GRAND"), t))
        stages.append(StageEvent(StageType.JACKPOT_AWARD.value, t, {"tier": "GRAND"}))

    if outcome == ForcedOutcome.FREE_SPINS:
        stages.append(StageEvent(StageType.FEATURE_EXIT.value, t, {"feature": "freeSpins"}))

    stages.append(StageEvent(StageType.SPIN_END.value, t + SPIN_END_DELAY_MS))

    return SpinResult(
        spin_id=spin_id,
        total_win=total_win,
        is_win=total_win > 0,
        stages=tuple(stages),
        big_win_tier=_engine_hint(tiers, multiplier),
    )


class ScriptedEngine(GameEngine):
    """
    Deterministic in-process engine for tests, demos and the CLI.

    Results come from a script queue (SpinResult, None, or an exception to
    fail the future with). Forced spins with an empty queue synthesize a
    result for the requested outcome. With auto_resolve=False futures stay
    pending until resolve_next() is called.
    """

    def __init__(
        self,
        script: list[ScriptItem] | None = None,
        *,
        ready: bool = True,
        auto_resolve: bool = True,
        tiers: TierConfig | None = None,
        timing: ReelTimingConfig | None = None,
    ) -> None:
        self._script: deque[ScriptItem] = deque(script or [])
        self.ready = ready
        self.auto_resolve = auto_resolve
        self.tiers = tiers if tiers is not None else TierConfig.legacy()
        self.timing = timing if timing is not None else ReelTimingConfig()
        self.calls: list[tuple[float, ForcedOutcome | None]] = []
        self._pending: deque[tuple[Future[SpinResult | None], ScriptItem | None]] = deque()
        self._ids = itertools.count(1)

    @property
    def is_ready(self) -> bool:
        return self.ready

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, item: ScriptItem) -> None:
        self._script.append(item)

    def spin(self, bet: float) -> Future[SpinResult | None]:
        return self._start(bet, None)

    def spin_forced(self, outcome: ForcedOutcome, bet: float) -> Future[SpinResult | None]:
        return self._start(bet, ForcedOutcome(outcome))

    def resolve_next(self) -> SpinResult | None:
        """Resolve the oldest pending future. Returns the delivered result."""
        if not self._pending:
            raise RuntimeError("no pending spin to resolve")
        fut, item = self._pending.popleft()
        return self._deliver(fut, item)

    def _start(self, bet: float, outcome: ForcedOutcome | None) -> Future[SpinResult | None]:
        if not self.ready:
            raise NotReadyError("engine is not ready")
        self.calls.append((bet, outcome))
        spin_id = f"spin-{next(self._ids)}"

        if self._script:
            item = self._script.popleft()
        elif outcome is not None:
            item = synthesize_result(
                spin_id, bet, FORCED_MULTIPLIERS[outcome], tiers=self.tiers, timing=self.timing, outcome=outcome
            )
        else:
            item = synthesize_result(spin_id, bet, 0.0, tiers=self.tiers, timing=self.timing)

        fut: Future[SpinResult | None] = Future()
        if self.auto_resolve:
            self._deliver(fut, item)
        else:
            self._pending.append((fut, item))
        return fut

    @staticmethod
    def _deliver(fut: Future[SpinResult | None], item: ScriptItem | None) -> SpinResult | None:
        if isinstance(item, BaseException):
            fut.set_exception(item)
            return None
        fut.set_result(item)
        return item
