from __future__ import annotations

import logging
import random
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from slot_stage_sync.classifier import WinTierResult, classify, engine_hint_agrees
from slot_stage_sync.clock import LogicalClock, TimerHandle
from slot_stage_sync.config import SessionConfig
from slot_stage_sync.engine import GameEngine
from slot_stage_sync.errors import (
    DuplicateTriggerGuardViolation,
    EngineResultError,
    InsufficientFundsError,
    InvalidBetError,
    InvalidTransitionError,
    NotReadyError,
    OutOfOrderStagesError,
    SlotStageSyncError,
    SpinInProgressError,
    SpinRejectedError,
    TimelineCursorError,
)
from slot_stage_sync.jackpot import JackpotAward, JackpotLedger
from slot_stage_sync.render_sink import InMemoryRenderSink, RenderSink
from slot_stage_sync.scheduler import ScheduledTrigger, VisualSyncScheduler
from slot_stage_sync.snapshots import SessionSnapshot
from slot_stage_sync.stages import ForcedOutcome, SpinResult, StageEvent, StageType, is_reel_stop
from slot_stage_sync.timeline import StageTimeline

logger = logging.getLogger(__name__)

# Stages the scheduler itself triggers during the reel phase.
_REEL_PHASE_TRIGGERED = {
    StageType.SPIN_START.value,
    StageType.ANTICIPATION_ON.value,
    StageType.ANTICIPATION_OFF.value,
}


class SessionState(str, Enum):
    IDLE = "IDLE"
    SPINNING = "SPINNING"
    PRESENTING = "PRESENTING"


@dataclass
class SessionContext:
    """
    Everything a session needs, passed in explicitly.

    The caller owns the lifecycle: init() seeds the jackpot ledger and
    validates configuration; shutdown() disarms every controller built on
    this context.
    """

    engine: GameEngine
    config: SessionConfig = field(default_factory=SessionConfig)
    clock: LogicalClock = field(default_factory=LogicalClock)
    render: RenderSink | None = None
    rng: random.Random = field(default_factory=random.Random)
    ledger: JackpotLedger | None = None
    _active: bool = field(default=False, init=False)
    _closers: list[Callable[[], None]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.render is None:
            self.render = InMemoryRenderSink(clock=self.clock)
        if self.ledger is None:
            self.ledger = JackpotLedger(self.config.jackpots)

    @property
    def is_active(self) -> bool:
        return self._active

    def init(self) -> None:
        self.config.validate()
        self.ledger.new_session()
        self._active = True
        logger.info("session context initialized (tiers=%s)", self.config.tiers.config_id)

    def shutdown(self) -> None:
        if not self._active:
            return
        self._active = False
        closers, self._closers = self._closers, []
        for close in closers:
            close()
        self.ledger.stop_contribution()
        logger.info("session context shut down")

    def register_closer(self, close: Callable[[], None]) -> None:
        self._closers.append(close)


class SpinSessionController:
    """
    Idle -> Spinning -> Presenting -> Idle.

    Rules:
    - spin() is rejected synchronously (nothing changes) for a bad bet,
      missing funds, a busy session or an unready engine.
    - The bet is deducted when the spin actually starts. A spin requested
      while Presenting first asks the renderer to skip, and starts only when
      the skip completes.
    - Triggers come only from engine timestamps via the timeline and the
      scheduler. A spin token drops results of stopped/superseded spins.
    - Engine failures end the spin and are reported through
      RenderSink.on_spin_error, never raised from the result callback.
    """

    def __init__(self, context: SessionContext) -> None:
        self._ctx = context
        self._config = context.config
        self._config.validate()
        self._render: RenderSink = context.render
        self._ledger: JackpotLedger = context.ledger

        self._timeline = StageTimeline()
        self._scheduler = VisualSyncScheduler(
            context.clock,
            self._render,
            self._config.timing,
            anticipation_check=self._anticipation_qualifies,
            on_all_reels_stopped=self._on_all_reels_stopped,
            on_chain_complete=self._on_chain_complete,
            on_fire=self._on_trigger_fire,
        )

        self._state = SessionState.IDLE
        self._balance = float(self._config.starting_balance)
        self._pending_win = 0.0
        self._bet: float | None = None
        self._token = 0

        self._result: SpinResult | None = None
        self._tier: WinTierResult | None = None
        self._award: JackpotAward | None = None
        self._result_evaluated = False
        self._reels_stopped = False
        self._presentation_active = False
        self._skip_pending = False
        self._accrual: TimerHandle | None = None

        context.register_closer(self.close)

    # --- read-only accessors ------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def pending_win(self) -> float:
        return self._pending_win

    @property
    def scheduler(self) -> VisualSyncScheduler:
        return self._scheduler

    @property
    def timeline(self) -> StageTimeline:
        return self._timeline

    @property
    def skip_pending(self) -> bool:
        return self._skip_pending

    def current_tier(self) -> WinTierResult | None:
        return self._tier

    def jackpot_values(self) -> dict[str, float]:
        return self._ledger.values()

    def stage_progress(self) -> float:
        return self._timeline.progress()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state.value,
            balance=self._balance,
            pending_win=self._pending_win,
            bet=self._bet,
            spin_id=self._result.spin_id if self._result is not None else None,
            tier=self._tier,
            jackpot_values=self.jackpot_values(),
            jackpot_award=self._award,
            stage_progress=self.stage_progress(),
            skip_pending=self._skip_pending,
        )

    # --- commands -----------------------------------------------------

    def spin(self, bet: float, *, turbo: bool = False) -> None:
        self._request_spin(bet, None, turbo)

    def spin_forced(self, outcome: ForcedOutcome, bet: float, *, turbo: bool = False) -> None:
        self._request_spin(bet, ForcedOutcome(outcome), turbo)

    def collect(self) -> float:
        """Credit the pending win and end the presentation. Returns the amount."""
        self._require_presenting("collect")
        amount = self._pending_win
        self._credit_pending()
        self._scheduler.cancel_all()
        self._presentation_active = False
        self._set_state(SessionState.IDLE)
        logger.info("collected %.2f (balance=%.2f)", amount, self._balance)
        return amount

    def gamble(self, choice: str) -> bool:
        """
        Double-or-nothing on a card colour. Draws rng.randrange(4):
        0-1 red, 2-3 black. Stays in Presenting either way.
        """
        self._require_presenting("gamble")
        pick = str(choice).lower()
        if pick not in ("red", "black"):
            raise ValueError(f"gamble choice must be 'red' or 'black' (got {choice!r})")
        if self._pending_win <= 0:
            raise InvalidTransitionError("nothing to gamble: pending win is 0")

        card = self._ctx.rng.randrange(4)
        colour = "red" if card < 2 else "black"
        won = colour == pick
        before = self._pending_win
        self._pending_win = before * 2 if won else 0.0
        logger.info("gamble %s drew %s: %.2f -> %.2f", pick, colour, before, self._pending_win)
        return won

    def stop(self) -> None:
        """Abort a spin before its result is evaluated. The bet is not refunded."""
        if self._state != SessionState.SPINNING:
            raise InvalidTransitionError(f"stop is only valid while SPINNING (state={self._state.value})")
        if self._result_evaluated:
            raise InvalidTransitionError("stop is not allowed once the spin result has been evaluated")
        self._token += 1
        self._teardown_spin()
        self._set_state(SessionState.IDLE)
        logger.info("spin stopped (bet %.2f forfeited)", self._bet or 0.0)

    def pause(self) -> None:
        """Freeze triggers and jackpot accrual; resume() picks up where they left off."""
        self._scheduler.pause()
        self._cancel_accrual()

    def resume(self) -> None:
        self._scheduler.resume()
        if self._state == SessionState.SPINNING and self._ledger.is_contributing and self._accrual is None:
            self._arm_accrual(self._token)

    def close(self) -> None:
        self._token += 1
        self._skip_pending = False
        self._teardown_spin()

    # --- spin start ---------------------------------------------------

    def _request_spin(self, bet: float, outcome: ForcedOutcome | None, turbo: bool) -> None:
        if not (bet > 0):
            raise InvalidBetError(f"bet must be > 0 (got {bet})")
        if not self._ctx.is_active:
            raise NotReadyError("session context is not initialized")
        if self._state == SessionState.SPINNING or self._skip_pending:
            raise SpinInProgressError("a spin is already in progress")
        if not self._ctx.engine.is_ready:
            raise NotReadyError("engine is not ready")

        available = self._balance
        if self._state == SessionState.PRESENTING:
            available += self._pending_win
        if bet > available:
            raise InsufficientFundsError(f"bet {bet:.2f} exceeds available balance {available:.2f}")

        if self._state == SessionState.PRESENTING:
            self._skip_pending = True
            token = self._token
            done = False

            def on_complete() -> None:
                nonlocal done
                if done:
                    logger.warning("skip completion called more than once; ignored")
                    return
                done = True
                self._after_skip(token, bet, outcome, turbo)

            logger.debug("spin requested while presenting; asking renderer to skip")
            self._render.request_skip_presentation(on_complete)
            return

        self._start_spin(bet, outcome, turbo)

    def _after_skip(self, token: int, bet: float, outcome: ForcedOutcome | None, turbo: bool) -> None:
        if token != self._token or not self._skip_pending:
            logger.warning("stale skip completion dropped")
            return
        self._skip_pending = False
        if not self._ctx.engine.is_ready:
            # presentation was already skipped on screen; keep the win pending
            logger.warning("engine went unready during skip; spin not started")
            self._render.on_spin_error(None, NotReadyError("engine is not ready"))
            return
        self._credit_pending()
        self._scheduler.cancel_all()
        self._presentation_active = False
        self._set_state(SessionState.IDLE)
        try:
            self._start_spin(bet, outcome, turbo)
        except SpinRejectedError as e:
            logger.warning("spin after skip rejected: %s", e)
            self._render.on_spin_error(None, e)

    def _start_spin(self, bet: float, outcome: ForcedOutcome | None, turbo: bool) -> None:
        self._token += 1
        token = self._token

        self._scheduler.cancel_all()
        self._timeline.clear()
        self._result = None
        self._tier = None
        self._award = None
        self._pending_win = 0.0
        self._result_evaluated = False
        self._reels_stopped = False
        self._presentation_active = False

        self._bet = float(bet)
        self._balance -= self._bet
        self._ledger.start_contribution(self._bet)
        self._arm_accrual(token)
        self._set_state(SessionState.SPINNING)
        self._scheduler.schedule(self._config.timing.reel_count, turbo)
        logger.info("spin started: bet=%.2f turbo=%s forced=%s", self._bet, turbo, outcome.value if outcome else None)

        try:
            if outcome is None:
                fut = self._ctx.engine.spin(self._bet)
            else:
                fut = self._ctx.engine.spin_forced(outcome, self._bet)
        except Exception:
            # engine refused synchronously: roll the spin back entirely
            self._token += 1
            self._teardown_spin()
            self._balance += self._bet
            self._set_state(SessionState.IDLE)
            raise

        fut.add_done_callback(lambda f, t=token: self._on_result(t, f))

    # --- result -------------------------------------------------------

    def _on_result(self, token: int, fut: Future[SpinResult | None]) -> None:
        if token != self._token or self._state != SessionState.SPINNING:
            logger.warning("stale spin result dropped (token=%d current=%d)", token, self._token)
            return
        try:
            self._evaluate_result(token, fut)
        except (DuplicateTriggerGuardViolation, TimelineCursorError):
            raise
        except SlotStageSyncError as e:
            logger.error("failed to evaluate spin result: %s", e)
            self._fail_spin(None, e, refund=False)

    def _evaluate_result(self, token: int, fut: Future[SpinResult | None]) -> None:
        self._ledger.stop_contribution()
        self._cancel_accrual()

        try:
            result = fut.result()
        except Exception as e:
            logger.error("engine failed to produce a spin result: %s", e)
            err = EngineResultError(f"engine failed: {e}")
            err.__cause__ = e
            self._fail_spin(None, err, refund=True)
            return
        if result is None:
            logger.error("engine returned no spin result")
            self._fail_spin(None, EngineResultError("engine returned no result"), refund=True)
            return

        win_amount = self._win_amount(result)
        try:
            self._timeline.load(result.stages)
        except OutOfOrderStagesError as e:
            logger.warning("spin %s has out-of-order stages; crediting %.2f without presentation", result.spin_id, win_amount)
            self._scheduler.cancel_all()
            self._result = result
            self._balance += win_amount
            self._set_state(SessionState.IDLE)
            self._render.on_spin_error(result.spin_id, e)
            return

        self._result = result
        bet = self._bet or 0.0
        self._tier = classify(win_amount, bet, self._config.tiers)
        if not engine_hint_agrees(self._tier, result.big_win_tier):
            logger.debug(
                "engine tier hint %s disagrees with local classification %s",
                result.big_win_tier.value if result.big_win_tier else None,
                self._tier.describe(),
            )

        if win_amount > 0:
            self._award = self._ledger.evaluate(self._tier.multiplier)
        self._pending_win = win_amount + (self._award.amount if self._award is not None else 0.0)
        self._result_evaluated = True

        skipped = [
            s.stage_type
            for s in result.stages[: self._last_reel_stop_index() + 1]
            if not is_reel_stop(s.stage_type) and s.stage_type not in _REEL_PHASE_TRIGGERED
        ]
        if skipped:
            logger.debug("reel-phase stages not triggered: %s", skipped)

        logger.info(
            "spin %s resolved: win=%.2f tier=%s jackpot=%s",
            result.spin_id,
            win_amount,
            self._tier.describe(),
            self._award.tier.value if self._award is not None else None,
        )

        if self._reels_stopped and token == self._token:
            self._resolve_presentation()

    def _fail_spin(self, spin_id: str | None, error: Exception, *, refund: bool) -> None:
        self._token += 1
        self._teardown_spin()
        if refund and self._bet is not None:
            self._balance += self._bet
        self._set_state(SessionState.IDLE)
        self._render.on_spin_error(spin_id, error)

    # --- scheduler hooks ----------------------------------------------

    def _anticipation_qualifies(self) -> bool:
        if not self._result_evaluated or self._tier is None or self._tier.is_empty:
            return False
        floor = self._config.timing.anticipation_min_multiplier
        if floor is None:
            floor = self._config.tiers.big_win_threshold
        return self._tier.multiplier >= floor

    def _on_trigger_fire(self, trigger: ScheduledTrigger) -> None:
        if not len(self._timeline):
            return
        idx = self._timeline.find_next(lambda s: s.stage_type == trigger.stage_type)
        if idx is None:
            return
        stage = self._timeline.advance_to(idx)
        for k, v in stage.payload.items():
            trigger.payload.setdefault(k, v)

    def _on_all_reels_stopped(self) -> None:
        self._reels_stopped = True
        if self._result_evaluated:
            self._resolve_presentation()
        else:
            logger.debug("reels stopped before the result arrived; waiting")

    def _on_chain_complete(self) -> None:
        self._presentation_active = False
        logger.debug("presentation chain complete (state=%s)", self._state.value)

    # --- presentation -------------------------------------------------

    def _resolve_presentation(self) -> None:
        result = self._result
        tier = self._tier
        if result is None or tier is None:
            return

        needs_presentation = (
            result.is_win
            and not tier.is_empty
            and (tier.multiplier > self._config.auto_collect_max_multiplier or self._award is not None)
        )
        if needs_presentation:
            self._set_state(SessionState.PRESENTING)
        else:
            self._credit_pending()
            self._set_state(SessionState.IDLE)

        chain, base = self._presentation_chain()
        self._presentation_active = needs_presentation
        self._scheduler.schedule_chain(chain, base)

    def _presentation_chain(self) -> tuple[list[StageEvent], int]:
        stages = self._timeline.stages
        last = self._last_reel_stop_index()
        base = stages[last].timestamp_ms if last >= 0 else 0
        if last > self._timeline.cursor:
            self._timeline.advance_to(last)
        chain = [s for s in stages[last + 1 :] if s.stage_type != StageType.SPIN_START.value]
        return chain, base

    def _last_reel_stop_index(self) -> int:
        idx = self._timeline.last_index_of(lambda s: is_reel_stop(s.stage_type))
        return -1 if idx is None else idx

    # --- helpers ------------------------------------------------------

    def _win_amount(self, result: SpinResult) -> float:
        if not result.is_win or result.total_win <= 0:
            return 0.0
        if self._config.win_is_bet_multiple:
            return float(result.total_win) * (self._bet or 0.0)
        return float(result.total_win)

    def _credit_pending(self) -> None:
        self._balance += self._pending_win
        self._pending_win = 0.0

    def _require_presenting(self, op: str) -> None:
        if self._state != SessionState.PRESENTING:
            raise InvalidTransitionError(f"{op} is only valid while PRESENTING (state={self._state.value})")
        if self._skip_pending:
            raise InvalidTransitionError(f"{op} is not allowed while a skip is pending")

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.info("state %s -> %s", self._state.value, state.value)
        self._state = state
        self._render.on_state_change(state)

    def _teardown_spin(self) -> None:
        self._scheduler.cancel_all()
        self._ledger.stop_contribution()
        self._cancel_accrual()
        self._timeline.clear()
        self._presentation_active = False

    def _arm_accrual(self, token: int) -> None:
        self._cancel_accrual()
        if self._scheduler.is_paused:
            return
        self._accrual = self._ctx.clock.call_later(
            self._ledger.config.accrual_tick_ms, self._accrual_tick, token
        )

    def _accrual_tick(self, token: int) -> None:
        self._accrual = None
        if token != self._token or not self._ledger.is_contributing:
            return
        self._ledger.accrual_tick()
        self._arm_accrual(token)

    def _cancel_accrual(self) -> None:
        if self._accrual is not None:
            self._accrual.cancel()
            self._accrual = None
