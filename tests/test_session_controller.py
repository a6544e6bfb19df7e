from __future__ import annotations

from concurrent.futures import Future

import pytest

from slot_stage_sync.config import SessionConfig
from slot_stage_sync.controller import SessionState
from slot_stage_sync.errors import (
    DuplicateTriggerGuardViolation,
    EngineResultError,
    InsufficientFundsError,
    InvalidBetError,
    InvalidTransitionError,
    LedgerNotSeededError,
    NotReadyError,
    OutOfOrderStagesError,
    SpinInProgressError,
)
from slot_stage_sync.jackpot_config import JackpotTierName
from slot_stage_sync.stages import SpinResult, StageEvent

from tests._support.session_helpers import make_result, make_session


class FixedRng:
    def __init__(self, *cards: int) -> None:
        self._cards = list(cards)

    def randrange(self, n: int) -> int:
        assert n == 4
        return self._cards.pop(0)


def test_small_win_is_auto_collected() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0)

    assert s.controller.state == SessionState.SPINNING
    assert s.controller.balance == pytest.approx(999.0)

    s.clock.run_until_idle()

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(1000.5)
    assert s.controller.pending_win == 0.0
    assert s.sink.states == [SessionState.SPINNING, SessionState.IDLE]
    assert s.sink.stage_types() == [
        "SPIN_START",
        "REEL_STOP_0",
        "REEL_STOP_1",
        "REEL_STOP_2",
        "REEL_STOP_3",
        "REEL_STOP_4",
        "EVALUATE_WINS",
        "WIN_PRESENT",
        "ROLLUP_START",
        "ROLLUP_END",
        "SPIN_END",
    ]


def test_presentation_chain_is_timed_from_last_reel_stop() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    at = {t.stage_type: t.at_ms for t in s.sink.triggers}
    assert at["REEL_STOP_4"] == 2240
    assert at["EVALUATE_WINS"] == 2340
    assert at["WIN_PRESENT"] == 2540
    assert at["ROLLUP_END"] == 3340
    assert s.controller.stage_progress() == 1.0


def test_engine_payload_reaches_the_renderer() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    present = next(t for t in s.sink.triggers if t.stage_type == "WIN_PRESENT")
    assert present.payload["amount"] == 1.5
    reel = next(t for t in s.sink.triggers if t.stage_type == "REEL_STOP_2")
    assert reel.payload["reelIndex"] == 2


def test_larger_win_waits_for_collect() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    assert s.controller.state == SessionState.PRESENTING
    assert s.controller.pending_win == pytest.approx(5.0)
    assert s.controller.balance == pytest.approx(999.0)
    tier = s.controller.current_tier()
    assert tier is not None and tier.stage_name == "WIN_3"

    assert s.controller.collect() == pytest.approx(5.0)
    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(1004.0)


def test_collect_cancels_remaining_presentation_triggers() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    s.clock.advance_to(2600)
    assert s.controller.state == SessionState.PRESENTING

    s.controller.collect()
    s.clock.run_until_idle()

    assert "ROLLUP_END" not in s.sink.stage_types()
    assert "SPIN_END" not in s.sink.stage_types()


def test_gamble_doubles_or_zeroes_pending_win() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    s.ctx.rng = FixedRng(1, 3)
    assert s.controller.gamble("red") is True
    assert s.controller.pending_win == pytest.approx(10.0)
    assert s.controller.state == SessionState.PRESENTING

    assert s.controller.gamble("red") is False
    assert s.controller.pending_win == 0.0
    assert s.controller.state == SessionState.PRESENTING

    with pytest.raises(InvalidTransitionError):
        s.controller.gamble("black")
    s.controller.collect()
    assert s.controller.balance == pytest.approx(999.0)


def test_gamble_rejects_unknown_colour() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()
    with pytest.raises(ValueError):
        s.controller.gamble("green")


def test_spin_while_presenting_requests_skip_exactly_once() -> None:
    """
    A new spin during Presenting asks the renderer to skip once and does not
    touch the balance until the skip completes.
    """
    s = make_session([make_result(5.0), make_result(1.5)], auto_complete_skip=False)
    s.controller.spin(1.0)
    s.clock.run_until_idle()
    assert s.controller.state == SessionState.PRESENTING

    s.controller.spin(1.0)
    assert s.sink.skip_requests == 1
    assert s.controller.balance == pytest.approx(999.0)
    assert s.controller.pending_win == pytest.approx(5.0)
    assert s.controller.state == SessionState.PRESENTING
    assert s.controller.skip_pending is True
    assert len(s.engine.calls) == 1

    with pytest.raises(SpinInProgressError):
        s.controller.spin(1.0)
    assert s.sink.skip_requests == 1

    s.sink.complete_pending_skips()

    # 999 + 5 credited - 1 new bet
    assert s.controller.balance == pytest.approx(1003.0)
    assert s.controller.state == SessionState.SPINNING
    assert len(s.engine.calls) == 2

    s.clock.run_until_idle()
    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(1004.5)
    assert s.sink.states == [
        SessionState.SPINNING,
        SessionState.PRESENTING,
        SessionState.IDLE,
        SessionState.SPINNING,
        SessionState.IDLE,
    ]


def test_engine_going_unready_during_skip_keeps_the_win_pending() -> None:
    s = make_session([make_result(5.0), make_result(1.5)], auto_complete_skip=False)
    s.controller.spin(1.0)
    s.clock.run_until_idle()
    s.controller.spin(1.0)
    states_before = list(s.sink.states)

    s.engine.ready = False
    s.sink.complete_pending_skips()

    assert len(s.sink.errors) == 1
    spin_id, err = s.sink.errors[0]
    assert spin_id is None
    assert isinstance(err, NotReadyError)
    assert s.controller.state == SessionState.PRESENTING
    assert s.controller.pending_win == pytest.approx(5.0)
    assert s.controller.balance == pytest.approx(999.0)
    assert s.controller.skip_pending is False
    assert s.sink.states == states_before
    assert len(s.engine.calls) == 1

    # the player can still collect, or spin again once the engine is back
    s.engine.ready = True
    s.controller.spin(1.0)
    s.sink.complete_pending_skips()
    assert s.controller.state == SessionState.SPINNING
    assert s.controller.balance == pytest.approx(1003.0)


def test_collect_and_gamble_are_blocked_while_skip_pending() -> None:
    s = make_session([make_result(5.0), make_result(1.5)], auto_complete_skip=False)
    s.controller.spin(1.0)
    s.clock.run_until_idle()
    s.controller.spin(1.0)

    with pytest.raises(InvalidTransitionError):
        s.controller.collect()
    with pytest.raises(InvalidTransitionError):
        s.controller.gamble("red")


def test_funds_check_counts_pending_win_while_presenting() -> None:
    s = make_session([make_result(25.0), make_result(0.0)], starting_balance=10.0)
    s.controller.spin(10.0)
    s.clock.run_until_idle()
    assert s.controller.balance == 0.0
    assert s.controller.pending_win == pytest.approx(25.0)
    assert s.controller.state == SessionState.PRESENTING

    with pytest.raises(InsufficientFundsError):
        s.controller.spin(26.0)
    assert s.sink.skip_requests == 0

    s.controller.spin(25.0)
    assert s.controller.balance == 0.0
    assert s.controller.state == SessionState.SPINNING


def test_rejected_spins_leave_state_untouched() -> None:
    s = make_session([make_result(1.5)])

    with pytest.raises(InsufficientFundsError):
        s.controller.spin(2_000.0)
    with pytest.raises(InvalidBetError):
        s.controller.spin(0.0)
    with pytest.raises(InvalidBetError):
        s.controller.spin(-1.0)

    s.engine.ready = False
    with pytest.raises(NotReadyError):
        s.controller.spin(1.0)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == 1000.0
    assert s.engine.calls == []
    assert s.sink.states == []


def test_uninitialized_context_is_not_ready() -> None:
    s = make_session([make_result(1.5)], init=False)
    with pytest.raises(NotReadyError):
        s.controller.spin(1.0)


def test_second_spin_while_spinning_is_rejected() -> None:
    s = make_session([make_result(1.5)], auto_resolve=False)
    s.controller.spin(1.0)
    with pytest.raises(SpinInProgressError):
        s.controller.spin(1.0)
    assert s.controller.balance == pytest.approx(999.0)
    assert len(s.engine.calls) == 1


def test_stop_before_result_forfeits_bet_and_drops_late_result() -> None:
    s = make_session([make_result(5.0)], auto_resolve=False)
    s.controller.spin(1.0)
    s.clock.advance(500)

    s.controller.stop()
    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(999.0)

    s.engine.resolve_next()
    s.clock.advance(60_000)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.pending_win == 0.0
    assert s.sink.stage_types() == ["SPIN_START"]
    assert s.sink.errors == []


def test_stop_after_result_is_invalid() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    with pytest.raises(InvalidTransitionError):
        s.controller.stop()


def test_commands_in_wrong_state_are_invalid() -> None:
    s = make_session()
    with pytest.raises(InvalidTransitionError):
        s.controller.stop()
    with pytest.raises(InvalidTransitionError):
        s.controller.collect()
    with pytest.raises(InvalidTransitionError):
        s.controller.gamble("red")


def test_none_result_is_reported_and_refunded() -> None:
    s = make_session([None])
    s.controller.spin(1.0)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == 1000.0
    assert len(s.sink.errors) == 1
    assert isinstance(s.sink.errors[0][1], EngineResultError)

    s.clock.advance(10_000)
    assert s.sink.triggers == []


def test_engine_exception_is_reported_not_raised() -> None:
    s = make_session([RuntimeError("engine crashed")])
    s.controller.spin(1.0)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == 1000.0
    err = s.sink.errors[0][1]
    assert isinstance(err, EngineResultError)
    assert isinstance(err.__cause__, RuntimeError)


def test_package_error_during_evaluation_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    s = make_session([make_result(5.0)])

    def unseeded(ratio: float) -> None:
        raise LedgerNotSeededError("jackpot pools were never seeded")

    monkeypatch.setattr(s.controller._ledger, "evaluate", unseeded)
    s.controller.spin(1.0)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(999.0)
    assert isinstance(s.sink.errors[0][1], LedgerNotSeededError)


def test_guard_violation_during_evaluation_propagates(monkeypatch: pytest.MonkeyPatch) -> None:
    s = make_session([make_result(1.5)], auto_resolve=False)
    s.controller.spin(1.0)

    def broken(token: int, fut: Future) -> None:
        raise DuplicateTriggerGuardViolation("SPIN_START fired twice")

    monkeypatch.setattr(s.controller, "_evaluate_result", broken)
    fut: Future = Future()
    fut.set_result(make_result(1.5))
    # called directly: Future swallows exceptions raised by done-callbacks
    with pytest.raises(DuplicateTriggerGuardViolation):
        s.controller._on_result(s.controller._token, fut)
    assert s.sink.errors == []
    assert s.controller.state == SessionState.SPINNING


def test_out_of_order_stages_credit_win_without_presentation() -> None:
    bad = SpinResult(
        spin_id="bad-1",
        total_win=3.0,
        is_win=True,
        stages=(StageEvent("SPIN_START", 0), StageEvent("REEL_STOP_0", 1000), StageEvent("REEL_STOP_1", 900)),
    )
    s = make_session([bad])
    s.controller.spin(1.0)

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(1002.0)
    spin_id, err = s.sink.errors[0]
    assert spin_id == "bad-1"
    assert isinstance(err, OutOfOrderStagesError)

    s.clock.advance(10_000)
    assert s.sink.triggers == []


def test_engine_that_never_responds_keeps_spinning_and_accruing() -> None:
    s = make_session([make_result(1.5)], auto_resolve=False)
    s.controller.spin(1.0)
    s.clock.advance(10_000)

    assert s.controller.state == SessionState.SPINNING
    assert s.sink.count("REEL_STOP_4") == 1
    assert "EVALUATE_WINS" not in s.sink.stage_types()
    grown = s.controller.jackpot_values()
    assert grown["MINI"] > 100.0

    s.engine.resolve_next()
    assert s.controller.state == SessionState.IDLE
    # contribution closed as soon as the result arrived
    s.clock.advance(10_000)
    assert s.controller.jackpot_values() == grown

    at = {t.stage_type: t.at_ms for t in s.sink.triggers}
    assert at["EVALUATE_WINS"] == 10_100


def test_big_win_triggers_anticipation_and_presents() -> None:
    s = make_session([make_result(50.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    at = {t.stage_type: t.at_ms for t in s.sink.triggers}
    assert at["ANTICIPATION_ON"] == 1980
    assert at["REEL_STOP_4"] == 3740
    assert at["EVALUATE_WINS"] == 3840

    assert s.controller.state == SessionState.PRESENTING
    tier = s.controller.current_tier()
    assert tier is not None and tier.is_big_win and tier.big_win_max_tier == 2


def test_turbo_spin_uses_halved_timing() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0, turbo=True)
    s.clock.run_until_idle()
    at = {t.stage_type: t.at_ms for t in s.sink.triggers}
    assert at["REEL_STOP_4"] == 1120


def test_mini_jackpot_award_joins_pending_win() -> None:
    s = make_session([make_result(12.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    snap = s.controller.snapshot()
    assert snap.jackpot_award is not None
    assert snap.jackpot_award.tier == JackpotTierName.MINI
    assert snap.jackpot_award.amount == pytest.approx(100.0)
    assert s.controller.pending_win == pytest.approx(112.0)
    assert snap.jackpot_values == {"MINI": 100.0, "MINOR": 1_000.0, "MAJOR": 10_000.0, "GRAND": 100_000.0}
    assert s.controller.state == SessionState.PRESENTING


def test_win_as_bet_multiple() -> None:
    s = make_session([make_result(5.0)], config=SessionConfig(win_is_bet_multiple=True))
    s.controller.spin(2.0)
    s.clock.run_until_idle()

    tier = s.controller.current_tier()
    assert tier is not None and tier.multiplier == pytest.approx(5.0)
    assert s.controller.pending_win == pytest.approx(10.0)


def test_losing_spin_returns_to_idle() -> None:
    s = make_session([make_result(0.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    assert s.controller.state == SessionState.IDLE
    assert s.controller.balance == pytest.approx(999.0)
    tier = s.controller.current_tier()
    assert tier is not None and tier.is_empty
    assert s.sink.stage_types()[-2:] == ["EVALUATE_WINS", "SPIN_END"]


def test_pause_and_resume_through_controller() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0)
    s.clock.advance_to(1500)
    s.controller.pause()
    s.clock.advance(3_000)
    assert s.sink.count("REEL_STOP_2") == 0

    s.controller.resume()
    s.clock.run_until_idle()
    assert s.controller.state == SessionState.IDLE
    for stage in ("REEL_STOP_2", "REEL_STOP_4", "SPIN_END"):
        assert s.sink.count(stage) == 1


def test_pause_also_freezes_jackpot_accrual() -> None:
    s = make_session([make_result(1.5)], auto_resolve=False)
    s.controller.spin(10.0)
    s.controller.pause()
    before = s.controller.jackpot_values()
    s.clock.advance(5_000)
    assert s.controller.jackpot_values() == before

    s.controller.resume()
    s.clock.advance(100)
    assert s.controller.jackpot_values()["MINI"] > before["MINI"]


def test_result_arriving_while_paused_waits_for_resume() -> None:
    s = make_session([make_result(1.5)], auto_resolve=False)
    s.controller.spin(1.0)
    s.clock.advance_to(3000)
    s.controller.pause()
    before = s.sink.stage_types()

    s.engine.resolve_next()
    s.clock.advance(10_000)
    assert s.sink.stage_types() == before
    assert "EVALUATE_WINS" not in before

    s.controller.resume()
    s.clock.run_until_idle()
    for stage in ("EVALUATE_WINS", "WIN_PRESENT", "SPIN_END"):
        assert s.sink.count(stage) == 1
    at = {t.stage_type: t.at_ms for t in s.sink.triggers}
    # 100ms after the last reel, counted from resume at 13000
    assert at["EVALUATE_WINS"] == 13_100
    assert s.controller.state == SessionState.IDLE


def test_pause_holds_across_collect_and_next_spin() -> None:
    s = make_session([make_result(5.0), make_result(1.5)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()
    s.controller.pause()
    s.controller.collect()
    s.controller.spin(1.0)
    before = s.controller.jackpot_values()

    s.clock.advance(10_000)
    assert s.sink.count("SPIN_START") == 1
    assert s.controller.state == SessionState.SPINNING
    assert s.controller.jackpot_values() == before

    s.controller.resume()
    s.clock.run_until_idle()
    assert s.sink.count("SPIN_START") == 2
    assert s.sink.count("REEL_STOP_4") == 2
    assert s.controller.state == SessionState.IDLE


def test_shutdown_disarms_pending_triggers() -> None:
    s = make_session([make_result(1.5)])
    s.controller.spin(1.0)
    s.clock.advance_to(1200)
    s.ctx.shutdown()
    s.clock.advance(10_000)

    assert s.sink.stage_types() == ["SPIN_START", "REEL_STOP_0"]
    with pytest.raises(NotReadyError):
        s.controller.spin(1.0)


def test_snapshot_to_dict() -> None:
    s = make_session([make_result(5.0)])
    s.controller.spin(1.0)
    s.clock.run_until_idle()

    d = s.controller.snapshot().to_dict()
    assert d["state"] == "PRESENTING"
    assert d["spinId"] == "spin-test"
    assert d["pendingWin"] == pytest.approx(5.0)
    assert d["tier"].startswith("WIN_3")
    assert d["jackpotAward"] is None
