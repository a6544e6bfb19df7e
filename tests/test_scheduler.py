from __future__ import annotations

import pytest

from slot_stage_sync.clock import LogicalClock
from slot_stage_sync.config import ReelTimingConfig
from slot_stage_sync.errors import DuplicateTriggerGuardViolation
from slot_stage_sync.render_sink import InMemoryRenderSink
from slot_stage_sync.scheduler import VisualSyncScheduler, reel_stop_offsets
from slot_stage_sync.stages import StageEvent, is_reel_stop


def make_scheduler(**hooks):
    clock = LogicalClock()
    sink = InMemoryRenderSink(clock=clock)
    sched = VisualSyncScheduler(clock, sink, ReelTimingConfig(), **hooks)
    return clock, sink, sched


def fired_at(sink: InMemoryRenderSink, stage_type: str) -> list[int]:
    return [t.at_ms for t in sink.triggers if t.stage_type == stage_type]


def test_reel_stop_offsets_normal_and_turbo() -> None:
    timing = ReelTimingConfig()
    # i*10 stagger + 1000 spin + i*300 interval
    assert reel_stop_offsets(timing, 5, False) == [1000, 1310, 1620, 1930, 2240]
    # every term halved
    assert reel_stop_offsets(timing, 5, True) == [500, 655, 810, 965, 1120]


def test_schedule_then_cancel_all_fires_nothing() -> None:
    clock, sink, sched = make_scheduler()
    triggers = sched.schedule(5, is_turbo=False)
    assert len(triggers) == 6

    sched.cancel_all()
    clock.advance(60_000)

    assert sink.triggers == []
    assert all(t.cancelled and not t.fired for t in triggers)


def test_cancel_all_is_idempotent_and_bumps_generation() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5)
    g = sched.generation
    sched.cancel_all()
    sched.cancel_all()
    assert sched.generation == g + 2
    clock.advance(10_000)
    assert sink.triggers == []


def test_firing_order_and_all_reels_stopped_after_every_reel() -> None:
    seen_at_all_stopped: list[list[str]] = []
    clock, sink, sched = make_scheduler()
    sched.on_all_reels_stopped = lambda: seen_at_all_stopped.append(sink.stage_types())

    sched.schedule(5)
    clock.advance(10_000)

    times = [t.at_ms for t in sink.triggers]
    assert times == sorted(times)
    assert sink.stage_types() == ["SPIN_START", "REEL_STOP_0", "REEL_STOP_1", "REEL_STOP_2", "REEL_STOP_3", "REEL_STOP_4"]

    assert len(seen_at_all_stopped) == 1
    assert [s for s in seen_at_all_stopped[0] if is_reel_stop(s)] == [f"REEL_STOP_{i}" for i in range(5)]
    assert sched.all_reels_stopped is True


def test_turbo_halves_reel_timing() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5, is_turbo=True)
    clock.advance(10_000)
    assert fired_at(sink, "REEL_STOP_4") == [1120]
    assert fired_at(sink, "SPIN_START") == [0]


def test_chain_before_reels_stopped_raises() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5)
    clock.advance(1500)
    with pytest.raises(RuntimeError):
        sched.schedule_chain([StageEvent("WIN_PRESENT", 2000)], 1900)


def test_chain_offsets_are_relative_to_base_and_clamped() -> None:
    done: list[int] = []
    clock, sink, sched = make_scheduler()
    sched.on_chain_complete = lambda: done.append(clock.now_ms)
    sched.on_all_reels_stopped = lambda: sched.schedule_chain(
        [
            StageEvent("EARLY", 2000),
            StageEvent("WIN_PRESENT", 2400),
            StageEvent("ROLLUP_END", 3200),
        ],
        2240,
    )

    sched.schedule(5)
    clock.advance(10_000)

    assert fired_at(sink, "EARLY") == [2240]
    assert fired_at(sink, "WIN_PRESENT") == [2400]
    assert fired_at(sink, "ROLLUP_END") == [3200]
    assert done == [3200]
    assert sink.stage_types()[-1] == "ROLLUP_END"


def test_empty_chain_still_completes() -> None:
    done: list[int] = []
    clock, sink, sched = make_scheduler()
    sched.on_chain_complete = lambda: done.append(clock.now_ms)
    sched.on_all_reels_stopped = lambda: sched.schedule_chain([], 0)

    sched.schedule(5)
    clock.advance(10_000)
    assert done == [2240]


def test_qualifying_anticipation_extends_last_reel() -> None:
    clock, sink, sched = make_scheduler(anticipation_check=lambda: True)
    sched.schedule(5)
    clock.advance(10_000)

    # second-to-last reel at 1930 + 50ms lead
    assert fired_at(sink, "ANTICIPATION_ON") == [1980]
    # last reel 2240 + 1500 extension; OFF lands just ahead of it
    assert fired_at(sink, "ANTICIPATION_OFF") == [3740]
    assert fired_at(sink, "REEL_STOP_4") == [3740]
    types = sink.stage_types()
    assert types.index("ANTICIPATION_OFF") == types.index("REEL_STOP_4") - 1
    assert sched.anticipation_active is False


def test_anticipation_is_scheduled_not_fired_inline() -> None:
    clock, sink, sched = make_scheduler(anticipation_check=lambda: True)
    sched.schedule(5)
    clock.advance_to(1930)
    assert sink.stage_types()[-1] == "REEL_STOP_3"
    assert sched.anticipation_active is True
    assert "ANTICIPATION_ON" not in sink.stage_types()


def test_turbo_anticipation_scales_lead_and_extension() -> None:
    clock, sink, sched = make_scheduler(anticipation_check=lambda: True)
    sched.schedule(5, is_turbo=True)
    clock.advance(10_000)
    assert fired_at(sink, "ANTICIPATION_ON") == [990]
    assert fired_at(sink, "REEL_STOP_4") == [1870]


def test_non_qualifying_result_has_no_anticipation() -> None:
    clock, sink, sched = make_scheduler(anticipation_check=lambda: False)
    sched.schedule(5)
    clock.advance(10_000)
    assert "ANTICIPATION_ON" not in sink.stage_types()
    assert fired_at(sink, "REEL_STOP_4") == [2240]


def test_new_schedule_invalidates_previous_batch() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5)
    clock.advance_to(1000)
    sched.schedule(5)
    clock.advance(10_000)

    assert sink.count("REEL_STOP_0") == 2
    assert fired_at(sink, "REEL_STOP_1") == [2310]
    assert sink.count("REEL_STOP_4") == 1


def test_pause_and_resume_keep_order_and_exactly_once() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5)
    clock.advance_to(1100)
    sched.pause()
    assert sched.is_paused

    clock.advance(5_000)
    assert sink.stage_types() == ["SPIN_START", "REEL_STOP_0"]

    sched.resume()
    clock.advance(10_000)

    # 210ms were left on REEL_STOP_1 when paused at 1100
    assert fired_at(sink, "REEL_STOP_1") == [6310]
    for i in range(5):
        assert sink.count(f"REEL_STOP_{i}") == 1
    times = [t.at_ms for t in sink.triggers]
    assert times == sorted(times)


def test_duplicate_fire_is_a_guard_violation() -> None:
    clock, sink, sched = make_scheduler()
    triggers = sched.schedule(5)
    clock.advance(10_000)

    first = triggers[0]
    assert first.fired
    with pytest.raises(DuplicateTriggerGuardViolation):
        sched._fire(first)
    assert sink.count("SPIN_START") == 1


def test_pause_survives_cancel_all_and_queues_the_next_batch() -> None:
    clock, sink, sched = make_scheduler()
    sched.schedule(5)
    clock.advance_to(500)
    sched.pause()
    sched.cancel_all()
    sched.schedule(5)
    assert sched.is_paused

    clock.advance(5_000)
    assert sink.stage_types() == ["SPIN_START"]

    sched.resume()
    clock.advance(10_000)
    assert fired_at(sink, "SPIN_START") == [0, 5500]
    assert fired_at(sink, "REEL_STOP_0") == [6500]
    assert fired_at(sink, "REEL_STOP_4") == [7740]


def test_chain_scheduled_while_paused_waits_for_resume() -> None:
    done: list[int] = []
    clock, sink, sched = make_scheduler()
    sched.on_chain_complete = lambda: done.append(clock.now_ms)
    sched.schedule(5)
    clock.advance_to(3000)
    sched.pause()

    sched.schedule_chain([StageEvent("EVALUATE_WINS", 2340), StageEvent("SPIN_END", 2540)], 2240)
    clock.advance(5_000)
    assert "EVALUATE_WINS" not in sink.stage_types()
    assert done == []

    sched.resume()
    clock.advance(10_000)
    assert fired_at(sink, "EVALUATE_WINS") == [8100]
    assert fired_at(sink, "SPIN_END") == [8300]
    assert done == [8300]
