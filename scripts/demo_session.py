from __future__ import annotations

from slot_stage_sync.clock import LogicalClock
from slot_stage_sync.config import SessionConfig
from slot_stage_sync.controller import SessionContext, SessionState, SpinSessionController
from slot_stage_sync.engine import ScriptedEngine
from slot_stage_sync.render_sink import InMemoryRenderSink
from slot_stage_sync.stages import ForcedOutcome


def main() -> None:
    config = SessionConfig()
    clock = LogicalClock()
    sink = InMemoryRenderSink(clock=clock)
    engine = ScriptedEngine(tiers=config.tiers, timing=config.timing)
    ctx = SessionContext(engine=engine, config=config, clock=clock, render=sink)
    ctx.init()
    controller = SpinSessionController(ctx)

    outcomes = [
        ForcedOutcome.SMALL_WIN,
        ForcedOutcome.MEDIUM_WIN,
        ForcedOutcome.BIG_WIN,
        ForcedOutcome.LOSE,
        ForcedOutcome.JACKPOT_GRAND,
    ]

    for outcome in outcomes:
        start = len(sink.triggers)
        controller.spin_forced(outcome, 1.0)
        clock.run_until_idle()
        if controller.state == SessionState.PRESENTING:
            controller.collect()

        snap = controller.snapshot()
        print(f"\n{outcome.value:<12s} tier={snap.tier.describe() if snap.tier else '--'} balance={snap.balance:.2f}")
        for t in sink.triggers[start:]:
            print(f"  +{t.at_ms:>7d}ms  {t.stage_type}")

    print("\njackpots:", ", ".join(f"{k}={v:.2f}" for k, v in controller.jackpot_values().items()))
    ctx.shutdown()


if __name__ == "__main__":
    main()
