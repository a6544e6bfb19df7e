from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from slot_stage_sync.classifier import classify
from slot_stage_sync.clock import LogicalClock
from slot_stage_sync.config import SessionConfig, TierConfig
from slot_stage_sync.config_io import load_jackpot_config, load_spin_result, load_tier_config
from slot_stage_sync.controller import SessionContext, SessionState, SpinSessionController
from slot_stage_sync.engine import ScriptedEngine, synthesize_result
from slot_stage_sync.errors import SlotStageSyncError
from slot_stage_sync.jackpot_config import JackpotConfig
from slot_stage_sync.render_sink import InMemoryRenderSink, TriggerRecord
from slot_stage_sync.reporting import derive_phase_frames, duplicate_stages
from slot_stage_sync.stages import ForcedOutcome

DEMO_MULTIPLIER = 50.0
# Upper bound on simulated time for one replay.
RUN_LIMIT_MS = 300_000


def _load_tiers(path: str | None) -> TierConfig:
    if path:
        return load_tier_config(Path(path))
    return TierConfig.legacy()


def _load_jackpots(path: str | None) -> JackpotConfig:
    if path:
        return load_jackpot_config(Path(path))
    return JackpotConfig.legacy()


def _render_text_report(*, triggers: list[TriggerRecord], controller: SpinSessionController) -> str:
    out: list[str] = []
    snap = controller.snapshot()

    out.append(f"Spin {snap.spin_id or '--'}")
    out.append(f"  tier:     {snap.tier.describe() if snap.tier is not None else '--'}")
    if snap.jackpot_award is not None:
        out.append(f"  jackpot:  {snap.jackpot_award.tier.value} {snap.jackpot_award.amount:.2f}")
    out.append(f"  state:    {snap.state}")
    out.append(f"  balance:  {snap.balance:.2f}")
    if snap.pending_win:
        out.append(f"  pending:  {snap.pending_win:.2f}")
    out.append("")

    frames = derive_phase_frames(triggers)
    if not frames:
        out.append("(No triggers fired.)")
        return "\n".join(out) + "\n"

    width = max(len(t.stage_type) for t in triggers)
    for frame in frames:
        out.append(f"{frame.phase} [{frame.start_ms}ms .. {frame.end_ms}ms]")
        for t in frame.triggers:
            out.append(f"  +{t.at_ms:>6}ms  {t.stage_type.ljust(width)}")
        out.append("")

    dupes = duplicate_stages(triggers)
    if dupes:
        out.append("DUPLICATES: " + ", ".join(f"{k} x{v}" for k, v in sorted(dupes.items())))

    return "\n".join(out).rstrip() + "\n"


def _cmd_classify(args: argparse.Namespace) -> int:
    try:
        tiers = _load_tiers(args.tiers)
        result = classify(float(args.win), float(args.bet), tiers)
    except (SlotStageSyncError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    sys.stdout.write(f"{result.describe()}\n")
    sys.stdout.write(f"big win: {'yes' if result.is_big_win else 'no'}\n")
    sys.stdout.write(f"presentation: {tiers.total_presentation_ms(result)}ms\n")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    chosen = sum(1 for v in [bool(args.demo), bool(args.result), bool(args.forced)] if v)
    if chosen != 1:
        print("ERROR: choose exactly one of --demo, --result, or --forced.", file=sys.stderr)
        return 2

    try:
        config = SessionConfig(
            tiers=_load_tiers(args.tiers),
            jackpots=_load_jackpots(args.jackpots),
            starting_balance=float(args.balance),
        )
        config.validate()
    except SlotStageSyncError as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 2

    bet = float(args.bet)
    engine = ScriptedEngine(tiers=config.tiers, timing=config.timing)
    forced: ForcedOutcome | None = None

    if args.result:
        try:
            engine.enqueue(load_spin_result(Path(str(args.result))))
        except SlotStageSyncError as e:
            print(f"ERROR: invalid spin result: {e}", file=sys.stderr)
            return 2
    elif args.demo:
        engine.enqueue(synthesize_result("demo-1", bet, DEMO_MULTIPLIER, tiers=config.tiers, timing=config.timing))
    else:
        forced = ForcedOutcome(args.forced)

    clock = LogicalClock()
    sink = InMemoryRenderSink(clock=clock)
    ctx = SessionContext(engine=engine, config=config, clock=clock, render=sink)
    ctx.init()
    controller = SpinSessionController(ctx)

    try:
        if forced is not None:
            controller.spin_forced(forced, bet, turbo=bool(args.turbo))
        else:
            controller.spin(bet, turbo=bool(args.turbo))
        clock.run_until_idle(limit_ms=RUN_LIMIT_MS)
        if args.collect and controller.state == SessionState.PRESENTING:
            controller.collect()
    except SlotStageSyncError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    finally:
        ctx.shutdown()

    sys.stdout.write(_render_text_report(triggers=sink.triggers, controller=controller))

    if sink.errors:
        for spin_id, err in sink.errors:
            print(f"ERROR: spin {spin_id or '--'} failed: {err}", file=sys.stderr)
        return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="slot_stage_sync",
        description=(
            "Slot stage sync: win tier classification and stage trigger timeline.\n"
            "\n"
            "Replays engine spin results on a logical clock and prints the\n"
            "trigger timeline the rendering layer would receive."
        ),
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for diagnostics written to stderr.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    cls = sub.add_parser("classify", help="Classify a win amount into a tier.")
    cls.add_argument("--win", type=float, required=True, help="Total win amount.")
    cls.add_argument("--bet", type=float, required=True, help="Bet amount (> 0).")
    cls.add_argument("--tiers", type=str, default=None, help="Tier config JSON (defaults to the legacy table).")
    cls.set_defaults(func=_cmd_classify)

    run = sub.add_parser("run", help="Replay one spin and print the trigger timeline.")
    run.add_argument("--demo", action="store_true", help="Replay a built-in 50x big win.")
    run.add_argument("--result", type=str, help="Replay an engine spin result JSON.")
    run.add_argument(
        "--forced",
        type=str,
        choices=[o.value for o in ForcedOutcome],
        help="Replay a synthesized forced outcome.",
    )
    run.add_argument("--bet", type=float, default=1.0, help="Bet amount.")
    run.add_argument("--balance", type=float, default=1000.0, help="Starting balance.")
    run.add_argument("--turbo", action="store_true", help="Use turbo reel timing.")
    run.add_argument("--tiers", type=str, default=None, help="Tier config JSON.")
    run.add_argument("--jackpots", type=str, default=None, help="Jackpot config JSON.")
    run.add_argument("--collect", action="store_true", help="Collect the win once the presentation has played.")
    run.set_defaults(func=_cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
