from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StageType(str, Enum):
    """
    Fixed stage vocabulary emitted by the game/audio engine.

    Parameterized stages (REEL_STOP_<n>, WIN_PRESENT_<tier>, BIG_WIN_TIER_<n>,
    JACKPOT_PRESENT_<tier>) are built with the helpers below; stage types stay
    plain strings everywhere else so unknown engine stages pass through.
    """

    SPIN_START = "SPIN_START"
    ANTICIPATION_ON = "ANTICIPATION_ON"
    ANTICIPATION_OFF = "ANTICIPATION_OFF"
    EVALUATE_WINS = "EVALUATE_WINS"
    WIN_PRESENT = "WIN_PRESENT"
    ROLLUP_START = "ROLLUP_START"
    ROLLUP_TICK = "ROLLUP_TICK"
    ROLLUP_END = "ROLLUP_END"
    FEATURE_ENTER = "FEATURE_ENTER"
    FEATURE_STEP = "FEATURE_STEP"
    FEATURE_EXIT = "FEATURE_EXIT"
    CASCADE_START = "CASCADE_START"
    CASCADE_STEP = "CASCADE_STEP"
    CASCADE_END = "CASCADE_END"
    JACKPOT_TRIGGER = "JACKPOT_TRIGGER"
    JACKPOT_AWARD = "JACKPOT_AWARD"
    SPIN_END = "SPIN_END"


REEL_STOP_PREFIX = "REEL_STOP_"
_REEL_STOP_RE = re.compile(r"^REEL_STOP_(\d+)$")


def reel_stop(reel_index: int) -> str:
    return f"{REEL_STOP_PREFIX}{int(reel_index)}"


def reel_index_of(stage_type: str) -> int | None:
    """Return the reel index of a REEL_STOP_<n> stage, else None."""
    m = _REEL_STOP_RE.match(stage_type)
    if m is None:
        return None
    return int(m.group(1))


def is_reel_stop(stage_type: str) -> bool:
    return reel_index_of(stage_type) is not None


def big_win_tier_stage(tier_id: int) -> str:
    return f"BIG_WIN_TIER_{int(tier_id)}"


def jackpot_present_stage(tier_name: str) -> str:
    return f"JACKPOT_PRESENT_{tier_name.upper()}"


class EngineWinTier(str, Enum):
    """
    Advisory tier hint attached by the engine.

    The local classifier is authoritative for display; this hint is only
    compared against it for diagnostics.
    """

    NONE = "none"
    WIN = "win"
    BIG_WIN = "bigWin"
    MEGA_WIN = "megaWin"
    EPIC_WIN = "epicWin"
    ULTRA_WIN = "ultraWin"


class ForcedOutcome(str, Enum):
    """Outcomes the engine can be asked to force (QA / audio audition)."""

    LOSE = "lose"
    SMALL_WIN = "smallWin"
    MEDIUM_WIN = "mediumWin"
    BIG_WIN = "bigWin"
    MEGA_WIN = "megaWin"
    EPIC_WIN = "epicWin"
    ULTRA_WIN = "ultraWin"
    FREE_SPINS = "freeSpins"
    JACKPOT_GRAND = "jackpotGrand"
    NEAR_MISS = "nearMiss"
    CASCADE = "cascade"


@dataclass(frozen=True, slots=True)
class StageEvent:
    """
    A single timestamped point in a spin's lifecycle.

    timestamp_ms is relative to spin start. Produced by the engine and never
    mutated afterwards.
    """

    stage_type: str
    timestamp_ms: int
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SpinResult:
    """
    Engine output for one spin.

    total_win is either a currency amount or a multiple of the bet; which one
    is a session-wide choice (SessionConfig.win_is_bet_multiple).
    """

    spin_id: str
    total_win: float
    is_win: bool
    stages: tuple[StageEvent, ...] = ()
    big_win_tier: EngineWinTier | None = None
