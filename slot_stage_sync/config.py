from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from slot_stage_sync.errors import ConfigurationError
from slot_stage_sync.fields import decode_bound, encode_bound, require_field
from slot_stage_sync.jackpot_config import JackpotConfig

if TYPE_CHECKING:
    from slot_stage_sync.classifier import WinTierResult

# Band edges are compared with a small absolute tolerance so that JSON
# round-trips (e.g. 1.001 written as 1.0010000000000001) do not open gaps.
BAND_EPS = 1e-9

# ----------------------------
# Win tiers
# ----------------------------

@dataclass(frozen=True, slots=True)
class WinTierDefinition:
    """
    A regular (below big-win threshold) win band: [from_multiplier, to_multiplier).

    tier_id: -1 = WIN_LOW (sub-bet win), 0 = WIN_EQUAL (push), 1..n = WIN_<n>.
    """

    tier_id: int
    from_multiplier: float
    to_multiplier: float
    display_label: str
    rollup_duration_ms: int
    rollup_tick_rate_hz: int

    @property
    def stage_name(self) -> str:
        if self.tier_id == -1:
            return "WIN_LOW"
        if self.tier_id == 0:
            return "WIN_EQUAL"
        return f"WIN_{self.tier_id}"

    @property
    def present_stage_name(self) -> str:
        if self.tier_id == -1:
            return "WIN_PRESENT_LOW"
        if self.tier_id == 0:
            return "WIN_PRESENT_EQUAL"
        return f"WIN_PRESENT_{self.tier_id}"

    def contains(self, ratio: float) -> bool:
        return self.from_multiplier <= ratio < self.to_multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "tierId": self.tier_id,
            "fromMultiplier": self.from_multiplier,
            "toMultiplier": encode_bound(self.to_multiplier),
            "displayLabel": self.display_label,
            "rollupDurationMs": self.rollup_duration_ms,
            "rollupTickRate": self.rollup_tick_rate_hz,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, label: str = "tier") -> WinTierDefinition:
        return cls(
            tier_id=int(require_field(raw, "tierId", label=label)),
            from_multiplier=decode_bound(require_field(raw, "fromMultiplier", label=label), label=f"{label}.fromMultiplier"),
            to_multiplier=decode_bound(require_field(raw, "toMultiplier", label=label), label=f"{label}.toMultiplier"),
            display_label=str(raw.get("displayLabel", "")),
            rollup_duration_ms=int(raw.get("rollupDurationMs", 1000)),
            rollup_tick_rate_hz=int(raw.get("rollupTickRate", 15)),
        )


@dataclass(frozen=True, slots=True)
class BigWinTierDefinition:
    """
    One rung of the big-win escalation ladder. The top rung is open-ended
    (to_multiplier = inf).
    """

    tier_id: int
    from_multiplier: float
    to_multiplier: float
    display_label: str = ""
    duration_ms: int = 4000
    rollup_tick_rate_hz: int = 10

    @property
    def stage_name(self) -> str:
        return f"BIG_WIN_TIER_{self.tier_id}"

    def contains(self, ratio: float) -> bool:
        return self.from_multiplier <= ratio < self.to_multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "tierId": self.tier_id,
            "fromMultiplier": self.from_multiplier,
            "toMultiplier": encode_bound(self.to_multiplier),
            "displayLabel": self.display_label,
            "durationMs": self.duration_ms,
            "rollupTickRate": self.rollup_tick_rate_hz,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, label: str = "bigWinTier") -> BigWinTierDefinition:
        return cls(
            tier_id=int(require_field(raw, "tierId", label=label)),
            from_multiplier=decode_bound(require_field(raw, "fromMultiplier", label=label), label=f"{label}.fromMultiplier"),
            to_multiplier=decode_bound(require_field(raw, "toMultiplier", label=label), label=f"{label}.toMultiplier"),
            display_label=str(raw.get("displayLabel", "")),
            duration_ms=int(raw.get("durationMs", 4000)),
            rollup_tick_rate_hz=int(raw.get("rollupTickRate", 10)),
        )


def _check_contiguous(bands: list, *, label: str) -> None:
    for cur, nxt in zip(bands, bands[1:]):
        if cur.to_multiplier < nxt.from_multiplier - BAND_EPS:
            raise ConfigurationError(
                f"{label}: gap between tier {cur.tier_id} (ends at {cur.to_multiplier}x) "
                f"and tier {nxt.tier_id} (starts at {nxt.from_multiplier}x)"
            )
        if cur.to_multiplier > nxt.from_multiplier + BAND_EPS:
            raise ConfigurationError(
                f"{label}: overlap between tier {cur.tier_id} (ends at {cur.to_multiplier}x) "
                f"and tier {nxt.tier_id} (starts at {nxt.from_multiplier}x)"
            )


@dataclass(frozen=True, slots=True)
class TierConfig:
    """
    Complete win-tier table: regular bands below big_win_threshold plus the
    big-win ladder from the threshold upward.

    A valid config partitions [0, inf) with no gaps and no overlaps.
    Construction does not validate; call validate() (the classifier and the
    session controller both do).
    """

    regular_tiers: tuple[WinTierDefinition, ...]
    big_win_tiers: tuple[BigWinTierDefinition, ...]
    big_win_threshold: float = 20.0
    intro_duration_ms: int = 500
    end_duration_ms: int = 4000
    fade_out_duration_ms: int = 1000
    config_id: str = "custom"

    def validate(self) -> None:
        if not self.regular_tiers:
            raise ConfigurationError("at least one regular win tier is required")
        if not self.big_win_tiers:
            raise ConfigurationError("at least one big win tier is required")
        if not (self.big_win_threshold > 0) or math.isinf(self.big_win_threshold):
            raise ConfigurationError(f"big_win_threshold must be a positive finite number (got {self.big_win_threshold})")

        for t in (*self.regular_tiers, *self.big_win_tiers):
            if not (t.from_multiplier < t.to_multiplier):
                raise ConfigurationError(
                    f"tier {t.tier_id}: fromMultiplier ({t.from_multiplier}) must be below toMultiplier ({t.to_multiplier})"
                )

        regular = sorted(self.regular_tiers, key=lambda t: t.from_multiplier)
        big = sorted(self.big_win_tiers, key=lambda t: t.from_multiplier)

        if abs(regular[0].from_multiplier) > BAND_EPS:
            raise ConfigurationError(f"regular tiers must start at 0x (got {regular[0].from_multiplier}x)")
        _check_contiguous(regular, label="regular tiers")
        if abs(regular[-1].to_multiplier - self.big_win_threshold) > BAND_EPS:
            raise ConfigurationError(
                f"regular tiers must end at the big win threshold {self.big_win_threshold}x "
                f"(last ends at {regular[-1].to_multiplier}x)"
            )

        if abs(big[0].from_multiplier - self.big_win_threshold) > BAND_EPS:
            raise ConfigurationError(
                f"big win tiers must start at the threshold {self.big_win_threshold}x "
                f"(first starts at {big[0].from_multiplier}x)"
            )
        _check_contiguous(big, label="big win tiers")
        if not math.isinf(big[-1].to_multiplier):
            raise ConfigurationError("the highest big win tier must be open-ended (toMultiplier = infinity)")

        ids = [t.tier_id for t in self.big_win_tiers]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("big win tier ids must be unique")

    def big_win_tier_by_id(self, tier_id: int) -> BigWinTierDefinition | None:
        return next((t for t in self.big_win_tiers if t.tier_id == tier_id), None)

    def big_win_tiers_up_to(self, max_tier_id: int) -> list[BigWinTierDefinition]:
        return [t for t in sorted(self.big_win_tiers, key=lambda t: t.tier_id) if t.tier_id <= max_tier_id]

    def total_presentation_ms(self, result: WinTierResult) -> int:
        """
        Presentation length for a classified win.

        Regular win: the band's rollup duration. Big win: intro + every ladder
        rung up to the max tier reached + end + fade-out.
        """
        if result.is_big_win and result.big_win_max_tier is not None:
            rungs = self.big_win_tiers_up_to(result.big_win_max_tier)
            return (
                self.intro_duration_ms
                + sum(t.duration_ms for t in rungs)
                + self.end_duration_ms
                + self.fade_out_duration_ms
            )
        if result.regular_tier is not None:
            return result.regular_tier.rollup_duration_ms
        return 0

    def stage_names(self) -> list[str]:
        """All tier-related stage names, for audio assignment tooling."""
        names: list[str] = []
        for t in self.regular_tiers:
            names.append(t.stage_name)
            names.append(t.present_stage_name)
        names.append("BIG_WIN_INTRO")
        names.extend(t.stage_name for t in self.big_win_tiers)
        names.extend(["BIG_WIN_END", "BIG_WIN_FADE_OUT", "BIG_WIN_ROLLUP_TICK"])
        return names

    def to_dict(self) -> dict[str, Any]:
        return {
            "configId": self.config_id,
            "regularWins": {"tiers": [t.to_dict() for t in self.regular_tiers]},
            "bigWins": {
                "threshold": self.big_win_threshold,
                "introDurationMs": self.intro_duration_ms,
                "endDurationMs": self.end_duration_ms,
                "fadeOutDurationMs": self.fade_out_duration_ms,
                "tiers": [t.to_dict() for t in self.big_win_tiers],
            },
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TierConfig:
        regular_raw = require_field(raw, "regularWins", label="tiers")
        big_raw = require_field(raw, "bigWins", label="tiers")
        if not isinstance(regular_raw, dict) or not isinstance(big_raw, dict):
            raise ConfigurationError("regularWins and bigWins must be objects")

        reg_list = regular_raw.get("tiers", [])
        big_list = big_raw.get("tiers", [])
        if not isinstance(reg_list, list) or not isinstance(big_list, list):
            raise ConfigurationError("regularWins.tiers and bigWins.tiers must be arrays")

        regular: list[WinTierDefinition] = []
        for i, item in enumerate(reg_list):
            if not isinstance(item, dict):
                raise ConfigurationError(f"regularWins.tiers[{i}] must be an object")
            regular.append(WinTierDefinition.from_dict(item, label=f"regularWins.tiers[{i}]"))

        big: list[BigWinTierDefinition] = []
        for i, item in enumerate(big_list):
            if not isinstance(item, dict):
                raise ConfigurationError(f"bigWins.tiers[{i}] must be an object")
            big.append(BigWinTierDefinition.from_dict(item, label=f"bigWins.tiers[{i}]"))

        return cls(
            regular_tiers=tuple(regular),
            big_win_tiers=tuple(big),
            big_win_threshold=decode_bound(big_raw.get("threshold", 20.0), label="bigWins.threshold"),
            intro_duration_ms=int(big_raw.get("introDurationMs", 500)),
            end_duration_ms=int(big_raw.get("endDurationMs", 4000)),
            fade_out_duration_ms=int(big_raw.get("fadeOutDurationMs", 1000)),
            config_id=str(raw.get("configId", "custom")),
        )

    @classmethod
    def legacy(cls) -> TierConfig:
        """
        The legacy hardcoded table, expressed as ordinary configuration.

        Regular: WIN_LOW <1x, WIN_EQUAL =1x, WIN_1..WIN_5 up to 20x.
        Big win: 20 / 50 / 100 / 250 / 500x ladder.
        """
        return cls(
            config_id="legacy",
            big_win_threshold=20.0,
            regular_tiers=(
                WinTierDefinition(-1, 0.0, 1.0, "", 0, 0),
                WinTierDefinition(0, 1.0, 1.001, "PUSH", 500, 20),
                WinTierDefinition(1, 1.001, 2.0, "WIN", 800, 18),
                WinTierDefinition(2, 2.0, 4.0, "WIN", 1000, 16),
                WinTierDefinition(3, 4.0, 8.0, "NICE", 1200, 15),
                WinTierDefinition(4, 8.0, 13.0, "NICE WIN", 1500, 14),
                WinTierDefinition(5, 13.0, 20.0, "GREAT WIN", 2000, 12),
            ),
            big_win_tiers=(
                BigWinTierDefinition(1, 20.0, 50.0, rollup_tick_rate_hz=12),
                BigWinTierDefinition(2, 50.0, 100.0, rollup_tick_rate_hz=10),
                BigWinTierDefinition(3, 100.0, 250.0, rollup_tick_rate_hz=8),
                BigWinTierDefinition(4, 250.0, 500.0, rollup_tick_rate_hz=6),
                BigWinTierDefinition(5, 500.0, math.inf, rollup_tick_rate_hz=4),
            ),
        )

    @classmethod
    def high_volatility(cls) -> TierConfig:
        """Higher thresholds, longer celebrations."""
        return cls(
            config_id="high_volatility",
            big_win_threshold=25.0,
            regular_tiers=(
                WinTierDefinition(-1, 0.0, 1.0, "Win", 600, 25),
                WinTierDefinition(1, 1.0, 3.0, "Win", 1000, 18),
                WinTierDefinition(2, 3.0, 8.0, "Nice", 1500, 15),
                WinTierDefinition(3, 8.0, 15.0, "Great", 2000, 12),
                WinTierDefinition(4, 15.0, 25.0, "Super", 3000, 10),
            ),
            big_win_tiers=(
                BigWinTierDefinition(1, 25.0, 50.0, "BIG WIN", 5000, 10),
                BigWinTierDefinition(2, 50.0, 100.0, "HUGE WIN", 8000, 8),
                BigWinTierDefinition(3, 100.0, 200.0, "MASSIVE WIN", 12000, 6),
                BigWinTierDefinition(4, 200.0, 500.0, "INSANE WIN", 18000, 5),
                BigWinTierDefinition(5, 500.0, math.inf, "LEGENDARY WIN", 25000, 4),
            ),
        )


# ----------------------------
# Reel timing / session
# ----------------------------

@dataclass(frozen=True, slots=True)
class ReelTimingConfig:
    """
    Visual reel-stop timing. Reel i stops at:

        i * reel_start_stagger_ms + reel_spin_ms + i * reel_stop_interval_ms

    with every term scaled by turbo_factor in turbo mode.
    """

    reel_count: int = 5
    reel_start_stagger_ms: int = 10
    reel_spin_ms: int = 1000
    reel_stop_interval_ms: int = 300
    turbo_factor: float = 0.5
    anticipation_lead_ms: int = 50
    anticipation_extension_ms: int = 1500
    # None means "use the tier config's big win threshold".
    anticipation_min_multiplier: float | None = None

    def validate(self) -> None:
        if self.reel_count < 1:
            raise ConfigurationError("reel_count must be >= 1")
        for name in ("reel_start_stagger_ms", "reel_spin_ms", "reel_stop_interval_ms", "anticipation_extension_ms"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        if self.anticipation_lead_ms < 1:
            raise ConfigurationError("anticipation_lead_ms must be >= 1 (anticipation is scheduled, never immediate)")
        if not (0 < self.turbo_factor <= 1):
            raise ConfigurationError("turbo_factor must be in (0, 1]")


@dataclass(frozen=True, slots=True)
class SessionConfig:
    tiers: TierConfig = field(default_factory=TierConfig.legacy)
    jackpots: JackpotConfig = field(default_factory=JackpotConfig.legacy)
    timing: ReelTimingConfig = field(default_factory=ReelTimingConfig)
    starting_balance: float = 1000.0
    # True: SpinResult.total_win is a multiple of the bet. False: currency.
    win_is_bet_multiple: bool = False
    # Wins at or below this multiple of the bet are credited without a
    # Collect/Gamble presentation step.
    auto_collect_max_multiplier: float = 2.0

    def validate(self) -> None:
        self.tiers.validate()
        self.jackpots.validate()
        self.timing.validate()
        if self.starting_balance < 0:
            raise ConfigurationError("starting_balance must be >= 0")
        if self.auto_collect_max_multiplier < 0:
            raise ConfigurationError("auto_collect_max_multiplier must be >= 0")
