from __future__ import annotations

from dataclasses import dataclass

from slot_stage_sync.config import BigWinTierDefinition, TierConfig, WinTierDefinition
from slot_stage_sync.stages import EngineWinTier


@dataclass(frozen=True, slots=True)
class WinTierResult:
    """
    Classification of one spin's win against a TierConfig.

    At most one of regular_tier / big_win_tier is set; neither is set only for
    "no win".
    """

    is_big_win: bool
    multiplier: float
    regular_tier: WinTierDefinition | None = None
    big_win_tier: BigWinTierDefinition | None = None
    big_win_max_tier: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.regular_tier is None and self.big_win_tier is None

    @property
    def stage_name(self) -> str | None:
        if self.big_win_tier is not None:
            return self.big_win_tier.stage_name
        if self.regular_tier is not None:
            return self.regular_tier.stage_name
        return None

    @property
    def present_stage_name(self) -> str | None:
        if self.regular_tier is not None:
            return self.regular_tier.present_stage_name
        return None

    @property
    def rollup_start_stage_name(self) -> str | None:
        # Sub-bet wins have no rollup.
        t = self.regular_tier
        if t is None or t.tier_id == -1:
            return None
        if t.tier_id == 0:
            return "ROLLUP_START_EQUAL"
        return f"ROLLUP_START_{t.tier_id}"

    @property
    def display_label(self) -> str:
        if self.big_win_tier is not None:
            return self.big_win_tier.display_label
        if self.regular_tier is not None:
            return self.regular_tier.display_label
        return ""

    def describe(self) -> str:
        if self.is_empty:
            return f"NO_WIN ({self.multiplier:.3f}x)"
        label = f" {self.display_label!r}" if self.display_label else ""
        return f"{self.stage_name}{label} ({self.multiplier:.3f}x)"


NO_WIN = WinTierResult(is_big_win=False, multiplier=0.0)


def classify(total_win: float, bet: float, config: TierConfig) -> WinTierResult:
    """
    Classify a win amount into exactly one tier of config.

    Rules:
    - bet must be > 0 (ValueError otherwise).
    - total_win <= 0 -> no-win result.
    - ratio >= big_win_threshold -> big-win ladder, else regular bands.
    - Bands are searched from the highest floor down, so a ratio sitting
      exactly on a shared boundary lands in the higher band.

    The config is validated first (ConfigurationError on gaps/overlaps).
    """
    if not (bet > 0):
        raise ValueError(f"bet must be > 0 (got {bet})")

    config.validate()

    if total_win <= 0:
        return NO_WIN

    ratio = float(total_win) / float(bet)

    if ratio >= config.big_win_threshold:
        for t in sorted(config.big_win_tiers, key=lambda t: t.from_multiplier, reverse=True):
            if t.from_multiplier <= ratio:
                return WinTierResult(
                    is_big_win=True,
                    multiplier=ratio,
                    big_win_tier=t,
                    big_win_max_tier=t.tier_id,
                )
    else:
        for t in sorted(config.regular_tiers, key=lambda t: t.from_multiplier, reverse=True):
            if t.from_multiplier <= ratio:
                return WinTierResult(is_big_win=False, multiplier=ratio, regular_tier=t)

    # validate() guarantees the bands cover [0, inf)
    raise AssertionError(f"no tier band contains ratio {ratio}")


def engine_hint_agrees(result: WinTierResult, hint: EngineWinTier | None) -> bool:
    """
    Coarse comparison of the engine's advisory tier against the local result.

    Only the category is compared (none / regular / big); the engine's own
    big-win ladder is not assumed to match the configured one.
    """
    if hint is None:
        return True
    if hint == EngineWinTier.NONE:
        return result.is_empty
    if hint == EngineWinTier.WIN:
        return result.regular_tier is not None
    return result.is_big_win
