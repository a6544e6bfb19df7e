from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from slot_stage_sync.errors import ConfigurationError
from slot_stage_sync.fields import require_field


class JackpotTierName(str, Enum):
    MINI = "MINI"
    MINOR = "MINOR"
    MAJOR = "MAJOR"
    GRAND = "GRAND"


# Rarest first. Award selection tests tiers in this order.
RAREST_FIRST: tuple[JackpotTierName, ...] = (
    JackpotTierName.GRAND,
    JackpotTierName.MAJOR,
    JackpotTierName.MINOR,
    JackpotTierName.MINI,
)


@dataclass(frozen=True, slots=True)
class JackpotTierConfig:
    """
    Static description of one progressive tier.

    award_floor_ratio: minimum win/bet ratio at which this tier becomes
    eligible. award_window_percent: width (out of 100) of this tier's slice of
    the deterministic roll once eligible.
    """

    name: JackpotTierName
    seed_value: float
    contribution_share: float
    award_floor_ratio: float
    award_window_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "seedValue": self.seed_value,
            "contributionShare": self.contribution_share,
            "awardFloorRatio": self.award_floor_ratio,
            "awardWindowPercent": self.award_window_percent,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, label: str = "tier") -> JackpotTierConfig:
        name_raw = require_field(raw, "name", label=label)
        try:
            name = JackpotTierName(str(name_raw).upper())
        except ValueError as e:
            raise ConfigurationError(f"{label}.name is not a jackpot tier: {name_raw!r}") from e
        return cls(
            name=name,
            seed_value=float(require_field(raw, "seedValue", label=label)),
            contribution_share=float(require_field(raw, "contributionShare", label=label)),
            award_floor_ratio=float(require_field(raw, "awardFloorRatio", label=label)),
            award_window_percent=float(require_field(raw, "awardWindowPercent", label=label)),
        )


@dataclass(frozen=True, slots=True)
class JackpotConfig:
    tiers: tuple[JackpotTierConfig, ...]
    # Fraction of each bet routed into the progressive pool.
    contribution_rate: float = 0.015
    accrual_tick_ms: int = 100
    # Fraction of the pool applied per accrual tick.
    accrual_fraction_per_tick: float = 0.01

    def tier(self, name: JackpotTierName) -> JackpotTierConfig:
        for t in self.tiers:
            if t.name == name:
                return t
        raise ConfigurationError(f"jackpot tier {name.value} is not configured")

    def validate(self) -> None:
        names = [t.name for t in self.tiers]
        if sorted(names, key=lambda n: n.value) != sorted(JackpotTierName, key=lambda n: n.value):
            raise ConfigurationError(
                "jackpot config must define each of MINI, MINOR, MAJOR, GRAND exactly once "
                f"(got {[n.value for n in names]})"
            )
        for t in self.tiers:
            if not (t.seed_value > 0):
                raise ConfigurationError(f"jackpot {t.name.value}: seedValue must be > 0")
            if t.contribution_share < 0:
                raise ConfigurationError(f"jackpot {t.name.value}: contributionShare must be >= 0")
            if t.award_floor_ratio < 0 or t.award_window_percent < 0:
                raise ConfigurationError(f"jackpot {t.name.value}: award floor/window must be >= 0")
        total_share = sum(t.contribution_share for t in self.tiers)
        if not math.isclose(total_share, 1.0, abs_tol=1e-6):
            raise ConfigurationError(f"jackpot contribution shares must sum to 1.0 (got {total_share})")
        total_window = sum(t.award_window_percent for t in self.tiers)
        if total_window > 100.0 + 1e-9:
            raise ConfigurationError(f"jackpot award windows must sum to <= 100 (got {total_window})")
        if self.contribution_rate < 0:
            raise ConfigurationError("contribution_rate must be >= 0")
        if self.accrual_tick_ms <= 0:
            raise ConfigurationError("accrual_tick_ms must be > 0")
        if self.accrual_fraction_per_tick < 0:
            raise ConfigurationError("accrual_fraction_per_tick must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "contributionRate": self.contribution_rate,
            "accrualTickMs": self.accrual_tick_ms,
            "accrualFractionPerTick": self.accrual_fraction_per_tick,
            "tiers": [t.to_dict() for t in self.tiers],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JackpotConfig:
        tiers_raw = require_field(raw, "tiers", label="jackpots")
        if not isinstance(tiers_raw, list):
            raise ConfigurationError("jackpots.tiers must be an array")
        tiers: list[JackpotTierConfig] = []
        for i, item in enumerate(tiers_raw):
            if not isinstance(item, dict):
                raise ConfigurationError(f"jackpots.tiers[{i}] must be an object")
            tiers.append(JackpotTierConfig.from_dict(item, label=f"jackpots.tiers[{i}]"))
        return cls(
            tiers=tuple(tiers),
            contribution_rate=float(raw.get("contributionRate", 0.015)),
            accrual_tick_ms=int(raw.get("accrualTickMs", 100)),
            accrual_fraction_per_tick=float(raw.get("accrualFractionPerTick", 0.01)),
        )

    @classmethod
    def legacy(cls) -> JackpotConfig:
        return cls(
            tiers=(
                JackpotTierConfig(JackpotTierName.MINI, 100.0, 0.40, 10.0, 10.0),
                JackpotTierConfig(JackpotTierName.MINOR, 1_000.0, 0.30, 25.0, 5.0),
                JackpotTierConfig(JackpotTierName.MAJOR, 10_000.0, 0.20, 50.0, 4.0),
                JackpotTierConfig(JackpotTierName.GRAND, 100_000.0, 0.10, 100.0, 1.0),
            ),
        )
