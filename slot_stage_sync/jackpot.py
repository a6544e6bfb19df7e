from __future__ import annotations

import logging
from dataclasses import dataclass

from slot_stage_sync.jackpot_config import RAREST_FIRST, JackpotConfig, JackpotTierName
from slot_stage_sync.errors import LedgerNotSeededError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JackpotTier:
    name: JackpotTierName
    seed_value: float
    contribution_share: float
    current_value: float = 0.0


@dataclass(frozen=True, slots=True)
class JackpotAward:
    tier: JackpotTierName
    amount: float
    ratio: float
    roll: int


def award_roll(ratio: float) -> int:
    """Deterministic 0..99 roll derived from the win ratio."""
    return int(ratio * 1000) % 100


class JackpotLedger:
    """
    Owns the four progressive values.

    Rules:
    - A fresh ledger is unseeded (all zero); new_session() seeds every tier.
    - Values only grow while a contribution is open (start_contribution ..
      stop_contribution), one accrual tick at a time.
    - award(tier) pays the current value and resets that tier alone.
    - Award selection is a pure function of the win ratio; no random draw.
    """

    def __init__(self, config: JackpotConfig | None = None) -> None:
        self._config = config if config is not None else JackpotConfig.legacy()
        self._config.validate()
        self._tiers: dict[JackpotTierName, JackpotTier] = {
            t.name: JackpotTier(name=t.name, seed_value=t.seed_value, contribution_share=t.contribution_share)
            for t in self._config.tiers
        }
        self._pool = 0.0
        self._contributing = False

    @property
    def config(self) -> JackpotConfig:
        return self._config

    @property
    def pool(self) -> float:
        return self._pool

    @property
    def is_contributing(self) -> bool:
        return self._contributing

    def new_session(self) -> None:
        for t in self._tiers.values():
            t.current_value = t.seed_value
        self._pool = 0.0
        self._contributing = False
        logger.info("jackpot ledger seeded: %s", self.values())

    def current_value(self, tier: JackpotTierName) -> float:
        return max(0.0, self._tiers[JackpotTierName(tier)].current_value)

    def values(self) -> dict[str, float]:
        return {name.value: self.current_value(name) for name in JackpotTierName}

    # --- growth -------------------------------------------------------

    def accrue(self, contribution_pool: float, dt_fraction_of_tick: float) -> None:
        if contribution_pool < 0:
            raise ValueError(f"contribution_pool must be >= 0 (got {contribution_pool})")
        if dt_fraction_of_tick < 0:
            raise ValueError(f"dt_fraction_of_tick must be >= 0 (got {dt_fraction_of_tick})")
        for t in self._tiers.values():
            t.current_value += contribution_pool * t.contribution_share * dt_fraction_of_tick

    def start_contribution(self, bet: float) -> None:
        if bet < 0:
            raise ValueError(f"bet must be >= 0 (got {bet})")
        self._pool = bet * self._config.contribution_rate
        self._contributing = True
        logger.debug("jackpot contribution opened: pool=%.4f", self._pool)

    def stop_contribution(self) -> None:
        if self._contributing:
            logger.debug("jackpot contribution closed")
        self._pool = 0.0
        self._contributing = False

    def accrual_tick(self, ticks: float = 1.0) -> None:
        """Apply `ticks` accrual ticks of the open pool. No-op when closed."""
        if not self._contributing:
            return
        self.accrue(self._pool * self._config.accrual_fraction_per_tick, ticks)

    # --- awards -------------------------------------------------------

    def award(self, tier: JackpotTierName) -> float:
        t = self._tiers[JackpotTierName(tier)]
        if t.current_value <= 0:
            raise LedgerNotSeededError(
                f"jackpot {t.name.value} has no value to award; call new_session() first"
            )
        amount = t.current_value
        t.current_value = t.seed_value
        logger.info("jackpot %s awarded: %.2f (reset to %.2f)", t.name.value, amount, t.seed_value)
        return amount

    def eligible_tiers(self, ratio: float) -> tuple[JackpotTierName, ...]:
        """Tiers whose award floor is at or below ratio, rarest first."""
        return tuple(n for n in RAREST_FIRST if self._config.tier(n).award_floor_ratio <= ratio)

    def select_award(self, ratio: float) -> JackpotTierName | None:
        roll = award_roll(ratio)
        bound = 0.0
        for name in self.eligible_tiers(ratio):
            bound += self._config.tier(name).award_window_percent
            if roll < bound:
                return name
        return None

    def evaluate(self, ratio: float) -> JackpotAward | None:
        """
        Select and pay an award for a resolved win. Contribution must already
        be closed; it is closed here if the caller forgot.
        """
        self.stop_contribution()
        name = self.select_award(ratio)
        if name is None:
            return None
        amount = self.award(name)
        return JackpotAward(tier=name, amount=amount, ratio=ratio, roll=award_roll(ratio))
