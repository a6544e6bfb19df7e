from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from slot_stage_sync.classifier import WinTierResult
    from slot_stage_sync.jackpot import JackpotAward


@dataclass(frozen=True)
class SessionSnapshot:
    state: str
    balance: float
    pending_win: float
    bet: float | None
    spin_id: str | None
    tier: WinTierResult | None
    jackpot_values: dict[str, float]
    jackpot_award: JackpotAward | None
    stage_progress: float
    skip_pending: bool

    def to_dict(self) -> dict[str, Any]:
        award = None
        if self.jackpot_award is not None:
            award = {"tier": self.jackpot_award.tier.value, "amount": self.jackpot_award.amount}
        return {
            "state": self.state,
            "balance": self.balance,
            "pendingWin": self.pending_win,
            "bet": self.bet,
            "spinId": self.spin_id,
            "tier": self.tier.describe() if self.tier is not None else None,
            "jackpotValues": dict(self.jackpot_values),
            "jackpotAward": award,
            "stageProgress": self.stage_progress,
            "skipPending": self.skip_pending,
        }
