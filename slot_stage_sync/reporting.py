from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from slot_stage_sync.render_sink import TriggerRecord
from slot_stage_sync.stages import StageType, is_reel_stop

REEL_PHASE = "REELS"
PRESENTATION_PHASE = "PRESENTATION"

_REEL_PHASE_TYPES = {
    StageType.SPIN_START.value,
    StageType.ANTICIPATION_ON.value,
    StageType.ANTICIPATION_OFF.value,
}


@dataclass(frozen=True, slots=True)
class PhaseFrame:
    """
    A contiguous run of triggers belonging to one phase of one spin.

    spin_index starts at 1 and increments on every SPIN_START.
    """

    spin_index: int
    phase: str
    triggers: tuple[TriggerRecord, ...]

    @property
    def start_ms(self) -> int:
        return self.triggers[0].at_ms

    @property
    def end_ms(self) -> int:
        return self.triggers[-1].at_ms


def _is_reel_phase(stage_type: str) -> bool:
    return stage_type in _REEL_PHASE_TYPES or is_reel_stop(stage_type)


def derive_phase_frames(triggers: Iterable[TriggerRecord]) -> list[PhaseFrame]:
    """
    Split a trigger log into REELS / PRESENTATION frames.

    Rule:
      - SPIN_START opens a new REELS frame (and a new spin index)
      - The first trigger that is not a reel-phase stage opens PRESENTATION
      - Triggers before any SPIN_START are attached to spin 0
    """
    frames: list[PhaseFrame] = []
    buffer: list[TriggerRecord] = []
    spin_index = 0
    phase = REEL_PHASE

    def flush() -> None:
        if buffer:
            frames.append(PhaseFrame(spin_index=spin_index, phase=phase, triggers=tuple(buffer)))
            buffer.clear()

    for t in triggers:
        if t.stage_type == StageType.SPIN_START.value:
            flush()
            spin_index += 1
            phase = REEL_PHASE
        elif phase == REEL_PHASE and not _is_reel_phase(t.stage_type):
            flush()
            phase = PRESENTATION_PHASE
        buffer.append(t)

    flush()
    return frames


def duplicate_stages(triggers: Iterable[TriggerRecord]) -> dict[str, int]:
    """
    Stage types triggered more than once within a single spin, keyed
    "<spin>:<stage>". Repeating stages (ticks, steps) are excluded.
    """
    repeating = {StageType.ROLLUP_TICK.value, StageType.CASCADE_STEP.value, StageType.FEATURE_STEP.value}
    counts: dict[str, int] = {}
    spin_index = 0
    for t in triggers:
        if t.stage_type == StageType.SPIN_START.value:
            spin_index += 1
        if t.stage_type in repeating:
            continue
        key = f"{spin_index}:{t.stage_type}"
        counts[key] = counts.get(key, 0) + 1
    return {k: v for k, v in counts.items() if v > 1}
