from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

from slot_stage_sync.config import TierConfig
from slot_stage_sync.errors import InputFormatError
from slot_stage_sync.jackpot_config import JackpotConfig
from slot_stage_sync.render_sink import TriggerRecord
from slot_stage_sync.stages import EngineWinTier, SpinResult, StageEvent


def _read_json(path: Path) -> Any:
    if not path.exists():
        raise InputFormatError(f"file not found: {path}")
    if not path.is_file():
        raise InputFormatError(f"not a file: {path}")

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InputFormatError(
            f"invalid JSON: {e.msg} (line {e.lineno}, col {e.colno})"
        ) from e


def load_tier_config(path: Path) -> TierConfig:
    """Load and validate a tier table.

    Format (the same shape TierConfig.to_dict() writes):

      {
        "configId": "legacy",
        "regularWins": {"tiers": [
          {"tierId": -1, "fromMultiplier": 0, "toMultiplier": 1, "displayLabel": "",
           "rollupDurationMs": 0, "rollupTickRate": 0},
          ...
        ]},
        "bigWins": {"threshold": 20, "introDurationMs": 500, "endDurationMs": 4000,
                    "fadeOutDurationMs": 1000, "tiers": [
          {"tierId": 1, "fromMultiplier": 20, "toMultiplier": 50, "durationMs": 4000},
          ...
          {"tierId": 5, "fromMultiplier": 500, "toMultiplier": "infinity"}
        ]}
      }

    Shape problems raise InputFormatError; a table that does not partition
    [0, inf) raises ConfigurationError.
    """
    raw = _read_json(path)
    if not isinstance(raw, dict):
        raise InputFormatError("root must be a JSON object")
    for key in ("regularWins", "bigWins"):
        if not isinstance(raw.get(key), dict):
            raise InputFormatError(f"{key} must be an object")
        if not isinstance(raw[key].get("tiers"), list) or not raw[key]["tiers"]:
            raise InputFormatError(f"{key}.tiers must be a non-empty array")

    config = TierConfig.from_dict(raw)
    config.validate()
    return config


def load_jackpot_config(path: Path) -> JackpotConfig:
    raw = _read_json(path)
    if not isinstance(raw, dict):
        raise InputFormatError("root must be a JSON object")
    if not isinstance(raw.get("tiers"), list):
        raise InputFormatError("tiers must be an array")

    config = JackpotConfig.from_dict(raw)
    config.validate()
    return config


def load_spin_result(path: Path) -> SpinResult:
    """Load one engine spin result.

    Format:
      {
        "spinId": "spin-001",
        "totalWin": 50.0,
        "isWin": true,                 (optional, defaults to totalWin > 0)
        "bigWinTier": "bigWin",        (optional engine hint)
        "stages": [
          {"stage": "SPIN_START", "timestampMs": 0},
          {"stage": "REEL_STOP_0", "timestampMs": 1000, "payload": {...}},
          ...
        ]
      }

    Stage ordering is not checked here; StageTimeline.load() owns that rule.
    """
    raw = _read_json(path)
    if not isinstance(raw, dict):
        raise InputFormatError("root must be a JSON object")
    return parse_spin_result(raw)


def parse_spin_result(raw: dict[str, Any]) -> SpinResult:
    spin_id = raw.get("spinId")
    total_win = raw.get("totalWin")
    is_win = raw.get("isWin", None)
    hint = raw.get("bigWinTier", None)
    stages_raw = raw.get("stages")

    if not isinstance(spin_id, str) or not spin_id.strip():
        raise InputFormatError("spinId must be a non-empty string")
    if isinstance(total_win, bool) or not isinstance(total_win, (int, float)):
        raise InputFormatError("totalWin must be a number")
    if total_win < 0:
        raise InputFormatError(f"totalWin must be >= 0 (got {total_win})")
    if is_win is not None and not isinstance(is_win, bool):
        raise InputFormatError("isWin must be a boolean when provided")
    if not isinstance(stages_raw, list):
        raise InputFormatError("stages must be an array")

    big_win_tier: EngineWinTier | None = None
    if hint is not None:
        try:
            big_win_tier = EngineWinTier(hint)
        except ValueError as e:
            raise InputFormatError(f"bigWinTier is not a valid engine tier: {hint!r}") from e

    stages: list[StageEvent] = []
    for i, item in enumerate(stages_raw):
        if not isinstance(item, dict):
            raise InputFormatError(f"stages[{i}] must be an object")
        stage = item.get("stage", item.get("stageType"))
        ts = item.get("timestampMs")
        payload = item.get("payload", {})
        if not isinstance(stage, str) or not stage.strip():
            raise InputFormatError(f"stages[{i}].stage must be a non-empty string")
        if isinstance(ts, bool) or not isinstance(ts, int) or ts < 0:
            raise InputFormatError(f"stages[{i}].timestampMs must be an int >= 0")
        if not isinstance(payload, dict):
            raise InputFormatError(f"stages[{i}].payload must be an object")
        stages.append(StageEvent(stage_type=stage.strip().upper(), timestamp_ms=ts, payload=payload))

    return SpinResult(
        spin_id=spin_id,
        total_win=float(total_win),
        is_win=bool(is_win) if is_win is not None else total_win > 0,
        stages=tuple(stages),
        big_win_tier=big_win_tier,
    )


def dump_spin_result(result: SpinResult) -> dict[str, Any]:
    """Return a JSON-serializable spin result in the load_spin_result format."""
    out: dict[str, Any] = {
        "spinId": result.spin_id,
        "totalWin": result.total_win,
        "isWin": result.is_win,
        "stages": [
            {"stage": s.stage_type, "timestampMs": s.timestamp_ms, **({"payload": dict(s.payload)} if s.payload else {})}
            for s in result.stages
        ],
    }
    if result.big_win_tier is not None:
        out["bigWinTier"] = result.big_win_tier.value
    return out


def dump_trigger_log(triggers: list[TriggerRecord]) -> list[dict[str, Any]]:
    return [asdict(t) for t in triggers]
