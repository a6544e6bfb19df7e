"""Shared JSON field helpers for the config dataclasses."""

from __future__ import annotations

import math
from typing import Any

from slot_stage_sync.errors import ConfigurationError

INFINITY_TOKEN = "infinity"


def encode_bound(value: float) -> float | str:
    return INFINITY_TOKEN if math.isinf(value) else value


def decode_bound(raw: Any, *, label: str) -> float:
    if raw == INFINITY_TOKEN:
        return math.inf
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigurationError(f"{label} must be a number or {INFINITY_TOKEN!r}")
    return float(raw)


def require_field(raw: dict[str, Any], key: str, *, label: str) -> Any:
    if key not in raw:
        raise ConfigurationError(f"{label}.{key} is required")
    return raw[key]

