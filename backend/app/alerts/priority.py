"""
priority.py — Urgency score for alert ranking.

═══════════════════════════════════════════════════════════════════════════
SCORING MODEL
═══════════════════════════════════════════════════════════════════════════

    score = round( severity_weight × urgency_multiplier × certainty_multiplier )

    Severity      Weight      Urgency      Mult      Certainty    Mult
    ──────────    ──────      ─────────    ────      ─────────    ────
    info            10        immediate    1.0       observed     1.0
    minor           25        expected     0.8       likely       0.8
    moderate        50        future       0.6       possible     0.6
    severe          75        past         0.2       unlikely     0.3
    extreme        100        (other)      0.5       unknown      0.1
    (other)          0                               (missing)    0.5

Rounding is half-up, so 0.5 → 1 and 4.5 → 5.

Examples:
    extreme / immediate / observed  → 100
    severe  / expected  / likely    → 48
    info    / past      / unknown   → 0
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Dict, Optional, Union

SEVERITY_WEIGHTS: Dict[str, int] = {
    "info": 10,
    "minor": 25,
    "moderate": 50,
    "severe": 75,
    "extreme": 100,
}

URGENCY_MULTIPLIERS: Dict[str, float] = {
    "immediate": 1.0,
    "expected": 0.8,
    "future": 0.6,
    "past": 0.2,
}

CERTAINTY_MULTIPLIERS: Dict[str, float] = {
    "observed": 1.0,
    "likely": 0.8,
    "possible": 0.6,
    "unlikely": 0.3,
    "unknown": 0.1,
}

UNKNOWN_SEVERITY_WEIGHT = 0
UNKNOWN_URGENCY_MULTIPLIER = 0.5
MISSING_CERTAINTY_MULTIPLIER = 0.5

Axis = Optional[Union[str, Enum]]


def _key(value: Axis) -> Optional[str]:
    if isinstance(value, Enum):
        return value.value
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score(severity: Axis, urgency: Axis, certainty: Axis) -> int:
    """
    Compute the 0–100 priority score for an alert.

    Accepts enum members or their string values; unrecognised or missing
    values fall back to the neutral weights in the table above.

    >>> score("extreme", "immediate", "observed")
    100
    >>> score("info", "past", "unknown")
    0
    """
    base = SEVERITY_WEIGHTS.get(_key(severity), UNKNOWN_SEVERITY_WEIGHT)
    urgency_mul = URGENCY_MULTIPLIERS.get(_key(urgency), UNKNOWN_URGENCY_MULTIPLIER)
    certainty_mul = CERTAINTY_MULTIPLIERS.get(
        _key(certainty), MISSING_CERTAINTY_MULTIPLIER
    )
    return _round_half_up(base * urgency_mul * certainty_mul)
