from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .models import LONG

# Surfacing threshold of the market analyzer and the stricter auto-promotion
# threshold. The quick scanner applies neither.
ANALYZER_MIN_STRENGTH = 65.0
AUTO_TEST_MIN_STRENGTH = 80.0
QUICK_SCAN_MIN_STRENGTH: Optional[float] = None


@dataclass(frozen=True)
class StrengthInputs:
    direction: str
    rsi: Optional[float]
    trend: bool
    macd: bool
    bb_position: bool
    volume_increase: Optional[float]
    risk_reward: Optional[float]


def _clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, x))


def rsi_bucket(direction: str, rsi: Optional[float]) -> float:
    if rsi is None:
        return 0.0
    if direction == LONG:
        if rsi < 30:
            return 30.0
        if rsi < 40:
            return 20.0
        return 0.0
    if rsi > 70:
        return 30.0
    if rsi > 60:
        return 20.0
    return 0.0


def volume_bucket(volume_increase: Optional[float]) -> float:
    if volume_increase is None:
        return 0.0
    if volume_increase > 2:
        return 10.0
    if volume_increase > 1.5:
        return 5.0
    return 0.0


def risk_reward_bucket(rr: Optional[float]) -> float:
    if rr is None:
        return 0.0
    if rr >= 2.5:
        return 10.0
    if rr >= 2:
        return 5.0
    return 0.0


def score_breakdown(inp: StrengthInputs) -> List[Tuple[str, float]]:
    return [
        ("rsi", rsi_bucket(inp.direction, inp.rsi)),
        ("trend", 20.0 if inp.trend else 0.0),
        ("macd", 15.0 if inp.macd else 0.0),
        ("bb_position", 15.0 if inp.bb_position else 0.0),
        ("volume", volume_bucket(inp.volume_increase)),
        ("risk_reward", risk_reward_bucket(inp.risk_reward)),
    ]


def signal_strength(inp: StrengthInputs) -> float:
    """Composite strength in [0, 100]."""
    return _clamp(sum(points for _, points in score_breakdown(inp)))


def passes(strength: float, threshold: Optional[float]) -> bool:
    return threshold is None or strength >= threshold


def quick_confidence(direction: str, rsi: float, ma_convergence: float) -> float:
    confidence = 50.0
    if direction == LONG:
        confidence += (40 - rsi) * 1.5
        confidence += (1 - ma_convergence) * 10
    else:
        confidence += (rsi - 60) * 1.5
        confidence += (1 - abs(ma_convergence)) * 10
    return round(_clamp(confidence), 1)
