from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from .indicators import closes, true_ranges
from .models import LONG, SHORT, Candle, TpSl

log = logging.getLogger("risk")

MIN_RISK_REWARD = 1.5
MAX_RR_ITERATIONS = 50
FALLBACK_TP_PCT = 0.02
FALLBACK_SL_PCT = 0.01


def volatility(candles: Sequence[Candle]) -> float:
    """Mean true range over the whole window."""
    trs = true_ranges(candles)
    if not trs:
        return 0.0
    return sum(trs) / len(trs)


def trend_strength(prices: Sequence[float]) -> float:
    """Absolute mean of the simple returns."""
    returns = [
        (prices[i] - prices[i - 1]) / prices[i - 1]
        for i in range(1, len(prices))
        if prices[i - 1] != 0
    ]
    if not returns:
        return 0.0
    return abs(sum(returns) / len(returns))


def risk_reward(direction: str, price: float, tp: float, sl: float) -> Optional[float]:
    if direction == LONG:
        reward, risk = tp - price, price - sl
    else:
        reward, risk = price - tp, sl - price
    if risk <= 0:
        return None
    return reward / risk


def _fallback(direction: str, price: float, tp_pct: float, sl_pct: float) -> TpSl:
    if direction == LONG:
        return TpSl(tp=price * (1 + tp_pct), sl=price * (1 - sl_pct), fallback=True)
    return TpSl(tp=price * (1 - tp_pct), sl=price * (1 + sl_pct), fallback=True)


def compute_tp_sl(
    candles: Sequence[Candle],
    direction: str,
    price: float,
    atr: Optional[float],
    *,
    min_risk_reward: float = MIN_RISK_REWARD,
    max_iterations: int = MAX_RR_ITERATIONS,
    fallback_tp_pct: float = FALLBACK_TP_PCT,
    fallback_sl_pct: float = FALLBACK_SL_PCT,
) -> TpSl:
    """ATR-based take-profit/stop-loss adjusted for trend strength and volatility.

    The TP distance is inflated by 10% steps until reward/risk reaches
    ``min_risk_reward``. A zero/missing ATR or a degenerate stop distance returns
    the fixed percentage fallback instead.
    """
    if direction not in (LONG, SHORT):
        raise ValueError(f"unknown direction: {direction}")
    if atr is None or not math.isfinite(atr) or atr <= 0 or price <= 0:
        log.debug("tpsl_fallback reason=atr atr=%s price=%s", atr, price)
        return _fallback(direction, price, fallback_tp_pct, fallback_sl_pct)

    vol = volatility(candles)
    trend = trend_strength(closes(candles))

    tp_mult = 2.0
    sl_mult = 1.0

    if trend > 0.02:
        tp_mult *= 1.5
        sl_mult *= 0.8
    elif trend < 0.005:
        tp_mult *= 0.8
        sl_mult *= 1.2

    if vol > atr * 2:
        tp_mult *= 1.3
        sl_mult *= 0.7
    elif vol < atr * 0.5:
        tp_mult *= 0.7
        sl_mult *= 1.3

    tp_dist = atr * tp_mult
    sl_dist = atr * sl_mult
    if sl_dist <= 0 or not math.isfinite(sl_dist):
        log.debug("tpsl_fallback reason=sl_distance sl_dist=%s", sl_dist)
        return _fallback(direction, price, fallback_tp_pct, fallback_sl_pct)

    for _ in range(max_iterations):
        if tp_dist / sl_dist >= min_risk_reward:
            break
        tp_dist *= 1.1
    if tp_dist / sl_dist < min_risk_reward:
        tp_dist = sl_dist * min_risk_reward

    if direction == LONG:
        return TpSl(tp=price * (1 + tp_dist / price), sl=price * (1 - sl_dist / price))
    return TpSl(tp=price * (1 - tp_dist / price), sl=price * (1 + sl_dist / price))
