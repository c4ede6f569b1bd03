"""Technical indicators over plain lists.

Aligned series hold ``None`` where the lookback is not yet satisfied; callers
must never read ``None`` as zero. ``ema`` and ``macd`` are the exceptions: they
return only the defined values (right-aligned with the input).
"""
from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from .models import BollingerBand, Candle, FairValueGap, Macd


FIB_RATIOS = (
    ("23.6", 0.236),
    ("38.2", 0.382),
    ("50.0", 0.5),
    ("61.8", 0.618),
    ("78.6", 0.786),
)


def closes(candles: Sequence[Candle]) -> List[float]:
    return [c.close for c in candles]


def last_defined(series: Sequence[Optional[float]]) -> Optional[float]:
    for v in reversed(series):
        if v is not None:
            return v
    return None


def sma(values: Sequence[float], period: int) -> List[Optional[float]]:
    if period <= 0:
        raise ValueError("period must be positive")
    out: List[Optional[float]] = []
    for i in range(len(values)):
        if i < period - 1:
            out.append(None)
            continue
        out.append(sum(values[i - period + 1:i + 1]) / period)
    return out


def ema(values: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the SMA of the first ``period`` values.

    Returns ``len(values) - period + 1`` values, no padding.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    if len(values) < period:
        return []
    multiplier = 2.0 / (period + 1.0)
    out = [sum(values[:period]) / period]
    for price in values[period:]:
        prev = out[-1]
        out.append((price - prev) * multiplier + prev)
    return out


def rsi(values: Sequence[float], period: int = 14) -> List[Optional[float]]:
    """Wilder RSI aligned with ``values``; first defined value at index ``period``."""
    if period <= 0:
        raise ValueError("period must be positive")
    n = len(values)
    out: List[Optional[float]] = [None] * n
    if n < period + 1:
        return out

    gains = []
    losses = []
    for i in range(1, n):
        ch = values[i] - values[i - 1]
        gains.append(ch if ch > 0 else 0.0)
        losses.append(-ch if ch < 0 else 0.0)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(values: Sequence[float], short: int = 12, long: int = 26, signal: int = 9) -> Macd:
    if short >= long:
        raise ValueError("short period must be below long period")
    ema_short = ema(values, short)
    ema_long = ema(values, long)
    offset = long - short
    macd_line = [ema_short[i + offset] - ema_long[i] for i in range(len(ema_long))]
    signal_line = ema(macd_line, signal)
    lag = len(macd_line) - len(signal_line)
    histogram = [macd_line[i + lag] - signal_line[i] for i in range(len(signal_line))]
    return Macd(macd_line=macd_line, signal_line=signal_line, histogram=histogram)


def bollinger_bands(values: Sequence[float], period: int = 20, k: float = 2.0) -> List[Optional[BollingerBand]]:
    """Middle = SMA; bands at +/- k population standard deviations."""
    middles = sma(values, period)
    out: List[Optional[BollingerBand]] = []
    for i, mid in enumerate(middles):
        if mid is None:
            out.append(None)
            continue
        window = values[i - period + 1:i + 1]
        variance = sum((p - mid) ** 2 for p in window) / period
        dev = math.sqrt(variance) * k
        out.append(BollingerBand(upper=mid + dev, middle=mid, lower=mid - dev))
    return out


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    """One value per bar after the first."""
    return [
        true_range(candles[i].high, candles[i].low, candles[i - 1].close)
        for i in range(1, len(candles))
    ]


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Simple mean of the last ``period`` true ranges (not Wilder-smoothed)."""
    if period <= 0 or len(candles) < period + 1:
        return None
    trs = true_ranges(candles)
    return sum(trs[-period:]) / period


def stochastic(values: Sequence[float], period: int = 14) -> List[Optional[float]]:
    """%K over closes; 0.0 (not undefined) when the window range is zero."""
    if period <= 0:
        raise ValueError("period must be positive")
    out: List[Optional[float]] = []
    for i in range(len(values)):
        if i < period - 1:
            out.append(None)
            continue
        window = values[i - period + 1:i + 1]
        lo = min(window)
        hi = max(window)
        if hi - lo == 0:
            out.append(0.0)
        else:
            out.append((values[i] - lo) / (hi - lo) * 100.0)
    return out


def adx(candles: Sequence[Candle], period: int = 14) -> List[Optional[float]]:
    """Wilder ADX aligned with ``candles``; first defined value at index ``period + 1``."""
    if period <= 0:
        raise ValueError("period must be positive")
    n = len(candles)
    out: List[Optional[float]] = [None] * n
    if n < period + 2:
        return out

    trs: List[float] = []
    dm_plus: List[float] = []
    dm_minus: List[float] = []
    for i in range(1, n):
        cur, prev = candles[i], candles[i - 1]
        up = cur.high - prev.high
        down = prev.low - cur.low
        trs.append(true_range(cur.high, cur.low, prev.close))
        dm_plus.append(max(up, 0.0) if up > down else 0.0)
        dm_minus.append(max(down, 0.0) if down > up else 0.0)

    tr_s = sum(trs[:period])
    plus_s = sum(dm_plus[:period])
    minus_s = sum(dm_minus[:period])

    prev_adx: Optional[float] = None
    for i in range(period, len(trs)):
        tr_s = tr_s - tr_s / period + trs[i]
        plus_s = plus_s - plus_s / period + dm_plus[i]
        minus_s = minus_s - minus_s / period + dm_minus[i]

        if tr_s > 0:
            di_plus = 100.0 * plus_s / tr_s
            di_minus = 100.0 * minus_s / tr_s
        else:
            di_plus = di_minus = 0.0
        di_sum = di_plus + di_minus
        dx = abs(di_plus - di_minus) / di_sum * 100.0 if di_sum > 0 else 0.0

        prev_adx = dx if prev_adx is None else (prev_adx * (period - 1) + dx) / period
        out[i + 1] = prev_adx
    return out


def volume_increase(candles: Sequence[Candle], period: int = 10) -> Optional[float]:
    """``current / mean(last period) - 1``; None when the mean is zero or history is short."""
    if period <= 0 or len(candles) < period:
        return None
    vols = [c.volume for c in candles[-period:]]
    avg = sum(vols) / period
    if avg == 0:
        return None
    return candles[-1].volume / avg - 1.0


def fibonacci_levels(high: float, low: float) -> Dict[str, float]:
    diff = high - low
    return {name: high - diff * ratio for name, ratio in FIB_RATIOS}


def find_fair_value_gaps(candles: Sequence[Candle], direction: str = "bullish") -> List[FairValueGap]:
    """Scan bar triples (i-1, i, i+1), oldest first.

    bullish: bar i's low sits above both bar i+1's high and bar i-1's high;
    the gap is [prev.high, cur.low].
    bearish: bar i's high sits below both bar i+1's low and bar i-1's low;
    the gap is [cur.high, prev.low].
    """
    gaps: List[FairValueGap] = []
    for i in range(1, len(candles) - 1):
        prev, cur, nxt = candles[i - 1], candles[i], candles[i + 1]
        if direction == "bullish":
            if cur.low > nxt.high and prev.high < cur.low:
                gaps.append(FairValueGap(start=prev.high, end=cur.low, index=i, direction=direction))
        elif direction == "bearish":
            if cur.high < nxt.low and prev.low > cur.high:
                gaps.append(FairValueGap(start=cur.high, end=prev.low, index=i, direction=direction))
        else:
            raise ValueError(f"unknown gap direction: {direction}")
    return gaps
