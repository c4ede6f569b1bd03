from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from . import indicators as ta
from .formatters import format_indicators
from .models import LONG, SHORT, Candle, FairValueGap, Signal
from .risk import compute_tp_sl, risk_reward, trend_strength
from .scoring import (
    ANALYZER_MIN_STRENGTH,
    QUICK_SCAN_MIN_STRENGTH,
    StrengthInputs,
    passes,
    quick_confidence,
    signal_strength,
)

STRATEGY_NAME = "Advanced Scalping Strategy"
QUICK_STRATEGY_NAME = "MA Convergence Scan"


@dataclass(frozen=True)
class Snapshot:
    """Last-bar readings used by the entry gates and the scorer."""
    price: float
    time: int
    ema_fast: Optional[float]
    ema_slow: Optional[float]
    rsi: Optional[float]
    stochastic: Optional[float]
    adx: Optional[float]
    atr: Optional[float]
    volume_increase: Optional[float]
    bb_middle: Optional[float]
    macd: Optional[float]
    fib: Dict[str, float]
    bullish_gaps: List[FairValueGap]
    bearish_gaps: List[FairValueGap]
    trend_strength: float


class MarketAnalyzer:
    """Stateless per-call analysis of one (symbol, timeframe) candle window."""

    def __init__(
        self,
        *,
        min_candles: int = 30,
        min_strength: Optional[float] = ANALYZER_MIN_STRENGTH,
        min_risk_reward: float = 1.5,
        ema_fast: int = 9,
        ema_slow: int = 20,
        rsi_period: int = 14,
        atr_period: int = 14,
        adx_period: int = 14,
        volume_period: int = 10,
        bb_period: int = 20,
        bb_k: float = 2.0,
        stoch_period: int = 14,
        volume_surge: float = 1.1,
        adx_min: float = 15.0,
        ema_tolerance: float = 0.01,
        macd_threshold: float = 0.002,
        risk_kwargs: Optional[dict] = None,
    ):
        self.min_candles = min_candles
        self.min_strength = min_strength
        self.min_risk_reward = min_risk_reward
        self.ema_fast = ema_fast
        self.ema_slow = ema_slow
        self.rsi_period = rsi_period
        self.atr_period = atr_period
        self.adx_period = adx_period
        self.volume_period = volume_period
        self.bb_period = bb_period
        self.bb_k = bb_k
        self.stoch_period = stoch_period
        self.volume_surge = volume_surge
        self.adx_min = adx_min
        self.ema_tolerance = ema_tolerance
        self.macd_threshold = macd_threshold
        self.risk_kwargs = dict(risk_kwargs or {})

    def snapshot(self, candles: Sequence[Candle]) -> Snapshot:
        prices = ta.closes(candles)
        last = candles[-1]
        ema_fast = ta.ema(prices, self.ema_fast)
        ema_slow = ta.ema(prices, self.ema_slow)
        bands = ta.bollinger_bands(prices, self.bb_period, self.bb_k)
        last_band = bands[-1] if bands else None
        macd = ta.macd(prices)
        return Snapshot(
            price=last.close,
            time=last.time,
            ema_fast=ema_fast[-1] if ema_fast else None,
            ema_slow=ema_slow[-1] if ema_slow else None,
            rsi=ta.last_defined(ta.rsi(prices, self.rsi_period)),
            stochastic=ta.last_defined(ta.stochastic(prices, self.stoch_period)),
            adx=ta.last_defined(ta.adx(candles, self.adx_period)),
            atr=ta.atr(candles, self.atr_period),
            volume_increase=ta.volume_increase(candles, self.volume_period),
            bb_middle=last_band.middle if last_band is not None else None,
            macd=macd.macd_line[-1] if macd.macd_line else None,
            fib=ta.fibonacci_levels(max(prices), min(prices)),
            bullish_gaps=ta.find_fair_value_gaps(candles, "bullish"),
            bearish_gaps=ta.find_fair_value_gaps(candles, "bearish"),
            trend_strength=trend_strength(prices),
        )

    # Entry gates -----------------------------------------------------------

    def _outside_golden_band(self, s: Snapshot) -> bool:
        # price at or beyond the 61.8% retracement, or at or above the 38.2% one
        return s.price <= s.fib["61.8"] or s.price >= s.fib["38.2"]

    def _common_gate(self, s: Snapshot) -> bool:
        return (
            self._outside_golden_band(s)
            and s.volume_increase is not None
            and s.volume_increase > self.volume_surge
            and s.adx is not None
            and s.adx > self.adx_min
            and s.ema_fast is not None
            and s.ema_slow is not None
        )

    def long_setup(self, s: Snapshot) -> bool:
        return (
            self._common_gate(s)
            and any(g.contains(s.price) for g in s.bullish_gaps)
            and s.ema_fast > s.ema_slow * (1 - self.ema_tolerance)
        )

    def short_setup(self, s: Snapshot) -> bool:
        return (
            self._common_gate(s)
            and any(g.contains(s.price) for g in s.bearish_gaps)
            and s.ema_fast < s.ema_slow * (1 + self.ema_tolerance)
        )

    # -----------------------------------------------------------------------

    def _macd_agrees(self, direction: str, s: Snapshot) -> bool:
        if s.macd is None:
            return False
        if direction == LONG:
            return s.macd > self.macd_threshold
        return s.macd < -self.macd_threshold

    def _bb_favorable(self, direction: str, s: Snapshot) -> bool:
        if s.bb_middle is None:
            return False
        if direction == LONG:
            return s.price < s.bb_middle
        return s.price > s.bb_middle

    def _build_signal(self, direction: str, candles: Sequence[Candle], s: Snapshot, symbol: str, timeframe: str) -> Optional[Signal]:
        levels = compute_tp_sl(candles, direction, s.price, s.atr, **self.risk_kwargs)
        rr = risk_reward(direction, s.price, levels.tp, levels.sl)
        if rr is None or rr < self.min_risk_reward:
            return None

        bb_ok = self._bb_favorable(direction, s)
        strength = signal_strength(StrengthInputs(
            direction=direction,
            rsi=s.rsi,
            trend=True,  # the gate already required EMA alignment
            macd=self._macd_agrees(direction, s),
            bb_position=bb_ok,
            volume_increase=s.volume_increase,
            risk_reward=rr,
        ))
        return Signal(
            type=direction,
            symbol=symbol,
            timeframe=timeframe,
            price=s.price,
            tp=levels.tp,
            sl=levels.sl,
            time=s.time,
            strength=strength,
            strategy=STRATEGY_NAME,
            indicators=format_indicators(
                direction=direction,
                rsi=s.rsi,
                macd=s.macd,
                bb_favorable=bb_ok,
                volume_increase=s.volume_increase,
                atr=s.atr,
                risk_reward=rr,
                trend_strength=s.trend_strength,
                adx=s.adx,
                stochastic=s.stochastic,
            ),
        )

    def analyze(self, candles: Sequence[Candle], symbol: str, timeframe: str) -> List[Signal]:
        """Zero or more signals for the latest bar of ``candles``."""
        if len(candles) < self.min_candles:
            return []

        s = self.snapshot(candles)
        out: List[Signal] = []
        if self.long_setup(s):
            sig = self._build_signal(LONG, candles, s, symbol, timeframe)
            if sig is not None:
                out.append(sig)
        if self.short_setup(s):
            sig = self._build_signal(SHORT, candles, s, symbol, timeframe)
            if sig is not None:
                out.append(sig)
        return [sig for sig in out if passes(sig.strength, self.min_strength)]


def quick_scan(
    candles: Sequence[Candle],
    symbol: str = "",
    timeframe: str = "",
    *,
    fast: int = 9,
    slow: int = 21,
    rsi_period: int = 14,
) -> List[Signal]:
    """Lightweight SMA-convergence scan with fixed +/-2% / 1% levels and no strength filter."""
    if len(candles) < max(slow, rsi_period + 1, 2):
        return []
    prices = ta.closes(candles)
    last = candles[-1]
    price = last.close

    fast_ma = ta.sma(prices, fast)[-1]
    slow_ma = ta.sma(prices, slow)[-1]
    last_rsi = ta.rsi(prices, rsi_period)[-1]
    if fast_ma is None or slow_ma is None or last_rsi is None or slow_ma == 0 or prices[-2] == 0:
        return []

    price_change = (price - prices[-2]) / prices[-2] * 100.0
    convergence = (fast_ma - slow_ma) / slow_ma * 100.0

    out: List[Signal] = []
    if last_rsi < 40 and slow_ma * 0.995 < fast_ma < slow_ma and price_change > -0.1:
        out.append(_quick_signal(LONG, symbol, timeframe, last, last_rsi, convergence))
    if last_rsi > 60 and slow_ma < fast_ma < slow_ma * 1.005 and price_change < 0.1:
        out.append(_quick_signal(SHORT, symbol, timeframe, last, last_rsi, convergence))
    return [sig for sig in out if passes(sig.strength, QUICK_SCAN_MIN_STRENGTH)]


def _quick_signal(direction: str, symbol: str, timeframe: str, last: Candle, rsi: float, convergence: float) -> Signal:
    price = last.close
    if direction == LONG:
        tp, sl = price * 1.02, price * 0.99
    else:
        tp, sl = price * 0.98, price * 1.01
    return Signal(
        type=direction,
        symbol=symbol,
        timeframe=timeframe,
        price=price,
        tp=tp,
        sl=sl,
        time=last.time,
        strength=quick_confidence(direction, rsi, convergence),
        strategy=QUICK_STRATEGY_NAME,
        indicators={"rsi": f"{rsi:.2f}", "ma_convergence": f"{convergence:.3f}%"},
    )
