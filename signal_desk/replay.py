from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .analyzer import MarketAnalyzer
from .lifecycle import TestStats, evaluate_test, is_duplicate, new_test, summarize
from .models import Candle, PaperTest, Signal

log = logging.getLogger("replay")


@dataclass
class ReplayReport:
    symbol: str
    timeframe: str
    bars: int
    signals: List[Signal] = field(default_factory=list)
    tests: List[PaperTest] = field(default_factory=list)
    stats: Optional[TestStats] = None


def replay(
    candles: Sequence[Candle],
    symbol: str,
    timeframe: str,
    analyzer: MarketAnalyzer,
    *,
    position_size: float = 10.0,
    window_s: int = 240 * 60,
    price_tolerance: float = 0.01,
    min_strength: Optional[float] = None,
) -> ReplayReport:
    """Walk ``candles`` bar by bar, open paper tests on signals and close them on later closes.

    Each bar's close is checked against the open tests before that bar is
    analyzed, so a test never closes on the bar that opened it. Timestamps come
    from the candles, not the wall clock.
    """
    report = ReplayReport(symbol=symbol, timeframe=timeframe, bars=len(candles))
    tests: List[PaperTest] = []

    for i in range(len(candles)):
        bar = candles[i]
        now_s = bar.time // 1000

        for j, t in enumerate(tests):
            if t.is_active:
                tests[j] = evaluate_test(t, bar.close, now_s=now_s)

        if i + 1 < analyzer.min_candles:
            continue
        for sig in analyzer.analyze(candles[: i + 1], symbol, timeframe):
            if min_strength is not None and sig.strength < min_strength:
                continue
            report.signals.append(sig)
            test = new_test(sig, position_size=position_size, now_s=now_s)
            if is_duplicate(test, tests, now_s=now_s, window_s=window_s, price_tolerance=price_tolerance):
                continue
            tests.append(test)
            log.debug("replay_open symbol=%s type=%s entry=%s bar=%d", symbol, sig.type, sig.price, i)

    report.tests = tests
    report.stats = summarize(tests)
    log.info(
        "replay_done symbol=%s tf=%s bars=%d signals=%d tests=%d pnl=%.4f",
        symbol, timeframe, len(candles), len(report.signals), len(tests), report.stats.total_pnl,
    )
    return report
