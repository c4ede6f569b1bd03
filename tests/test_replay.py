import pytest

from signal_desk.analyzer import MarketAnalyzer
from signal_desk.models import COMPLETED, LONG, Candle, Signal
from signal_desk.replay import replay


def _c(idx: int, c: float) -> Candle:
    return Candle(time=idx * 60_000, open=c, high=c + 0.5, low=c - 0.5, close=c, volume=1.0)


class ScriptedAnalyzer:
    """Emits a long at the close of each listed prefix length."""

    min_candles = 3

    def __init__(self, at_lengths):
        self.at_lengths = set(at_lengths)

    def analyze(self, candles, symbol, timeframe):
        if len(candles) not in self.at_lengths:
            return []
        price = candles[-1].close
        return [Signal(
            type=LONG,
            symbol=symbol,
            timeframe=timeframe,
            price=price,
            tp=price * 1.1,
            sl=price * 0.95,
            time=candles[-1].time,
            strength=90.0,
            strategy="scripted",
        )]


def test_replay_opens_and_closes_tests_in_order():
    candles = [_c(i, c) for i, c in enumerate([100, 100, 100, 105, 111, 100])]
    report = replay(candles, "BTCUSDT", "15m", ScriptedAnalyzer({3, 4}))

    assert report.bars == 6
    assert len(report.signals) == 2
    # the second signal arrives while the first test is still open
    assert len(report.tests) == 1
    t = report.tests[0]
    assert t.start_time == 120
    assert t.status == COMPLETED
    assert t.end_time == 240
    assert t.final_pnl == pytest.approx(1.0)
    assert report.stats.completed == 1
    assert report.stats.win_rate == 100.0


def test_replay_never_closes_on_opening_bar():
    candles = [_c(i, c) for i, c in enumerate([100, 100, 100])]
    report = replay(candles, "BTCUSDT", "15m", ScriptedAnalyzer({3}))
    assert len(report.tests) == 1
    assert report.tests[0].is_active


def test_replay_on_quiet_market_is_empty():
    candles = [_c(i, 100.0) for i in range(50)]
    report = replay(candles, "BTCUSDT", "15m", MarketAnalyzer())
    assert report.tests == []
    assert report.signals == []
    assert report.stats.total == 0
