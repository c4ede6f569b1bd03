import math

import pytest

from signal_desk import indicators as ta
from signal_desk.models import Candle


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    return Candle(time=idx * 60_000, open=o, high=h, low=l, close=c, volume=v)


def test_sma_leading_undefined_and_values():
    closes = [10, 11, 12, 11, 10, 9, 10, 11, 12, 13, 14]
    out = ta.sma(closes, 3)

    assert len(out) == len(closes)
    assert out[0] is None and out[1] is None
    assert out[2] == pytest.approx(11.0)
    assert out[3] == pytest.approx(34 / 3)
    assert out[-1] == pytest.approx(13.0)


def test_ema_seeded_with_sma_and_deterministic():
    values = [float(x) for x in range(1, 11)]
    out = ta.ema(values, 3)

    assert len(out) == len(values) - 3 + 1
    assert out[0] == pytest.approx(2.0)
    # linear input: the EMA lags the price by (period - 1) / 2
    assert out[-1] == pytest.approx(9.0)
    assert ta.ema(values, 3) == out
    assert ta.ema(values[:2], 3) == []


def test_rsi_bounds_and_all_gains():
    rising = [float(x) for x in range(1, 30)]
    out = ta.rsi(rising, 14)
    assert all(v is None for v in out[:14])
    assert all(v == 100.0 for v in out[14:])

    mixed = [100, 101, 99, 102, 98, 103, 97, 104, 96, 105, 95, 106, 94, 107, 93, 108, 92, 109]
    vals = [v for v in ta.rsi(mixed, 14) if v is not None]
    assert vals
    assert all(0.0 <= v <= 100.0 for v in vals)


def test_rsi_short_history_is_all_undefined():
    assert ta.rsi([1.0, 2.0, 3.0], 14) == [None, None, None]


def test_macd_lines_are_right_aligned():
    values = [100 + math.sin(i / 3.0) * 5 for i in range(60)]
    m = ta.macd(values)

    assert len(m.macd_line) == len(values) - 26 + 1
    assert len(m.signal_line) == len(m.macd_line) - 9 + 1
    assert len(m.histogram) == len(m.signal_line)
    assert m.histogram[-1] == pytest.approx(m.macd_line[-1] - m.signal_line[-1])

    short = ta.ema(values, 12)
    long_ = ta.ema(values, 26)
    assert m.macd_line[-1] == pytest.approx(short[-1] - long_[-1])


def test_bollinger_middle_equals_sma():
    values = [10, 12, 11, 13, 12, 14, 13, 15, 14, 16]
    bands = ta.bollinger_bands(values, 5, 2.0)
    middles = ta.sma(values, 5)

    for band, mid in zip(bands, middles):
        if mid is None:
            assert band is None
        else:
            assert band.middle == pytest.approx(mid)
            assert band.upper >= band.middle >= band.lower

    flat = ta.bollinger_bands([5.0] * 6, 5)
    assert flat[-1].upper == flat[-1].lower == 5.0


def test_stochastic_zero_range_is_zero():
    out = ta.stochastic([5.0] * 20, 14)
    assert out[12] is None
    assert out[13] == 0.0
    assert out[-1] == 0.0

    out = ta.stochastic([1.0, 2.0, 3.0], 3)
    assert out[-1] == pytest.approx(100.0)


def test_atr_is_simple_mean_of_true_ranges():
    candles = [_c(i, 100, 101, 99, 100) for i in range(20)]
    assert ta.atr(candles, 14) == pytest.approx(2.0)
    assert ta.atr(candles[:14], 14) is None


def test_adx_alignment_and_range():
    candles = []
    price = 100.0
    for i in range(40):
        price += 1.0 if i % 5 else -0.5
        candles.append(_c(i, price - 0.5, price + 1.0, price - 1.0, price))

    out = ta.adx(candles, 14)
    assert len(out) == len(candles)
    assert all(v is None for v in out[:15])
    assert out[15] is not None
    assert all(0.0 <= v <= 100.0 for v in out[15:])
    # steady uptrend reads as trending
    assert out[-1] > 15.0


def test_adx_flat_market_does_not_divide_by_zero():
    candles = [_c(i, 100, 100, 100, 100) for i in range(30)]
    out = ta.adx(candles, 14)
    assert out[-1] == 0.0


def test_volume_increase_ratio_minus_one():
    candles = [_c(i, 1, 1, 1, 1, v=1.0) for i in range(9)] + [_c(9, 1, 1, 1, 1, v=3.0)]
    assert ta.volume_increase(candles, 10) == pytest.approx(3.0 / 1.2 - 1.0)

    quiet = [_c(i, 1, 1, 1, 1, v=0.0) for i in range(10)]
    assert ta.volume_increase(quiet, 10) is None
    assert ta.volume_increase(candles[:5], 10) is None


def test_fibonacci_levels():
    levels = ta.fibonacci_levels(110.0, 100.0)
    assert set(levels) == {"23.6", "38.2", "50.0", "61.8", "78.6"}
    assert levels["50.0"] == pytest.approx(105.0)
    assert levels["61.8"] == pytest.approx(103.82)
    assert levels["23.6"] > levels["78.6"]


def test_fair_value_gaps_both_directions():
    bullish = [
        _c(0, 9.5, 10, 9, 9.8),
        _c(1, 11.2, 13, 11, 12),
        _c(2, 10.2, 10.5, 9.5, 10),
    ]
    gaps = ta.find_fair_value_gaps(bullish, "bullish")
    assert len(gaps) == 1
    assert (gaps[0].start, gaps[0].end, gaps[0].index) == (10, 11, 1)
    assert gaps[0].contains(10.5)
    assert not gaps[0].contains(11.5)
    assert ta.find_fair_value_gaps(bullish, "bearish") == []

    bearish = [
        _c(0, 11.5, 12, 11, 11.2),
        _c(1, 9.8, 10, 9, 9.5),
        _c(2, 11, 12, 10.5, 11),
    ]
    gaps = ta.find_fair_value_gaps(bearish, "bearish")
    assert len(gaps) == 1
    assert (gaps[0].start, gaps[0].end) == (10, 11)
    assert gaps[0].direction == "bearish"


def test_fair_value_gaps_rejects_unknown_direction():
    candles = [_c(i, 1, 1, 1, 1) for i in range(3)]
    with pytest.raises(ValueError):
        ta.find_fair_value_gaps(candles, "sideways")
