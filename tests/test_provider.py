import json

import pytest

from signal_desk.errors import UpstreamError
from signal_desk.providers.binance import normalize_interval, parse_klines, parse_mini_ticker, rank_symbols


def _ticker(symbol: str, qv: float) -> dict:
    return {"symbol": symbol, "quoteVolume": str(qv)}


def test_rank_symbols_filters_and_orders_by_volume():
    tickers = [
        _ticker("ETHUSDT", 3e9),
        _ticker("BTCUSDT", 5e9),
        _ticker("BTCUPUSDT", 9e9),
        _ticker("ETHBEARUSDT", 9e9),
        _ticker("USDCUSDT", 8e9),
        _ticker("SOLBTC", 7e9),
        _ticker("TINYUSDT", 10.0),
        _ticker("SUPERUSDT", 2e6),
        {"symbol": "BADUSDT", "quoteVolume": "n/a"},
    ]

    assert rank_symbols(tickers) == ["BTCUSDT", "ETHUSDT", "SUPERUSDT"]
    assert rank_symbols(tickers, limit=1) == ["BTCUSDT"]


def test_parse_klines_reads_binance_rows():
    rows = [[1_700_000_000_000, "100.0", "101.5", "99.5", "101.0", "12.5", 1_700_000_059_999, "0", 1, "0", "0", "0"]]
    (c,) = parse_klines(rows)
    assert c.time == 1_700_000_000_000
    assert (c.open, c.high, c.low, c.close, c.volume) == (100.0, 101.5, 99.5, 101.0, 12.5)


def test_parse_klines_rejects_malformed_payloads():
    with pytest.raises(UpstreamError):
        parse_klines({"code": -1121, "msg": "Invalid symbol."})
    with pytest.raises(UpstreamError):
        parse_klines([[1, "x", "1", "1", "1", "1"]])
    with pytest.raises(UpstreamError):
        parse_klines([[1, "1"]])


def test_parse_mini_ticker():
    raw = {"e": "24hrMiniTicker", "E": 123, "s": "btcusdt", "c": "65000.5"}
    tick = parse_mini_ticker(json.dumps(raw))
    assert tick.symbol == "BTCUSDT"
    assert tick.price == 65000.5
    assert tick.event_time_ms == 123

    wrapped = parse_mini_ticker({"stream": "btcusdt@miniTicker", "data": raw})
    assert wrapped == tick

    assert parse_mini_ticker('{"result": null, "id": 1}') is None
    assert parse_mini_ticker("not json") is None
    assert parse_mini_ticker({"e": "24hrMiniTicker", "s": "BTCUSDT"}) is None


def test_normalize_interval():
    assert normalize_interval("4h") == "4h"
    assert normalize_interval(" 15m ") == "15m"
    assert normalize_interval("2m") == "1m"
    assert normalize_interval("") == "1m"


def test_upstream_error_truncates_body():
    e = UpstreamError("boom", status=500, body="x" * 1000)
    assert e.status == 500
    assert len(e.body) == 500
    assert str(e) == "boom"
