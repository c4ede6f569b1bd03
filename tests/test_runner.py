import asyncio

from signal_desk.config import Config
from signal_desk.errors import UpstreamError
from signal_desk.lifecycle import new_test
from signal_desk.models import COMPLETED, LONG, SHORT, Candle, Signal
from signal_desk.providers.binance import PriceTick
from signal_desk.runner import SignalDesk


class FakeProvider:
    def __init__(self, prices=None, failing=(), universe=None):
        self.prices = dict(prices or {})
        self.failing = set(failing)
        self.universe = list(universe or [])
        self.closed = False

    async def fetch_candles(self, symbol, interval, limit=100):
        if symbol in self.failing:
            raise UpstreamError(f"boom {symbol}", status=500)
        return [Candle(time=i * 60_000, open=100, high=101, low=99, close=100, volume=1) for i in range(limit)]

    async def fetch_last_price(self, symbol):
        if symbol in self.failing:
            raise UpstreamError(f"boom {symbol}", status=500)
        return self.prices[symbol]

    async def top_symbols(self, **kwargs):
        return list(self.universe)

    async def close(self):
        self.closed = True


class FakeAnalyzer:
    """Returns canned signals per symbol, in call order."""

    min_candles = 30

    def __init__(self, by_symbol):
        self.by_symbol = {k: list(v) for k, v in by_symbol.items()}

    def analyze(self, candles, symbol, timeframe):
        queue = self.by_symbol.get(symbol) or []
        return [queue.pop(0)] if queue else []


def _sig(symbol="BTCUSDT", strength=70.0, type_=LONG, price=100.0) -> Signal:
    tp, sl = (price * 1.1, price * 0.95) if type_ == LONG else (price * 0.9, price * 1.05)
    return Signal(
        type=type_,
        symbol=symbol,
        timeframe="15m",
        price=price,
        tp=tp,
        sl=sl,
        time=0,
        strength=strength,
        strategy="test",
    )


def _desk(tmp_path, provider, symbols=("BTCUSDT", "ETHUSDT")) -> SignalDesk:
    cfg = Config()
    cfg.provider.symbols = list(symbols) if symbols is not None else None
    cfg.provider.timeframes = ["15m"]
    cfg.testing.store_path = str(tmp_path / "tests.json")
    return SignalDesk(cfg, provider=provider)


def test_refresh_signals_survives_upstream_errors(tmp_path):
    desk = _desk(tmp_path, FakeProvider(failing={"ETHUSDT"}))
    desk.analyzer = FakeAnalyzer({"BTCUSDT": [_sig()], "ETHUSDT": [_sig("ETHUSDT")]})

    landed = asyncio.run(desk.refresh_signals())

    assert [s.symbol for s in landed] == ["BTCUSDT"]
    assert list(desk.board) == [("BTCUSDT", "15m", LONG)]
    assert desk._metrics["analyses_failed"] == 1
    # below the auto-test threshold: nothing promoted
    assert asyncio.run(desk.store.load_tests()) == []


def test_strong_signal_is_auto_promoted_once(tmp_path):
    desk = _desk(tmp_path, FakeProvider(), symbols=["BTCUSDT"])
    desk.analyzer = FakeAnalyzer({"BTCUSDT": [_sig(strength=85.0), _sig(strength=85.0)]})

    async def _run():
        first = await desk.refresh_signals()
        second = await desk.refresh_signals()
        return first, second, await desk.store.load_tests()

    first, second, tests = asyncio.run(_run())

    assert len(tests) == 1
    assert tests[0].auto_tested
    assert first[0].test_id == tests[0].id
    assert desk.board[("BTCUSDT", "15m", LONG)].test_id == tests[0].id
    # same strength, fresh board entry: not replaced
    assert second == []


def test_stronger_signal_replaces_board_entry(tmp_path):
    desk = _desk(tmp_path, FakeProvider(), symbols=["BTCUSDT"])
    desk.analyzer = FakeAnalyzer({"BTCUSDT": [_sig(strength=66.0), _sig(strength=72.0)]})

    asyncio.run(desk.refresh_signals())
    asyncio.run(desk.refresh_signals())

    assert desk.board[("BTCUSDT", "15m", LONG)].strength == 72.0


def test_manual_promotion_is_deduplicated(tmp_path):
    desk = _desk(tmp_path, FakeProvider())

    async def _run():
        a = await desk.promote(_sig(), auto=False)
        b = await desk.promote(_sig(price=150.0), auto=False)
        c = await desk.promote(_sig(type_=SHORT), auto=False)
        return a, b, c

    a, b, c = asyncio.run(_run())
    assert a.created
    assert not b.created
    assert c.created
    assert desk._metrics["tests_duplicate"] == 1


def test_check_active_tests_closes_on_take_profit(tmp_path):
    provider = FakeProvider(prices={"BTCUSDT": 111.0, "ETHUSDT": 100.5})
    desk = _desk(tmp_path, provider)

    async def _run():
        btc = new_test(_sig(), now_s=0)
        eth = new_test(_sig("ETHUSDT"), now_s=0)
        await desk.store.append_test(btc)
        await desk.store.append_test(eth)
        changed = await desk.check_active_tests()
        again = await desk.check_active_tests()
        return btc, eth, changed, again, await desk.store.load_tests()

    btc, eth, changed, again, stored = asyncio.run(_run())

    by_id = {t.id: t for t in stored}
    assert {t.id for t in changed} == {btc.id, eth.id}
    assert by_id[btc.id].status == COMPLETED
    assert by_id[btc.id].final_pnl > 0
    assert by_id[eth.id].is_active
    assert by_id[eth.id].current_price == 100.5
    # the ETH price did not move, nothing to write
    assert again == []
    assert desk._metrics["tests_closed"] == 1


def test_price_failure_leaves_test_untouched(tmp_path):
    desk = _desk(tmp_path, FakeProvider(failing={"BTCUSDT"}))

    async def _run():
        t = new_test(_sig(), now_s=0)
        await desk.store.append_test(t)
        changed = await desk.check_active_tests()
        return t, changed, await desk.store.get_test(t.id)

    t, changed, stored = asyncio.run(_run())
    assert changed == []
    assert stored == t


def test_filtered_signals(tmp_path):
    desk = _desk(tmp_path, FakeProvider())
    for sig in (_sig(strength=66.0), _sig("ETHUSDT", strength=75.0), _sig("ETHUSDT", strength=70.0, type_=SHORT)):
        desk.board[(sig.symbol, sig.timeframe, sig.type)] = sig

    assert [s.strength for s in desk.filtered_signals()] == [75.0, 70.0, 66.0]
    assert [s.strength for s in desk.filtered_signals(min_strength=70.0)] == [75.0, 70.0]
    assert [s.type for s in desk.filtered_signals(type=SHORT)] == [SHORT]
    assert [s.symbol for s in desk.filtered_signals(symbol="BTCUSDT")] == ["BTCUSDT"]


def test_refresh_symbols_uses_ranked_universe(tmp_path):
    desk = _desk(tmp_path, FakeProvider(universe=["BTCUSDT", "SOLUSDT"]), symbols=None)
    assert asyncio.run(desk.refresh_symbols()) == ["BTCUSDT", "SOLUSDT"]
    assert desk.last_symbols_refresh_ms is not None


class StreamingProvider(FakeProvider):
    def __init__(self, ticks):
        super().__init__()
        self.ticks = list(ticks)
        self.subscriptions = []
        self.streams_closed = 0

    async def stream_prices(self, symbols):
        self.subscriptions.append(list(symbols))
        try:
            for tick in self.ticks:
                yield tick
        finally:
            self.streams_closed += 1


def test_stream_monitor_closes_test_and_releases_stream(tmp_path):
    provider = StreamingProvider([PriceTick("BTCUSDT", 101.0, 1), PriceTick("BTCUSDT", 112.0, 2)])
    desk = _desk(tmp_path, provider)
    desk.cfg.schedule.monitor_interval_s = 0

    async def _run():
        t = new_test(_sig(), now_s=0)
        await desk.store.append_test(t)
        task = asyncio.create_task(desk._monitor_stream())
        for _ in range(200):
            await asyncio.sleep(0)
            stored = await desk.store.get_test(t.id)
            if not stored.is_active:
                break
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return await desk.store.get_test(t.id)

    stored = asyncio.run(_run())
    assert stored.status == COMPLETED
    assert stored.current_price == 112.0
    assert provider.subscriptions[0] == ["BTCUSDT"]
    assert provider.streams_closed == len(provider.subscriptions)


class SeriesProvider(FakeProvider):
    def __init__(self, series, failing=()):
        super().__init__(failing=failing)
        self.series = series

    async def fetch_candles(self, symbol, interval, limit=100):
        if symbol in self.failing:
            raise UpstreamError(f"boom {symbol}", status=500)
        return list(self.series)


def test_quick_scan_all_skips_failures_and_leaves_board_alone(tmp_path):
    # long climb then a small dip: a short candidate for the lightweight scan
    closes = [100.0 + i * 0.02 for i in range(40)] + [100.7]
    series = [Candle(time=i * 60_000, open=c, high=c + 0.05, low=c - 0.05, close=c, volume=1) for i, c in enumerate(closes)]
    desk = _desk(tmp_path, SeriesProvider(series, failing={"ETHUSDT"}))

    out = asyncio.run(desk.quick_scan_all())

    assert [(s.symbol, s.type) for s in out] == [("BTCUSDT", SHORT)]
    assert desk.board == {}
    assert asyncio.run(desk.store.load_tests()) == []
