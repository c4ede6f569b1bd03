from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .analyzer import MarketAnalyzer, quick_scan
from .config import Config
from .errors import UpstreamError
from .lifecycle import evaluate_test, new_test
from .models import PaperTest, Signal
from .providers.binance import BinanceProvider
from .store import PromotionResult, TestStore

log = logging.getLogger("runner")

BoardKey = Tuple[str, str, str]


def _now_ms() -> int:
    return int(time.time() * 1000)


class SignalDesk:
    """Owns the symbol universe, the signal board and the active-test monitor."""

    def __init__(self, cfg: Config, *, provider=None, store: Optional[TestStore] = None):
        self.cfg = cfg
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.store = store or TestStore(cfg.testing.store_path)
        a = cfg.analyzer
        self.analyzer = MarketAnalyzer(
            min_candles=a.min_candles,
            min_strength=a.min_strength,
            min_risk_reward=a.min_risk_reward,
            ema_fast=a.ema_fast,
            ema_slow=a.ema_slow,
            rsi_period=a.rsi_period,
            atr_period=a.atr_period,
            adx_period=a.adx_period,
            volume_period=a.volume_period,
            bb_period=a.bb_period,
            bb_k=a.bb_k,
            stoch_period=a.stoch_period,
            volume_surge=a.volume_surge,
            adx_min=a.adx_min,
            ema_tolerance=a.ema_tolerance,
            macd_threshold=a.macd_threshold,
            risk_kwargs=cfg.risk.kwargs(),
        )

        self.symbols: List[str] = []
        self.board: Dict[BoardKey, Signal] = {}
        self._board_seen_ms: Dict[BoardKey, int] = {}
        self._metrics = {
            "analyses_total": 0,
            "analyses_failed": 0,
            "signals_total": 0,
            "tests_created": 0,
            "tests_duplicate": 0,
            "tests_closed": 0,
        }
        self.last_signals_refresh_ms: Optional[int] = None
        self.last_symbols_refresh_ms: Optional[int] = None

    # Symbols ----------------------------------------------------------------

    async def refresh_symbols(self) -> List[str]:
        p = self.cfg.provider
        if p.symbols:
            new = list(p.symbols)
        else:
            try:
                new = await self.provider.top_symbols(
                    quote_asset=p.quote_asset,
                    min_volume=p.min_quote_volume,
                    exclude=p.exclude,
                    exclude_fragments=p.exclude_fragments,
                    limit=p.max_symbols,
                )
            except UpstreamError as e:
                log.warning("symbols_refresh_failed err=%s keeping=%d", e, len(self.symbols))
                return self.symbols

        if sorted(new) != sorted(self.symbols):
            log.info("symbols_updated count=%d symbols=%s", len(new), ",".join(new))
        self.symbols = new
        self.last_symbols_refresh_ms = _now_ms()
        return self.symbols

    # Analysis ---------------------------------------------------------------

    async def analyze_one(self, symbol: str, timeframe: str) -> List[Signal]:
        self._metrics["analyses_total"] += 1
        try:
            candles = await self.provider.fetch_candles(symbol, timeframe, self.cfg.provider.candle_limit)
        except UpstreamError as e:
            self._metrics["analyses_failed"] += 1
            log.warning("analysis_failed symbol=%s tf=%s err=%s", symbol, timeframe, e)
            return []
        return self.analyzer.analyze(candles, symbol, timeframe)

    async def refresh_signals(self) -> List[Signal]:
        """Analyze every (symbol, timeframe) pair; returns signals that landed on the board."""
        if not self.symbols:
            await self.refresh_symbols()
        pairs = [(sym, tf) for sym in self.symbols for tf in self.cfg.provider.timeframes]
        sem = asyncio.Semaphore(max(1, int(self.cfg.provider.analysis_concurrency)))
        landed: List[Signal] = []

        async def _one(sym: str, tf: str) -> None:
            async with sem:
                signals = await self.analyze_one(sym, tf)
            for sig in signals:
                placed = await self._apply_signal(sig)
                if placed is not None:
                    landed.append(placed)

        log.info("signals_refresh_start pairs=%d", len(pairs))
        results = await asyncio.gather(*[_one(sym, tf) for sym, tf in pairs], return_exceptions=True)
        for (sym, tf), res in zip(pairs, results):
            if isinstance(res, Exception):
                self._metrics["analyses_failed"] += 1
                log.error("analysis_crashed symbol=%s tf=%s err=%r", sym, tf, res)
        self.last_signals_refresh_ms = _now_ms()
        log.info("signals_refresh_done pairs=%d landed=%d board=%d", len(pairs), len(landed), len(self.board))
        return landed

    async def _apply_signal(self, sig: Signal) -> Optional[Signal]:
        key: BoardKey = (sig.symbol, sig.timeframe, sig.type)
        now = _now_ms()
        existing = self.board.get(key)
        stale = existing is not None and now - self._board_seen_ms.get(key, 0) > self.cfg.schedule.board_ttl_s * 1000
        if existing is not None and sig.strength <= existing.strength and not stale:
            return None

        self.board[key] = sig
        self._board_seen_ms[key] = now
        self._metrics["signals_total"] += 1
        log.info("signal %s %s %s strength=%.1f price=%s tp=%s sl=%s", sig.symbol, sig.timeframe, sig.type, sig.strength, sig.price, sig.tp, sig.sl)

        if sig.strength >= self.cfg.testing.auto_test_threshold:
            await self.promote(sig, auto=True)
        return self.board[key]

    def filtered_signals(self, *, min_strength: Optional[float] = None, type: Optional[str] = None, symbol: Optional[str] = None) -> List[Signal]:
        out = [
            s for s in self.board.values()
            if (min_strength is None or s.strength >= min_strength)
            and (type is None or s.type == type)
            and (symbol is None or s.symbol == symbol)
        ]
        out.sort(key=lambda s: s.strength, reverse=True)
        return out

    async def quick_scan_all(self) -> List[Signal]:
        """Lightweight scan of every pair. Nothing lands on the board or in the store."""
        if not self.symbols:
            await self.refresh_symbols()
        pairs = [(sym, tf) for sym in self.symbols for tf in self.cfg.provider.timeframes]
        sem = asyncio.Semaphore(max(1, int(self.cfg.provider.analysis_concurrency)))

        async def _one(sym: str, tf: str) -> List[Signal]:
            async with sem:
                try:
                    candles = await self.provider.fetch_candles(sym, tf, self.cfg.provider.candle_limit)
                except UpstreamError as e:
                    log.warning("quick_scan_failed symbol=%s tf=%s err=%s", sym, tf, e)
                    return []
            return quick_scan(candles, sym, tf)

        results = await asyncio.gather(*[_one(sym, tf) for sym, tf in pairs])
        out = [sig for sigs in results for sig in sigs]
        out.sort(key=lambda s: s.strength, reverse=True)
        return out

    # Tests ------------------------------------------------------------------

    async def promote(self, sig: Signal, *, auto: bool = False) -> PromotionResult:
        t = self.cfg.testing
        window_min = t.auto_dedup_window_min if auto else t.manual_dedup_window_min
        test = new_test(sig, position_size=t.position_size, auto=auto)
        res = await self.store.add_if_unique(test, window_s=int(window_min) * 60, price_tolerance=t.price_tolerance)
        if not res.created:
            self._metrics["tests_duplicate"] += 1
            log.info("promotion_skipped_duplicate symbol=%s type=%s strength=%.1f auto=%s", sig.symbol, sig.type, sig.strength, auto)
            return res

        self._metrics["tests_created"] += 1
        key: BoardKey = (sig.symbol, sig.timeframe, sig.type)
        if key in self.board:
            self.board[key] = dataclasses.replace(self.board[key], test_id=res.test.id)
        log.info("promotion_created id=%s symbol=%s type=%s strength=%.1f auto=%s", res.test.id, sig.symbol, sig.type, sig.strength, auto)
        return res

    async def _prices_for(self, symbols: List[str]) -> Dict[str, float]:
        prices: Dict[str, float] = {}
        for sym in symbols:
            try:
                prices[sym] = await self.provider.fetch_last_price(sym)
            except UpstreamError as e:
                log.warning("price_fetch_failed symbol=%s err=%s", sym, e)
        return prices

    async def apply_prices(self, prices: Dict[str, float]) -> List[PaperTest]:
        """Evaluate active tests against ``prices``; returns tests that changed."""
        changed, _ = await self._apply_prices(prices)
        return changed

    async def _apply_prices(self, prices: Dict[str, float]) -> Tuple[List[PaperTest], Set[str]]:
        """Same as ``apply_prices``, plus the symbols still active afterwards."""
        tests = await self.store.load_tests()
        changed: List[PaperTest] = []
        active: Set[str] = set()
        for t in tests:
            if not t.is_active:
                continue
            if t.symbol not in prices:
                active.add(t.symbol)
                continue
            new = evaluate_test(t, prices[t.symbol])
            if new.is_active:
                active.add(new.symbol)
            if new == t:
                continue
            changed.append(new)
            if not new.is_active:
                self._metrics["tests_closed"] += 1
                log.info(
                    "test_closed id=%s symbol=%s type=%s status=%s final_price=%s pnl=%.4f",
                    new.id, new.symbol, new.type, new.status, new.final_price, new.final_pnl or 0.0,
                )
        if changed:
            await self.store.update_tests(changed)
        return changed, active

    async def check_active_tests(self) -> List[PaperTest]:
        tests = await self.store.load_tests()
        symbols = sorted({t.symbol for t in tests if t.is_active})
        if not symbols:
            return []
        prices = await self._prices_for(symbols)
        return await self.apply_prices(prices)

    async def _monitor_stream(self) -> None:
        while True:
            tests = await self.store.load_tests()
            symbols = sorted({t.symbol for t in tests if t.is_active})
            if not symbols:
                await asyncio.sleep(self.cfg.schedule.monitor_interval_s)
                continue
            # resubscribe whenever the active set changes
            ticks = self.provider.stream_prices(symbols)
            try:
                async for tick in ticks:
                    _, active = await self._apply_prices({tick.symbol: tick.price})
                    if active != set(symbols):
                        break
            finally:
                await ticks.aclose()

    # Scheduling -------------------------------------------------------------

    async def _every(self, interval_s: float, fn: Callable[[], Awaitable[object]], name: str) -> None:
        while True:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("periodic_task_failed task=%s", name)
            await asyncio.sleep(interval_s)

    async def run_forever(self) -> None:
        s = self.cfg.schedule
        await self.refresh_symbols()
        if not self.symbols:
            raise ValueError("No symbols available to analyze.")
        if not self.cfg.provider.timeframes:
            raise ValueError("No timeframes configured.")

        tasks = [
            asyncio.create_task(self._every(s.signals_refresh_s, self.refresh_signals, "signals")),
            asyncio.create_task(self._every(s.symbols_refresh_s, self._delayed_symbols_refresh(), "symbols")),
        ]
        if s.monitor_mode == "stream":
            tasks.append(asyncio.create_task(self._every(s.monitor_interval_s, self._monitor_stream, "monitor")))
        else:
            tasks.append(asyncio.create_task(self._every(s.monitor_interval_s, self.check_active_tests, "monitor")))
        try:
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                t.cancel()

    def _delayed_symbols_refresh(self) -> Callable[[], Awaitable[object]]:
        # the first refresh already happened in run_forever
        first = True

        async def _run() -> object:
            nonlocal first
            if first:
                first = False
                return None
            return await self.refresh_symbols()

        return _run
