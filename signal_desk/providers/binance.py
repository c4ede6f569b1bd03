from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import aiohttp
import websockets

from ..errors import UpstreamError
from ..models import Candle

log = logging.getLogger("binance")

INTERVALS = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w")

DEFAULT_EXCLUDE = (
    "USDCUSDT", "BUSDUSDT", "TUSDUSDT", "USDPUSDT", "FDUSDUSDT",
    "USDTTRY", "USDTARS", "USDTBRL", "USDTBIDR", "USDTRUB",
    "USDTIDRT", "USDTUAH", "USDTGYEN", "USDTGBP", "USDTEUR",
    "USDTCOP", "TSTUSDT", "PNUTUSDT",
)
LEVERAGED_FRAGMENTS = ("UP", "DOWN", "BULL", "BEAR")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _klines_path(market: str) -> str:
    return "/fapi/v1/klines" if market == "futures" else "/api/v3/klines"


def _ticker_path(market: str) -> str:
    return "/fapi/v1/ticker/24hr" if market == "futures" else "/api/v3/ticker/24hr"


def _ws_url(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def normalize_interval(interval: str) -> str:
    """Unknown intervals fall back to 1m."""
    tf = (interval or "").strip()
    return tf if tf in INTERVALS else "1m"


def parse_klines(data: Any) -> List[Candle]:
    if not isinstance(data, list):
        raise UpstreamError(f"Malformed klines payload: {type(data).__name__}")
    out: List[Candle] = []
    try:
        for row in data:
            out.append(Candle(
                time=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
    except (IndexError, TypeError, ValueError) as e:
        raise UpstreamError(f"Malformed kline row: {e}") from e
    return out


def rank_symbols(
    tickers: Iterable[Dict[str, Any]],
    *,
    quote_asset: str = "USDT",
    min_volume: float = 1_000_000.0,
    exclude: Sequence[str] = DEFAULT_EXCLUDE,
    exclude_fragments: Sequence[str] = LEVERAGED_FRAGMENTS,
    limit: int = 50,
) -> List[str]:
    """Quote-asset pairs ranked by 24h quote volume, descending."""
    excluded = {s.upper() for s in exclude}
    picked = []
    for t in tickers:
        sym = str(t.get("symbol", "")).upper()
        if not sym.endswith(quote_asset.upper()) or sym in excluded:
            continue
        base = sym[: -len(quote_asset)]
        # leveraged tokens: BTCUP, BTCDOWN, ETHBULL, ETHBEAR
        if any(base.endswith(frag) and base != frag for frag in exclude_fragments):
            continue
        try:
            qv = float(t.get("quoteVolume") or 0.0)
        except (TypeError, ValueError):
            continue
        if qv < min_volume:
            continue
        picked.append((qv, sym))
    picked.sort(key=lambda x: x[0], reverse=True)
    return [sym for _, sym in picked[: max(0, int(limit))]]


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    event_time_ms: int


def parse_mini_ticker(msg: Any) -> Optional[PriceTick]:
    try:
        j = json.loads(msg) if isinstance(msg, (str, bytes)) else msg
    except ValueError:
        return None
    if not isinstance(j, dict):
        return None
    data = j.get("data") or j
    if not isinstance(data, dict) or data.get("e") != "24hrMiniTicker":
        return None
    try:
        return PriceTick(symbol=str(data["s"]).upper(), price=float(data["c"]), event_time_ms=int(data.get("E") or 0))
    except (KeyError, TypeError, ValueError):
        return None


class BinanceProvider:
    def __init__(
        self,
        market: str = "spot",
        *,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s

        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = _rest_base(self.market) + path
        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    if resp.status in (418, 429):
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s path=%s params=%s sleep=%.1fs body=%s",
                            resp.status,
                            path,
                            params,
                            sleep_s,
                            txt[:200],
                        )
                        last_err = UpstreamError("Binance rate limited", status=resp.status, body=txt)
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise UpstreamError(f"Binance API error: HTTP {resp.status}", status=resp.status, body=txt)

                    try:
                        # Some proxies return a wrong content-type; be tolerant.
                        return await resp.json(content_type=None)
                    except ValueError as e:
                        raise UpstreamError(f"Failed to decode Binance response: {e}", status=resp.status) from e

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d path=%s params=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    path,
                    params,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if isinstance(last_err, UpstreamError):
            raise last_err
        raise UpstreamError(f"Binance request failed: {last_err!r}") from last_err

    async def fetch_candles(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        params = {"symbol": symbol.upper(), "interval": normalize_interval(interval), "limit": int(limit)}
        data = await self._get_json(_klines_path(self.market), params)
        return parse_klines(data)

    async def fetch_last_price(self, symbol: str) -> float:
        candles = await self.fetch_candles(symbol, "1m", 1)
        if not candles:
            raise UpstreamError(f"No price for {symbol}")
        return candles[-1].close

    async def fetch_tickers(self) -> List[Dict[str, Any]]:
        data = await self._get_json(_ticker_path(self.market))
        if not isinstance(data, list):
            raise UpstreamError("Invalid response from Binance ticker")
        return data

    async def top_symbols(
        self,
        quote_asset: str = "USDT",
        min_volume: float = 1_000_000.0,
        exclude: Sequence[str] = DEFAULT_EXCLUDE,
        exclude_fragments: Sequence[str] = LEVERAGED_FRAGMENTS,
        limit: int = 50,
    ) -> List[str]:
        tickers = await self.fetch_tickers()
        return rank_symbols(
            tickers,
            quote_asset=quote_asset,
            min_volume=min_volume,
            exclude=exclude,
            exclude_fragments=exclude_fragments,
            limit=min(int(limit), 50),
        )

    async def stream_prices(self, symbols: Sequence[str]) -> AsyncIterator[PriceTick]:
        """Yields last-price ticks for ``symbols``. Auto-reconnects."""
        streams = [f"{s.lower()}@miniTicker" for s in symbols]
        sub_msg = {"method": "SUBSCRIBE", "params": streams, "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    _ws_url(self.market),
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed streams=%d market=%s", len(streams), self.market)
                    async for msg in ws:
                        tick = parse_mini_ticker(msg)
                        if tick is not None:
                            yield tick
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
