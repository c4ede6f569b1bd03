from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os
import yaml

from .providers.binance import DEFAULT_EXCLUDE, LEVERAGED_FRAGMENTS
from .scoring import ANALYZER_MIN_STRENGTH, AUTO_TEST_MIN_STRENGTH


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class AppConfig:
    name: str = "Signal Desk"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "spot"  # spot|futures
    quote_asset: str = "USDT"
    min_quote_volume: float = 1_000_000.0
    max_symbols: int = 50
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    exclude_fragments: List[str] = field(default_factory=lambda: list(LEVERAGED_FRAGMENTS))
    symbols: Optional[List[str]] = None  # fixed list; None = ranked universe
    timeframes: List[str] = field(default_factory=lambda: ["1m", "5m", "15m", "30m", "1h", "4h", "1d"])
    candle_limit: int = 100
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20
    analysis_concurrency: int = 10


@dataclass
class AnalyzerConfig:
    min_candles: int = 30
    min_strength: float = ANALYZER_MIN_STRENGTH
    min_risk_reward: float = 1.5
    ema_fast: int = 9
    ema_slow: int = 20
    rsi_period: int = 14
    atr_period: int = 14
    adx_period: int = 14
    volume_period: int = 10
    bb_period: int = 20
    bb_k: float = 2.0
    stoch_period: int = 14
    volume_surge: float = 1.1
    adx_min: float = 15.0
    ema_tolerance: float = 0.01
    macd_threshold: float = 0.002


@dataclass
class RiskConfig:
    min_risk_reward: float = 1.5
    max_iterations: int = 50
    fallback_tp_pct: float = 0.02
    fallback_sl_pct: float = 0.01

    def kwargs(self) -> Dict[str, object]:
        return {
            "min_risk_reward": self.min_risk_reward,
            "max_iterations": self.max_iterations,
            "fallback_tp_pct": self.fallback_tp_pct,
            "fallback_sl_pct": self.fallback_sl_pct,
        }


@dataclass
class TestingConfig:
    auto_test_threshold: float = AUTO_TEST_MIN_STRENGTH
    position_size: float = 10.0
    manual_dedup_window_min: int = 5
    auto_dedup_window_min: int = 240
    price_tolerance: float = 0.01
    store_path: str = "tests.json"

    __test__ = False


@dataclass
class ScheduleConfig:
    signals_refresh_s: int = 60
    symbols_refresh_s: int = 900
    monitor_interval_s: int = 3
    monitor_mode: str = "poll"  # poll | stream
    board_ttl_s: int = 60


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)


def build_config(raw: Dict[str, Any]) -> Config:
    raw = raw or {}
    cfg = Config(
        app=AppConfig(**(raw.get("app") or {})),
        provider=ProviderConfig(**(raw.get("provider") or {})),
        analyzer=AnalyzerConfig(**(raw.get("analyzer") or {})),
        risk=RiskConfig(**(raw.get("risk") or {})),
        testing=TestingConfig(**(raw.get("testing") or {})),
        schedule=ScheduleConfig(**(raw.get("schedule") or {})),
    )

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "SIGNAL_DESK_LOG_LEVEL")
    cfg.testing.store_path = _env_override(cfg.testing.store_path, "SIGNAL_DESK_STORE_PATH")

    # Allow SIGNAL_DESK_SYMBOLS="BTCUSDT,ETHUSDT"
    sym_env = os.getenv("SIGNAL_DESK_SYMBOLS")
    if sym_env:
        cfg.provider.symbols = [x.strip().upper() for x in sym_env.split(",") if x.strip()]
    elif cfg.provider.symbols is not None:
        cfg.provider.symbols = [str(s).strip().upper() for s in cfg.provider.symbols if str(s).strip()]

    if cfg.schedule.monitor_mode not in ("poll", "stream"):
        raise ValueError(f"schedule.monitor_mode must be poll or stream, got {cfg.schedule.monitor_mode!r}")
    if cfg.testing.auto_test_threshold < cfg.analyzer.min_strength:
        raise ValueError("testing.auto_test_threshold must not be below analyzer.min_strength")
    return cfg


def load_config(path: Optional[str]) -> Config:
    if not path:
        return build_config({})
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return build_config(raw)
