from __future__ import annotations

import csv
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .lifecycle import TestStats, duration_text, pnl_percent, unrealized_pnl
from .models import LONG, PaperTest, Signal


def _fmt(val: Optional[float], spec: str, missing: str = "N/A") -> str:
    if val is None:
        return missing
    return format(val, spec)


def _fmt_s(ts_s: Optional[int]) -> str:
    if not ts_s:
        return "-"
    return datetime.fromtimestamp(ts_s, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def trend_label(strength: Optional[float]) -> str:
    if strength is None:
        return "N/A"
    if strength > 0.02:
        return "Strong"
    if strength < 0.005:
        return "Weak"
    return "Moderate"


def format_indicators(
    *,
    direction: str,
    rsi: Optional[float],
    macd: Optional[float],
    bb_favorable: bool,
    volume_increase: Optional[float],
    atr: Optional[float],
    risk_reward: Optional[float] = None,
    trend_strength: Optional[float] = None,
    adx: Optional[float] = None,
    stochastic: Optional[float] = None,
) -> Dict[str, str]:
    """Display strings for a signal's indicator readings (dashboard field names)."""
    return {
        "ema_trend": "Bullish Setup" if direction == LONG else "Bearish Setup",
        "rsi": _fmt(rsi, ".2f"),
        "macd": _fmt(macd, ".8f"),
        "bb_position": "Favorable" if bb_favorable else "Neutral",
        "volume": _fmt(volume_increase, ".2f") + ("x" if volume_increase is not None else ""),
        "atr": _fmt(atr, ".8f"),
        "risk_reward": _fmt(risk_reward, ".2f"),
        "trend": trend_label(trend_strength),
        "adx": _fmt(adx, ".2f"),
        "stochastic": _fmt(stochastic, ".2f"),
    }


def format_signal_line(sig: Signal) -> str:
    test = f" test={sig.test_id}" if sig.test_id else ""
    return (
        f"{sig.symbol:<12} {sig.timeframe:<4} {sig.type.upper():<5} "
        f"strength={sig.strength:5.1f} entry={sig.price:.8f} tp={sig.tp:.8f} sl={sig.sl:.8f} "
        f"rr={sig.indicators.get('risk_reward', 'N/A')}{test}"
    )


def format_test_line(test: PaperTest, now_s: Optional[int] = None) -> str:
    return (
        f"{test.id} {test.symbol:<12} {test.type.upper():<5} {test.status.upper():<9} "
        f"entry={test.entry_price:.8f} price={(test.final_price or test.current_price):.8f} "
        f"pnl=${unrealized_pnl(test):.2f} ({pnl_percent(test):+.2f}%) "
        f"age={duration_text(test, now_s)}"
    )


def format_stats(stats: TestStats) -> str:
    return (
        f"Total={stats.total} Active={stats.active} Completed={stats.completed} "
        f"Stopped={stats.stopped} Win/Loss={stats.wins}/{stats.losses} "
        f"WinRate={stats.win_rate:.2f}% TotalP/L=${stats.total_pnl:.2f}"
    )


EXPORT_COLUMNS = [
    "Date",
    "Symbol",
    "Type",
    "Status",
    "Entry Price",
    "Current/Final Price",
    "Take Profit",
    "Stop Loss",
    "P&L %",
    "P&L $",
    "Position Size",
    "Timeframe",
    "Duration",
]


def export_rows(tests: Iterable[PaperTest], now_s: Optional[int] = None) -> List[Dict[str, str]]:
    rows = []
    for t in tests:
        price = t.final_price if t.final_price is not None else t.current_price
        rows.append({
            "Date": _fmt_s(t.start_time),
            "Symbol": t.symbol,
            "Type": t.type.upper(),
            "Status": t.status.upper(),
            "Entry Price": f"{t.entry_price:.8f}",
            "Current/Final Price": f"{price:.8f}",
            "Take Profit": f"{t.tp:.8f}",
            "Stop Loss": f"{t.sl:.8f}",
            "P&L %": f"{pnl_percent(t):.2f}%",
            "P&L $": f"${unrealized_pnl(t):.2f}",
            "Position Size": f"${t.position_size:.2f}",
            "Timeframe": t.timeframe,
            "Duration": duration_text(t, now_s),
        })
    return rows


def export_tests_csv(tests: Iterable[PaperTest], path: str, now_s: Optional[int] = None) -> int:
    rows = export_rows(tests, now_s)
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
    return len(rows)
