from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


LONG = "long"
SHORT = "short"

ACTIVE = "active"
COMPLETED = "completed"
STOPPED = "stopped"


@dataclass(frozen=True)
class Candle:
    time: int  # open time, epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class BollingerBand:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class Macd:
    """Right-aligned MACD series: the last element of each list belongs to the last input value."""
    macd_line: List[float]
    signal_line: List[float]
    histogram: List[float]


@dataclass(frozen=True)
class FairValueGap:
    start: float
    end: float
    index: int  # middle bar of the triple
    direction: str = "bullish"

    def contains(self, price: float) -> bool:
        return self.start <= price <= self.end


@dataclass(frozen=True)
class TpSl:
    tp: float
    sl: float
    fallback: bool = False


@dataclass(frozen=True)
class Signal:
    type: str  # long or short
    symbol: str
    timeframe: str
    price: float
    tp: float
    sl: float
    time: int  # candle open time, epoch ms
    strength: float
    strategy: str
    indicators: Dict[str, str] = field(default_factory=dict)
    test_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["testId"] = d.pop("test_id")
        return d


@dataclass
class PaperTest:
    id: str
    symbol: str
    timeframe: str
    type: str
    entry_price: float
    current_price: float
    tp: float
    sl: float
    start_time: int  # epoch seconds
    status: str = ACTIVE
    position_size: float = 10.0
    final_price: Optional[float] = None
    end_time: Optional[int] = None
    final_pnl: Optional[float] = None
    strength: Optional[float] = None
    auto_tested: bool = False
    indicators: Dict[str, str] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def quantity(self) -> float:
        return self.position_size / self.entry_price if self.entry_price else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PaperTest":
        """Build from a stored record; raises KeyError/ValueError/TypeError on malformed input."""
        entry = float(raw["entry_price"])
        final_price = raw.get("final_price")
        end_time = raw.get("end_time")
        final_pnl = raw.get("final_pnl")
        strength = raw.get("strength")
        typ = str(raw["type"]).lower()
        if typ not in (LONG, SHORT):
            raise ValueError(f"unknown test type: {raw['type']}")
        return cls(
            id=str(raw["id"]),
            symbol=str(raw["symbol"]).upper(),
            timeframe=str(raw.get("timeframe") or ""),
            type=typ,
            entry_price=entry,
            current_price=float(raw.get("current_price") or entry),
            tp=float(raw["tp"]),
            sl=float(raw["sl"]),
            start_time=int(raw.get("start_time") or 0),
            status=str(raw.get("status") or ACTIVE),
            position_size=float(raw.get("position_size") or 10.0),
            final_price=float(final_price) if final_price is not None else None,
            end_time=int(end_time) if end_time is not None else None,
            final_pnl=float(final_pnl) if final_pnl is not None else None,
            strength=float(strength) if strength is not None else None,
            auto_tested=bool(raw.get("auto_tested", False)),
            indicators=dict(raw.get("indicators") or {}),
        )
