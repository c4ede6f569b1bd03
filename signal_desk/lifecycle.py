from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .models import ACTIVE, COMPLETED, LONG, STOPPED, PaperTest, Signal

DEFAULT_POSITION_SIZE = 10.0


def _now_s() -> int:
    return int(time.time())


def new_test(signal: Signal, *, position_size: float = DEFAULT_POSITION_SIZE, now_s: Optional[int] = None, auto: bool = False) -> PaperTest:
    return PaperTest(
        id=uuid.uuid4().hex[:13],
        symbol=signal.symbol,
        timeframe=signal.timeframe,
        type=signal.type,
        entry_price=signal.price,
        current_price=signal.price,
        tp=signal.tp,
        sl=signal.sl,
        start_time=_now_s() if now_s is None else int(now_s),
        status=ACTIVE,
        position_size=position_size,
        strength=signal.strength,
        auto_tested=auto,
        indicators=dict(signal.indicators),
    )


def _pnl_at(test: PaperTest, price: float) -> float:
    diff = price - test.entry_price
    if test.type != LONG:
        diff = -diff
    return diff * test.quantity


def _mark_price(test: PaperTest) -> float:
    if not test.is_active and test.final_price is not None:
        return test.final_price
    return test.current_price


def unrealized_pnl(test: PaperTest) -> float:
    """Dollar P&L at the current price, or at the final price once the test closed."""
    return _pnl_at(test, _mark_price(test))


def pnl_percent(test: PaperTest) -> float:
    if not test.entry_price:
        return 0.0
    price = _mark_price(test)
    if test.type == LONG:
        return (price - test.entry_price) / test.entry_price * 100.0
    return (test.entry_price - price) / test.entry_price * 100.0


def evaluate_test(test: PaperTest, current_price: float, *, now_s: Optional[int] = None) -> PaperTest:
    """Apply one price tick; returns a new record and never mutates ``test``.

    Terminal tests come back unchanged. A touch of TP completes the test at the
    TP price, a touch of SL stops it at the SL price.
    """
    if not test.is_active:
        return test

    price = float(current_price)
    status = ACTIVE
    final_price: Optional[float] = None
    if test.type == LONG:
        if price >= test.tp:
            status, final_price = COMPLETED, test.tp
        elif price <= test.sl:
            status, final_price = STOPPED, test.sl
    else:
        if price <= test.tp:
            status, final_price = COMPLETED, test.tp
        elif price >= test.sl:
            status, final_price = STOPPED, test.sl

    if status == ACTIVE:
        return dataclasses.replace(test, current_price=price)

    return dataclasses.replace(
        test,
        current_price=price,
        status=status,
        final_price=final_price,
        end_time=_now_s() if now_s is None else int(now_s),
        final_pnl=_pnl_at(test, final_price),
    )


def is_duplicate(
    candidate: PaperTest,
    tests: Iterable[PaperTest],
    *,
    now_s: int,
    window_s: int,
    price_tolerance: float = 0.01,
) -> bool:
    """Same symbol and side while an active test exists, or a recent test entered at a nearby price."""
    for t in tests:
        if t.symbol != candidate.symbol or t.type != candidate.type:
            continue
        if t.is_active:
            return True
        recent = t.start_time > now_s - window_s
        near = candidate.entry_price > 0 and abs(t.entry_price - candidate.entry_price) / candidate.entry_price < price_tolerance
        if recent and near:
            return True
    return False


@dataclass(frozen=True)
class TestStats:
    total: int = 0
    active: int = 0
    completed: int = 0
    stopped: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        closed = self.wins + self.losses
        return (self.wins / closed * 100.0) if closed else 0.0


def summarize(tests: Sequence[PaperTest]) -> TestStats:
    counts = {ACTIVE: 0, COMPLETED: 0, STOPPED: 0}
    wins = losses = 0
    total_pnl = 0.0
    for t in tests:
        if t.status in counts:
            counts[t.status] += 1
        pnl = unrealized_pnl(t)
        total_pnl += pnl
        if not t.is_active:
            if pnl > 0:
                wins += 1
            elif pnl < 0:
                losses += 1
    return TestStats(
        total=len(tests),
        active=counts[ACTIVE],
        completed=counts[COMPLETED],
        stopped=counts[STOPPED],
        wins=wins,
        losses=losses,
        total_pnl=total_pnl,
    )


def duration_text(test: PaperTest, now_s: Optional[int] = None) -> str:
    end = test.end_time if test.end_time is not None else (_now_s() if now_s is None else now_s)
    secs = max(0, int(end) - int(test.start_time))
    return f"{secs // 3600}h {(secs % 3600) // 60}m"
