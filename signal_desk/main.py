from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from .config import load_config
from .formatters import export_tests_csv, format_signal_line, format_stats, format_test_line
from .lifecycle import summarize
from .replay import replay
from .runner import SignalDesk

log = logging.getLogger("main")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Signal Desk - crypto signal scanner and paper-test tracker")
    p.add_argument("--config", default=None, help="Path to YAML config (defaults apply when omitted)")
    sub = p.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the scheduler: signals, symbol universe and active-test monitor")

    scan = sub.add_parser("scan", help="Run one signal refresh and print the board")
    scan.add_argument("--min-strength", type=float, default=None)
    scan.add_argument("--type", choices=("long", "short"), default=None)
    scan.add_argument("--quick", action="store_true", help="Lightweight MA-convergence scan; no board, no tests")
    scan.add_argument("--json", action="store_true", help="Print signals as JSON records")

    tests = sub.add_parser("tests", help="Print paper tests and statistics")
    tests.add_argument("--export", metavar="PATH", default=None, help="Write the tests to a CSV file")
    tests.add_argument("--delete", metavar="ID", default=None, help="Delete one test by id")

    rp = sub.add_parser("replay", help="Replay the analyzer over recent candles of one symbol")
    rp.add_argument("--symbol", required=True)
    rp.add_argument("--timeframe", default="15m")
    rp.add_argument("--limit", type=int, default=500)
    return p


async def _scan(desk: SignalDesk, args) -> None:
    if args.quick:
        signals = [
            s for s in await desk.quick_scan_all()
            if (args.min_strength is None or s.strength >= args.min_strength)
            and (args.type is None or s.type == args.type)
        ]
    else:
        await desk.refresh_signals()
        signals = desk.filtered_signals(min_strength=args.min_strength, type=args.type)
    if args.json:
        print(json.dumps([s.to_dict() for s in signals], indent=2))
        return
    for sig in signals:
        print(format_signal_line(sig))
    print(f"{len(signals)} signal(s)")


async def _tests(desk: SignalDesk, args) -> None:
    if args.delete:
        if await desk.store.delete_test(args.delete):
            print(f"deleted test {args.delete}")
        else:
            print(f"no test with id {args.delete}")
    tests = await desk.store.load_tests()
    for t in tests:
        print(format_test_line(t))
    print(format_stats(summarize(tests)))
    if args.export:
        n = export_tests_csv(tests, args.export)
        print(f"exported {n} test(s) to {args.export}")


async def _replay(desk: SignalDesk, args) -> None:
    candles = await desk.provider.fetch_candles(args.symbol.upper(), args.timeframe, args.limit)
    report = replay(
        candles,
        args.symbol.upper(),
        args.timeframe,
        desk.analyzer,
        position_size=desk.cfg.testing.position_size,
        window_s=desk.cfg.testing.auto_dedup_window_min * 60,
        price_tolerance=desk.cfg.testing.price_tolerance,
    )
    for t in report.tests:
        print(format_test_line(t, now_s=candles[-1].time // 1000 if candles else None))
    print(f"bars={report.bars} signals={len(report.signals)}")
    print(format_stats(report.stats))


def main(argv=None) -> int:
    args = _parser().parse_args(argv)
    command = args.command or "run"

    cfg = load_config(args.config)
    _setup_logging(cfg.app.log_level)

    desk = SignalDesk(cfg)

    async def _run() -> None:
        try:
            if command == "scan":
                await _scan(desk, args)
            elif command == "tests":
                await _tests(desk, args)
            elif command == "replay":
                await _replay(desk, args)
            else:
                await desk.run_forever()
        finally:
            # Close shared REST session cleanly.
            await desk.provider.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
