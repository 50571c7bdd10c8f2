from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import asdict

import yaml

from .config import load_config
from .errors import EmptyAggregationInput, PatternScannerError
from .formatters import format_freshness, format_scan, to_json
from .performance import build_report, performance_summary
from .runner import PatternRunner, parse_day_ms


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _csv_list(s):
    return [x.strip() for x in s.split(",") if x.strip()] if s else None


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Pattern Scanner - chart pattern detection and backtesting")
    p.add_argument("--config", help="Path to YAML config")
    p.add_argument("--log-level", help="Override app.log_level")
    sub = p.add_subparsers(dest="command", required=True)

    def _common(sp):
        sp.add_argument("--symbols", type=_csv_list, help="Comma separated, overrides scan.symbols")
        sp.add_argument("--timeframes", type=_csv_list, help="Comma separated, overrides scan.timeframes")
        sp.add_argument("--json", action="store_true", help="Write a JSON summary instead of text")

    _common(sub.add_parser("scan", help="Detect patterns on the latest bars"))
    bt = sub.add_parser("backtest", help="Detect over history, replay every signal and aggregate")
    _common(bt)
    bt.add_argument("--from", dest="start", help="YYYY-MM-DD")
    bt.add_argument("--to", dest="end", help="YYYY-MM-DD")
    bt.add_argument("--calibrate-out", help="Write calibrated scoring adjustments to this YAML file")
    _common(sub.add_parser("live", help="Scan, then track signals on the live price stream"))
    return p


async def _scan(runner: PatternRunner, args) -> int:
    out = await runner.scan(args.symbols, args.timeframes)
    if args.json:
        sys.stdout.write(to_json({
            "signals": [s.to_dict() for s in out.signals],
            "failures": [{"symbol": s, "timeframe": tf, "error": e} for s, tf, e in out.failures],
            "freshness": {sym: f.to_dict() for sym, f in out.freshness.items()},
        }) + "\n")
    else:
        sys.stdout.write(format_scan(out.signals, [f"{s} {tf}: {e}" for s, tf, e in out.failures]))
        for sym, f in sorted(out.freshness.items()):
            sys.stdout.write(f"{sym}: {format_freshness(f)}\n")
    return 1 if out.failures else 0


async def _backtest(runner: PatternRunner, args) -> int:
    out = await runner.backtest(args.symbols, args.timeframes, parse_day_ms(args.start), parse_day_ms(args.end))
    try:
        report = build_report(out.results)
    except EmptyAggregationInput as e:
        logging.getLogger("main").error("backtest_empty signals=%d err=%s", out.signals, e)
        return 1

    if args.json:
        sys.stdout.write(to_json({
            "signals": out.signals,
            "report": report.to_dict(),
            "failures": [{"symbol": s, "timeframe": tf, "error": e} for s, tf, e in out.failures],
        }) + "\n")
    else:
        sys.stdout.write(performance_summary(out.results) + "\n")

    if args.calibrate_out and out.calibrated is not None:
        with open(args.calibrate_out, "w", encoding="utf-8") as f:
            yaml.safe_dump({"scoring": {"pattern_adjustments": asdict(out.calibrated)["pattern_adjustments"]}}, f)
    return 1 if out.failures else 0


async def _live(runner: PatternRunner, args) -> int:
    out = await runner.live(args.symbols, args.timeframes)
    sys.stdout.write(format_scan(out.signals))
    return 1 if out.failures else 0


_COMMANDS = {"scan": _scan, "backtest": _backtest, "live": _live}


def main(argv=None) -> int:
    args = _parser().parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(args.log_level or cfg.app.log_level)

    async def _run() -> int:
        runner = PatternRunner(cfg)
        try:
            return await _COMMANDS[args.command](runner, args)
        finally:
            # Close shared REST session cleanly.
            await runner.close()

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 0
    except (PatternScannerError, ValueError) as e:
        logging.getLogger("main").error("fatal err=%s", e)
        return 1
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
