from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict

from .config import AppConfig, load_config
from .engine import AlertEngine
from .panel import PanelView
from .sink import ConsoleSink, FanoutSink, JsonStateSink, render_popup_text
from .tone import NullTone

log = logging.getLogger("bloodalert")


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _build_sink(cfg: AppConfig) -> FanoutSink:
    sinks = [ConsoleSink()]
    if cfg.paths.state_file:
        sinks.append(JsonStateSink(cfg.paths.state_file))  # type: ignore[arg-type]
    return FanoutSink(sinks)


async def _run(cfg: AppConfig) -> int:
    engine = AlertEngine(cfg, sink=_build_sink(cfg))
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # no signal handlers on this platform; Ctrl-C still ends asyncio.run
            pass

    await engine.run_forever(stop)
    return 0


async def _check(cfg: AppConfig) -> int:
    """One emergency poll; prints the popup that would open."""
    engine = AlertEngine(cfg, sink=ConsoleSink(), tone=NullTone())
    try:
        await engine.check_emergencies()
        if engine.last_emergency_error:
            print(f"Emergency check failed: {engine.last_emergency_error}", file=sys.stderr)
            return 1
        if engine.popup.session is None:
            print("No new emergency requests.")
        return 0
    finally:
        await engine.aclose()


async def _urgent(cfg: AppConfig) -> int:
    """One foreground load of the urgent requests panel."""
    shown: list[PanelView] = []

    class _Last(ConsoleSink):
        def panel(self, view: PanelView) -> None:
            shown.append(view)
            super().panel(view)

    engine = AlertEngine(cfg, sink=_Last(), tone=NullTone())
    try:
        await engine.panel.mount()
        return 0 if shown and shown[-1].error is None else 1
    finally:
        await engine.aclose()


async def _all(cfg: AppConfig) -> int:
    """Print every active emergency request (the "see all" list)."""
    engine = AlertEngine(cfg, sink=ConsoleSink(), tone=NullTone())
    try:
        result = await engine.all_emergencies()
    finally:
        await engine.aclose()
    if not result.ok:
        print(f"Fetch failed: {result.error}", file=sys.stderr)
        return 1
    if not result.records:
        print("No emergency requests.")
    for rec in result.records:
        print(render_popup_text(rec))
        print()
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="bloodalert", description="Urgent blood request alert engine")
    ap.add_argument("--config", default=None, help="YAML config file (optional)")
    ap.add_argument("--log-level", default="INFO")
    sub = ap.add_subparsers(dest="command")
    sub.add_parser("run", help="poll both feeds until interrupted (default)")
    sub.add_parser("check", help="run one emergency check and print the popup it would show")
    sub.add_parser("urgent", help="load and print the urgent requests panel once")
    sub.add_parser("all", help="print every active emergency request")
    sub.add_parser("config", help="print the effective configuration as JSON")
    args = ap.parse_args(argv)

    _setup_logging(args.log_level)
    cfg = load_config(args.config)

    cmd = args.command or "run"
    if cmd == "config":
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0
    if cmd == "check":
        return asyncio.run(_check(cfg))
    if cmd == "all":
        return asyncio.run(_all(cfg))
    if cmd == "urgent":
        return asyncio.run(_urgent(cfg))
    return asyncio.run(_run(cfg))


if __name__ == "__main__":
    raise SystemExit(main())
