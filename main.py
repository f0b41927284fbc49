"""Entry point for autotrader."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional

import nest_asyncio
import pandas as pd

# Apply nest_asyncio to allow nested event loops (required for ib_insync)
nest_asyncio.apply()

from autotrader.config import Settings
from autotrader.data.broker import BrokerGateway
from autotrader.data.models import Bar
from autotrader.data.paper import PaperBrokerGateway
from autotrader.execution.trading_engine import EngineContext, TradingEngine
from autotrader.utils.logger import configure_logging, logger
from autotrader.utils.settings_loader import load_settings


def load_bar_csv(path: Path) -> List[Bar]:
    """Bars from a CSV with symbol, timestamp, open, high, low, close and volume columns."""
    frame = pd.read_csv(path)
    return [Bar.from_payload(str(row["symbol"]), row) for row in frame.to_dict("records")]


async def build_broker(settings: Settings, paper: bool, bars: Optional[Path]) -> BrokerGateway:
    if paper or settings.broker.backend == "paper":
        broker = PaperBrokerGateway(starting_cash=settings.broker.paper_starting_cash)
        if bars is not None:
            broker.load_bars(load_bar_csv(bars))
        else:
            logger.warning("Paper broker started without --bars; no market data until bars are pushed")
        return broker

    from ib_insync import IB

    from autotrader.data.ibkr import IBKRBrokerGateway

    cfg = settings.broker
    broker = IBKRBrokerGateway(
        IB(),
        host=cfg.ibkr_host,
        port=cfg.ibkr_port,
        client_id=cfg.ibkr_client_id,
        exchange=cfg.exchange,
        currency=cfg.currency,
    )
    await broker.connect()
    return broker


async def run_live(settings: Settings, paper: bool, bars: Optional[Path]) -> None:
    broker = await build_broker(settings, paper, bars)
    context = EngineContext.build(settings, broker, persist=True)
    engine = TradingEngine(context)
    try:
        await engine.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted; shutting down")
    finally:
        await engine.stop()
        if hasattr(broker, "disconnect"):
            broker.disconnect()


async def run_status(settings: Settings, paper: bool, bars: Optional[Path]) -> None:
    """One advisory decision pass: nothing is submitted."""
    settings.execution.auto_execute = False
    broker = await build_broker(settings, paper, bars)
    engine = TradingEngine(EngineContext.build(settings, broker))
    await engine.load_initial_data()
    await engine.check_daily_reset()
    decisions = await engine.run_decision_cycle()
    for decision in decisions:
        print(f"{'EXECUTE' if decision.should_execute else 'SKIP':8} {decision.reason}")
    print(json.dumps(engine.status(), indent=2, default=str))
    if hasattr(broker, "disconnect"):
        broker.disconnect()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Autonomous trading decision-and-execution pipeline")
    parser.add_argument("mode", choices=["live", "status"], help="Execution mode")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML config")
    parser.add_argument("--paper", action="store_true", help="Use the in-memory paper broker")
    parser.add_argument("--bars", type=Path, default=None, help="CSV of historical bars for the paper broker")
    parser.add_argument("--symbols", nargs="+", default=None, help="Override the configured watchlist")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args.config)
    if args.symbols:
        settings.scheduler.watchlist = [s.upper() for s in args.symbols]
    configure_logging(settings.logging.log_file, settings.logging.level, settings.logging.serialize)
    if args.mode == "live":
        asyncio.run(run_live(settings, args.paper, args.bars))
    elif args.mode == "status":
        asyncio.run(run_status(settings, args.paper, args.bars))


if __name__ == "__main__":
    main()
