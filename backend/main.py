"""
Job runner: executes a single engine job and exits.

    python main.py execute-pending
    python main.py execute <decision_id>
    python main.py update-pnl
    python main.py auto-close
    python main.py monitor-sltp
    python main.py close-all <user_id>
    python main.py repair <user_id> [--refresh-prices]
"""
import argparse
import asyncio
import logging

from core.alerts import build_notifier
from core.database import init_db
from trading_interface.execution.agent import ExecutionEngine
from trading_interface.execution.monitor import AutoCloseMonitor
from trading_interface.market.context import MarketContextProvider, build_price_feed
from trading_interface.reconciliation.job import PortfolioRepairWorker

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AI decision execution engine jobs")
    sub = parser.add_subparsers(dest="job", required=True)
    sub.add_parser("execute-pending")
    execute = sub.add_parser("execute")
    execute.add_argument("decision_id", type=int)
    sub.add_parser("update-pnl")
    sub.add_parser("auto-close")
    sub.add_parser("monitor-sltp")
    close_all = sub.add_parser("close-all")
    close_all.add_argument("user_id", type=int)
    close_all.add_argument("--reason", default="Emergency Close All")
    repair = sub.add_parser("repair")
    repair.add_argument("user_id", type=int)
    repair.add_argument("--refresh-prices", action="store_true")
    return parser


async def run_job(args) -> object:
    init_db()
    feed = build_price_feed()
    market = MarketContextProvider(feed)
    notifier = build_notifier()
    try:
        if args.job == "execute-pending":
            return await ExecutionEngine(market, notifier).execute_pending_decisions()
        if args.job == "execute":
            return await ExecutionEngine(market, notifier).execute_decision(args.decision_id)

        monitor = AutoCloseMonitor(market, notifier)
        if args.job == "update-pnl":
            return await monitor.update_all_floating_pnl()
        if args.job == "auto-close":
            return await monitor.auto_close_positions()
        if args.job == "monitor-sltp":
            return await monitor.monitor_sltp()
        if args.job == "close-all":
            return await monitor.close_all_positions(args.user_id, args.reason)
        if args.job == "repair":
            return await PortfolioRepairWorker(market).repair_portfolio_data(
                args.user_id, refresh_prices=args.refresh_prices
            )
    finally:
        await feed.aclose()


if __name__ == "__main__":
    result = asyncio.run(run_job(build_parser().parse_args()))
    logging.info(f"--- JOB RESULT: {result} ---")
