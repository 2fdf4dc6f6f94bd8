#!/usr/bin/env python3
import asyncio
import logging
import sys
from datetime import datetime

import aiohttp
from telegram import Bot
from telegram.error import TelegramError

import constants
from analysis.analyzer import OpportunityAnalyzer
from config import AppConfig, build_cost_model, build_pairs, build_venues, load_config
from detector import OpportunityDetector, print_opportunity
from services.execution_trigger import ExecutionTrigger, Web3ContractSubmitter
from services.ledger_client import LedgerClient, LedgerRPCError
from services.quote_service import QuoteService
from services.subscription_manager import SubscriptionFailedError, SubscriptionManager
from services.telegram_notifier import TelegramNotifier
from storage import SQLiteRepository

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def configure_logging(level: str) -> logging.Logger:
    """Installs the console handler and returns the application's root logger."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # httpx logs every Telegram request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("arbitrage")


def _build_submitter(config: AppConfig, logger: logging.Logger) -> Web3ContractSubmitter:
    try:
        submitter = Web3ContractSubmitter(
            config.rpc_url,
            config.trading_private_key,
            config.executor_address,
            chain_id=config.chain_id,
            gas_limit=config.gas_limit,
            logger=logger,
        )
    except Exception as exc:
        print(f"{constants.C_RED}Failed to initialise executor: {exc}{constants.C_RESET}")
        exit(1)
    print("Execution trigger initialised.")
    return submitter


async def _start_notifier(config: AppConfig, logger: logging.Logger) -> TelegramNotifier | None:
    if not config.telegram_enabled:
        print("Telegram is not configured. Opportunities are only printed and stored.")
        return None
    bot = Bot(config.telegram_bot_token)
    try:
        await bot.initialize()
    except TelegramError as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to reach Telegram ({exc})."
            f" Continuing; sends will be retried per message.{constants.C_RESET}"
        )
    return TelegramNotifier(bot, config.telegram_chat_id, logger=logger)


async def run_monitor(config: AppConfig, logger: logging.Logger) -> int:
    """Runs detection until interrupted; returns the process exit status."""
    venues = build_venues()
    pairs = build_pairs(config.pairs)
    submitter = _build_submitter(config, logger.getChild("executor")) if config.auto_trade else None

    repository = SQLiteRepository(config.db_path)
    session = aiohttp.ClientSession(headers={'User-Agent': 'FlashArbMonitor/1.0'})
    ledger_client = LedgerClient(
        session,
        rpc_url=config.rpc_url,
        ws_url=config.ws_rpc_url,
        timeout=config.rpc_timeout,
        logger=logger.getChild("ledger"),
    )
    detector = OpportunityDetector(
        QuoteService(ledger_client, logger=logger.getChild("quotes")),
        OpportunityAnalyzer(build_cost_model(config), trade_size=config.trade_size),
        venues,
        pairs,
        interval=config.interval,
        logger=logger.getChild("detector"),
    )
    detector.add_handler(print_opportunity)
    detector.add_handler(repository.record_opportunity)

    notifier = await _start_notifier(config, logger.getChild("telegram"))
    if notifier is not None:
        detector.add_handler(notifier.notify_opportunity)

    trigger = None
    if submitter is not None:
        trigger = ExecutionTrigger(
            submitter,
            min_profit_bps=config.min_profit_bps,
            logger=logger.getChild("trigger"),
        )
        trigger.add_result_handler(repository.record_execution_result)
        if notifier is not None:
            trigger.add_result_handler(notifier.notify_result)
        detector.add_handler(trigger.submit)

    subscriptions = SubscriptionManager(
        ledger_client,
        venues,
        pairs,
        detector.notify,
        base_interval=config.reconnect_interval,
        max_attempts=config.max_reconnect_attempts,
        logger=logger.getChild("subscriptions"),
    )

    exit_code = 0
    try:
        await subscriptions.start()
        detector.start()
        await subscriptions.run()
    except SubscriptionFailedError as exc:
        logger.critical("%s", exc)
        exit_code = 1
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, LedgerRPCError) as exc:
        logger.critical("Could not open the subscription channel: %s", exc)
        exit_code = 1
    finally:
        await detector.close()
        await subscriptions.close()
        if trigger is not None:
            await trigger.close()
        if notifier is not None:
            await notifier.bot.shutdown()
        await session.close()
        await repository.close()
    return exit_code


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logger = configure_logging(config.log_level)

    if config.show_history:
        repository = SQLiteRepository(config.db_path)
        try:
            records = asyncio.run(repository.fetch_history(limit=config.history_limit))
        finally:
            asyncio.run(repository.close())
        _print_history(records, config.history_limit)
        return

    venue_names = " and ".join(venue.name for venue in build_venues())
    print(f"{constants.C_CYAN}Watching {', '.join(config.pairs)} on {venue_names}{constants.C_RESET}")
    try:
        exit_code = asyncio.run(run_monitor(config, logger))
    except KeyboardInterrupt:
        print("\nShutting down...")
        exit_code = 0
    sys.exit(exit_code)


def _print_history(records: list[dict], limit: int) -> None:
    heading = f"Showing up to {limit} detected opportunities"
    print(heading)
    print("=" * len(heading))

    if not records:
        print("No opportunities recorded.")
        return

    headers = [
        "Time (UTC)",
        "Pair",
        "Buy",
        "Sell",
        "Buy Price",
        "Sell Price",
        "Spread %",
        "Profit %",
        "Outcome",
    ]

    def _format_outcome(record: dict) -> str:
        executed = record.get("executed")
        if executed is None:
            return "-"
        if executed:
            profit = record.get("profit")
            return f"Executed ({profit})" if profit else "Executed"
        return f"Reverted: {record.get('reason') or 'unknown'}"

    def _format_row(record: dict) -> list[str]:
        detected_at: datetime = record.get("detected_at")
        time_str = detected_at.strftime("%Y-%m-%d %H:%M:%S") if detected_at else "N/A"
        return [
            time_str,
            record.get("pair", ""),
            record.get("buy_venue", ""),
            record.get("sell_venue", ""),
            record.get("buy_price", ""),
            record.get("sell_price", ""),
            f"{record.get('price_divergence', 0.0) * 100:.4f}",
            f"{record.get('expected_profit_ratio', 0.0) * 100:.4f}",
            _format_outcome(record),
        ]

    rows = [_format_row(rec) for rec in records]
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


if __name__ == "__main__":
    main()
