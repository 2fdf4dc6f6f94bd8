#!/usr/bin/env python3
import os
import argparse
from decimal import Decimal, InvalidOperation
from typing import NamedTuple

import constants
from analysis.models import CostModel, Token, TradingPair, VenueDescriptor, VenueSide


class AppConfig(NamedTuple):
    """Typed configuration object."""
    pairs: list[str]
    rpc_url: str
    ws_rpc_url: str | None
    chain_id: int
    interval: float
    trade_size: Decimal
    dex_fee: float
    flash_loan_fee: float
    slippage: float
    min_profit_bps: int
    gas_limit: int
    reconnect_interval: float
    max_reconnect_attempts: int
    rpc_timeout: float
    auto_trade: bool
    executor_address: str | None
    trading_private_key: str | None
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    show_history: bool
    history_limit: int
    db_path: str
    log_level: str


def build_venues() -> list[VenueDescriptor]:
    """Builds the two venue descriptors in configuration order (A, then B)."""
    venues = []
    for side, (key, dex) in zip((VenueSide.A, VenueSide.B), constants.DEX_CONFIG.items()):
        venues.append(VenueDescriptor(
            key=key,
            name=dex['name'],
            side=side,
            router_address=dex['routerAddress'],
            factory_address=dex['factoryAddress'],
        ))
    return venues


def build_pairs(names: list[str] | None = None) -> list[TradingPair]:
    """Builds the watched pairs, optionally restricted to ``names``."""
    wanted = {name.upper() for name in names} if names else None
    pairs = []
    for entry in constants.TOKEN_PAIRS:
        if wanted is not None and entry['name'].upper() not in wanted:
            continue
        pairs.append(TradingPair(
            name=entry['name'],
            base_token=Token(**entry['baseToken']),
            quote_token=Token(**entry['quoteToken']),
        ))
    return pairs


def build_cost_model(config: AppConfig) -> CostModel:
    return CostModel(
        dex_fee=config.dex_fee,
        flash_loan_fee=config.flash_loan_fee,
        slippage_buffer=config.slippage,
    )


def _decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {value!r}")
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be positive")
    return parsed


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    pair_names = [entry['name'] for entry in constants.TOKEN_PAIRS]
    parser = argparse.ArgumentParser(
        description="Monitor two DEXs for flash-loan arbitrage opportunities and optionally execute them.",
        epilog="Example: WS_RPC_URL=wss://... ./main.py --pair BNB/USD --interval 2 --telegram-enabled"
    )
    parser.add_argument('--pair', nargs='+', choices=pair_names, help='One or more pairs to watch (default: all configured pairs).')
    parser.add_argument('--interval', type=float, default=constants.DEFAULT_POLL_INTERVAL, help='Seconds between timer-driven detection cycles (default: 1.0).')
    parser.add_argument('--trade-size', type=_decimal, default=Decimal(1), help='Flash loan size in whole base tokens (default: 1).')
    parser.add_argument('--dex-fee', type=float, default=constants.DEFAULT_DEX_FEE, help='Per-venue swap fee as a ratio (default: 0.0025).')
    parser.add_argument('--flash-loan-fee', type=float, default=constants.DEFAULT_FLASH_LOAN_FEE, help='Flash loan premium as a ratio (default: 0.0009).')
    parser.add_argument('--slippage', type=float, default=constants.DEFAULT_SLIPPAGE_BUFFER, help='Slippage buffer as a ratio (default: 0.01).')
    parser.add_argument('--min-profit-bps', type=int, default=constants.DEFAULT_MIN_PROFIT_BPS, help='Minimum on-chain profit in basis points (default: 10).')
    parser.add_argument('--gas-limit', type=int, default=constants.DEFAULT_GAS_LIMIT, help='Gas limit for execution transactions (default: 300000).')
    parser.add_argument('--reconnect-interval', type=float, default=constants.DEFAULT_RECONNECT_INTERVAL, help='Base reconnect backoff in seconds (default: 5.0).')
    parser.add_argument('--max-reconnect-attempts', type=int, default=constants.DEFAULT_MAX_RECONNECT_ATTEMPTS, help='Reconnect attempts before giving up (default: 5).')
    parser.add_argument('--rpc-timeout', type=float, default=constants.DEFAULT_RPC_TIMEOUT, help='Timeout in seconds for JSON-RPC requests (default: 8.0).')
    parser.add_argument('--auto-trade', action='store_true', help='Submit detected opportunities to the executor contract.')
    parser.add_argument('--executor-address', type=str, help='Address of the deployed flash arbitrage contract.')
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable Telegram notifications.')
    parser.add_argument('--show-history', action='store_true', help='Display recent opportunities and execution results and exit.')
    parser.add_argument('--history-limit', type=int, default=10, help='Number of history records to display (default: 10).')
    parser.add_argument('--db-path', type=str, default='data/arbitrage_history.db', help='SQLite database path (default: data/arbitrage_history.db).')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default='INFO', help='Logging level (default: INFO).')

    args = parser.parse_args()

    # Load from environment
    rpc_url = os.environ.get(constants.RPC_URL_ENV_VAR) or constants.DEFAULT_RPC_URL
    ws_rpc_url = os.environ.get(constants.WS_RPC_URL_ENV_VAR)
    chain_id_env = os.environ.get(constants.CHAIN_ID_ENV_VAR)
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    trading_private_key = os.environ.get(constants.TRADING_PRIVATE_KEY_ENV_VAR)

    chain_id = constants.DEFAULT_CHAIN_ID
    if chain_id_env:
        try:
            chain_id = int(chain_id_env)
        except ValueError:
            print(f"{constants.C_RED}{constants.CHAIN_ID_ENV_VAR} must be an integer, got {chain_id_env!r}.{constants.C_RESET}")
            exit(1)

    if not ws_rpc_url and not args.show_history:
        print(f"{constants.C_RED}{constants.WS_RPC_URL_ENV_VAR} environment variable not set; a WebSocket endpoint is required for event subscriptions.{constants.C_RESET}")
        exit(1)

    if args.min_profit_bps <= 0:
        print(f"{constants.C_RED}--min-profit-bps must be greater than zero.{constants.C_RESET}")
        exit(1)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    if args.auto_trade:
        if not args.executor_address:
            print(f"{constants.C_RED}--auto-trade requires --executor-address to be specified.{constants.C_RESET}")
            exit(1)
        if not trading_private_key:
            print(f"{constants.C_RED}{constants.TRADING_PRIVATE_KEY_ENV_VAR} environment variable not set; required for --auto-trade.{constants.C_RESET}")
            exit(1)

    return AppConfig(
        pairs=args.pair or pair_names,
        rpc_url=rpc_url,
        ws_rpc_url=ws_rpc_url,
        chain_id=chain_id,
        interval=args.interval,
        trade_size=args.trade_size,
        dex_fee=args.dex_fee,
        flash_loan_fee=args.flash_loan_fee,
        slippage=args.slippage,
        min_profit_bps=args.min_profit_bps,
        gas_limit=args.gas_limit,
        reconnect_interval=args.reconnect_interval,
        max_reconnect_attempts=args.max_reconnect_attempts,
        rpc_timeout=args.rpc_timeout,
        auto_trade=args.auto_trade,
        executor_address=args.executor_address,
        trading_private_key=trading_private_key,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        show_history=args.show_history,
        history_limit=args.history_limit,
        db_path=args.db_path,
        log_level=args.log_level,
    )
