#!/usr/bin/env python3
from typing import Dict, List, Union

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_CYAN = '\033[96m'
C_RESET = '\033[0m'

# --- Environment Variable Names ---
RPC_URL_ENV_VAR = 'RPC_URL'
WS_RPC_URL_ENV_VAR = 'WS_RPC_URL'
CHAIN_ID_ENV_VAR = 'CHAIN_ID'
TRADING_PRIVATE_KEY_ENV_VAR = 'TRADING_PRIVATE_KEY'
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'

# --- Network Configuration (BSC mainnet) ---
DEFAULT_RPC_URL = 'https://bsc-dataseed.binance.org'
DEFAULT_CHAIN_ID = 56
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

# --- Venue Configuration ---
# The first entry is venue A, the second venue B.
DEX_CONFIG: Dict[str, Dict[str, str]] = {
    'pancakeswap': {
        'name': 'PancakeSwap',
        'routerAddress': '0x10ED43C718714eb63d5aA57B78B54704E256024E',
        'factoryAddress': '0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73',
    },
    'biswap': {
        'name': 'BiSwap',
        'routerAddress': '0x3a6d8cA21D1CF76F653A67577FA0D27453350dD8',
        'factoryAddress': '0x858E3312ed3A876947EA49d572A7C42DE08af7EE',
    },
}

# --- Watched Pairs ---
TOKEN_PAIRS: List[Dict[str, Union[str, Dict[str, Union[str, int]]]]] = [
    {
        'name': 'BNB/USD',
        'baseToken': {
            'address': '0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c',
            'symbol': 'BNB',
            'decimals': 18,
        },
        'quoteToken': {
            'address': '0x55d398326f99059ff775485246999027b3197955',
            'symbol': 'USD',
            'decimals': 18,
        },
    },
]

# --- Cost Model Defaults (conservative fixed estimates) ---
DEFAULT_DEX_FEE = 0.0025
DEFAULT_FLASH_LOAN_FEE = 0.0009
DEFAULT_SLIPPAGE_BUFFER = 0.01
PRICE_DISPLAY_DECIMALS = 6

# --- Monitor Defaults ---
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_GAS_LIMIT = 300000
DEFAULT_MIN_PROFIT_BPS = 10
DEFAULT_RECONNECT_INTERVAL = 5.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RPC_TIMEOUT = 8.0

# --- ABI Selectors & Event Topics ---
GET_AMOUNTS_OUT_SIG = '0xd06ca61f'  # getAmountsOut(uint256,address[])
GET_PAIR_SIG = '0xe6a43905'  # getPair(address,address)
SWAP_EVENT_TOPIC = '0xd78ad95fa46c994b6551d0da85fc275fe613ce37657fb8d5e3d130840159d822'
SYNC_EVENT_TOPIC = '0x1c411e9a96e071241c2f21f7726b17ae89e3cab4c78be50e062b03a9fffbbad1'
EVENT_NAMES_BY_TOPIC: Dict[str, str] = {
    SWAP_EVENT_TOPIC: 'Swap',
    SYNC_EVENT_TOPIC: 'Sync',
}

RATE_LIMIT_MARKER = 'rate limit'

# --- On-Chain Executor ---
BASIS_POINTS = 10000
FLASH_LOAN_PREMIUM_BPS = 9
SWAP_DEADLINE_SECONDS = 300

FLASH_ARBITRAGE_ABI = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "isVenueABuy", "type": "bool"},
        ],
        "name": "executeArbitrage",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "buyVenue", "type": "string"},
            {"indexed": False, "name": "sellVenue", "type": "string"},
            {"indexed": False, "name": "profit", "type": "uint256"},
            {"indexed": True, "name": "caller", "type": "address"},
        ],
        "name": "ArbitrageExecuted",
        "type": "event",
    },
]
