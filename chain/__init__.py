"""In-process model of the on-chain side: an atomic ledger and the contracts the executor talks to."""

from .arbitrage_contract import ExecutionState, FlashArbitrage, FlashLoanContext, VenueRoute
from .amm import ExactInputSingleParams, Factory, PairPool, Router
from .errors import Revert, require
from .ledger import Contract, Ledger, LogEntry
from .lending_pool import LendingPool
from .token import ERC20Token

__all__ = [
    "Contract",
    "ERC20Token",
    "ExactInputSingleParams",
    "ExecutionState",
    "Factory",
    "FlashArbitrage",
    "FlashLoanContext",
    "LendingPool",
    "Ledger",
    "LogEntry",
    "PairPool",
    "Revert",
    "Router",
    "VenueRoute",
    "require",
]
