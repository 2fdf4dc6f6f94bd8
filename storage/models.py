"""Dataclasses representing stored arbitrage records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class OpportunityRecord:
    id: int
    opportunity_key: str
    pair: str
    buy_venue: str
    sell_venue: str
    buy_price: str
    sell_price: str
    price_divergence: float
    total_cost_ratio: float
    expected_profit_ratio: float
    notional_amount: str
    detected_at: datetime


@dataclass(slots=True)
class ExecutionResultRecord:
    id: int
    opportunity_key: str
    executed: bool
    tx_hashes: list[str]
    reason: Optional[str]
    profit: Optional[str]
    recorded_at: datetime
