#!/usr/bin/env python3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


@dataclass(frozen=True)
class Token:
    """A fungible token as configured for a watched pair."""
    address: str
    symbol: str
    decimals: int

    @property
    def unit(self) -> int:
        """One whole token expressed in its smallest denomination."""
        return 10 ** self.decimals


class VenueSide(Enum):
    """The two venues being compared; A is the reference (denominator) venue."""
    A = 'A'
    B = 'B'

    @property
    def other(self) -> 'VenueSide':
        return VenueSide.B if self is VenueSide.A else VenueSide.A


@dataclass(frozen=True)
class VenueDescriptor:
    """Represents one trading venue and the contracts used to talk to it."""
    key: str
    name: str
    side: VenueSide
    router_address: str
    factory_address: str


@dataclass(frozen=True)
class TradingPair:
    """Represents a watched base/quote pair."""
    name: str
    base_token: Token
    quote_token: Token


@dataclass(frozen=True)
class PairContractHandle:
    """The pooled-liquidity contract for a pair on a venue."""
    venue: VenueDescriptor
    pair: TradingPair
    address: str


@dataclass(frozen=True)
class PriceQuote:
    """A single venue quote for a fixed input amount."""
    venue: VenueDescriptor
    pair: TradingPair
    input_amount: int
    output_amount: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CostModel:
    """Fixed fee and slippage estimates for one round trip."""
    dex_fee: float
    flash_loan_fee: float
    slippage_buffer: float

    @property
    def total_cost_ratio(self) -> Decimal:
        return (
            Decimal(str(self.dex_fee)) * 2
            + Decimal(str(self.flash_loan_fee))
            + Decimal(str(self.slippage_buffer))
        )


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """Represents a profitable round trip: buy on one venue, sell on the other."""
    pair: TradingPair
    buy_venue: VenueDescriptor
    sell_venue: VenueDescriptor
    notional_amount: int
    expected_profit_ratio: Decimal
    buy_price: Decimal
    sell_price: Decimal
    price_divergence: Decimal
    total_cost_ratio: Decimal
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return f"{self.pair.name}-{self.buy_venue.key}-{self.sell_venue.key}"

    def as_payload(self) -> Dict[str, Optional[str]]:
        """Flat, JSON-friendly view used for persistence and logging."""
        return {
            'pair': self.pair.name,
            'buy_venue': self.buy_venue.name,
            'sell_venue': self.sell_venue.name,
            'buy_price': str(self.buy_price),
            'sell_price': str(self.sell_price),
            'price_divergence': str(self.price_divergence),
            'total_cost_ratio': str(self.total_cost_ratio),
            'expected_profit_ratio': str(self.expected_profit_ratio),
            'notional_amount': str(self.notional_amount),
            'detected_at': self.detected_at.isoformat(),
        }
