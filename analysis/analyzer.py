#!/usr/bin/env python3
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from analysis.models import ArbitrageOpportunity, CostModel, PriceQuote, TradingPair
from constants import PRICE_DISPLAY_DECIMALS


def quote_price(quote: PriceQuote, places: int = PRICE_DISPLAY_DECIMALS) -> Decimal:
    """Quote tokens received per whole base token, rounded to display precision.

    Rounding happens before any comparison so sub-precision noise between
    venues never registers as divergence.
    """
    base_amount = Decimal(quote.input_amount) / (Decimal(10) ** quote.pair.base_token.decimals)
    quote_amount = Decimal(quote.output_amount) / (Decimal(10) ** quote.pair.quote_token.decimals)
    if base_amount <= 0:
        return Decimal(0)
    exponent = Decimal(1).scaleb(-places)
    return (quote_amount / base_amount).quantize(exponent, rounding=ROUND_HALF_UP)


def price_divergence(price_a: Decimal, price_b: Decimal) -> Optional[Decimal]:
    """Relative spread between the venues, measured against venue A."""
    if price_a <= 0 or price_b <= 0:
        return None
    return abs(price_a - price_b) / price_a


class OpportunityAnalyzer:
    """Turns a pair of venue quotes into an opportunity, or nothing."""

    def __init__(self, cost_model: CostModel, trade_size: Decimal = Decimal(1)):
        self.cost_model = cost_model
        self.trade_size = trade_size

    def evaluate(
        self,
        pair: TradingPair,
        quote_a: PriceQuote,
        quote_b: PriceQuote,
    ) -> Optional[ArbitrageOpportunity]:
        price_a = quote_price(quote_a)
        price_b = quote_price(quote_b)

        divergence = price_divergence(price_a, price_b)
        if divergence is None:
            return None

        # Fee schedules may change between runs; never reuse a previous cycle's total.
        total_cost_ratio = self.cost_model.total_cost_ratio
        profit_ratio = divergence - total_cost_ratio
        if profit_ratio <= 0:
            return None

        if price_a < price_b:
            buy_quote, sell_quote = quote_a, quote_b
            buy_price, sell_price = price_a, price_b
        else:
            buy_quote, sell_quote = quote_b, quote_a
            buy_price, sell_price = price_b, price_a

        return ArbitrageOpportunity(
            pair=pair,
            buy_venue=buy_quote.venue,
            sell_venue=sell_quote.venue,
            notional_amount=self.notional_amount(pair),
            expected_profit_ratio=profit_ratio,
            buy_price=buy_price,
            sell_price=sell_price,
            price_divergence=divergence,
            total_cost_ratio=total_cost_ratio,
        )

    def notional_amount(self, pair: TradingPair) -> int:
        scaled = Decimal(pair.base_token.unit) * self.trade_size
        return int(scaled.to_integral_value())
