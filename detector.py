# detector.py
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from analysis.analyzer import OpportunityAnalyzer
from analysis.models import ArbitrageOpportunity, PriceQuote, TradingPair, VenueDescriptor, VenueSide
from constants import C_CYAN, C_GREEN, C_RED, C_RESET, C_YELLOW
from services.quote_service import QuoteService
from services.subscription_manager import VenueEvent

OpportunityHandler = Callable[[ArbitrageOpportunity], Optional[Awaitable[None]]]


class OpportunityDetector:
    def __init__(
        self,
        quote_service: QuoteService,
        analyzer: OpportunityAnalyzer,
        venues: List[VenueDescriptor],
        pairs: List[TradingPair],
        *,
        interval: float,
        logger: Optional[logging.Logger] = None,
    ):
        venues_by_side: Dict[VenueSide, VenueDescriptor] = {venue.side: venue for venue in venues}
        if set(venues_by_side) != {VenueSide.A, VenueSide.B}:
            raise ValueError("exactly one venue per side (A and B) is required")
        self.quote_service = quote_service
        self.analyzer = analyzer
        self.venue_a = venues_by_side[VenueSide.A]
        self.venue_b = venues_by_side[VenueSide.B]
        self.pairs = {pair.name: pair for pair in pairs}
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: List[OpportunityHandler] = []
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

    def add_handler(self, handler: OpportunityHandler) -> None:
        self._handlers.append(handler)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> asyncio.Task:
        """Starts the timer-driven loop; the first cycle runs immediately."""
        self._running = True
        self._timer_task = asyncio.create_task(self._run_main_loop())
        return self._timer_task

    async def _run_main_loop(self):
        """The timer loop."""
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                self.logger.error("Error during detection cycle: %s", e)
            await asyncio.sleep(self.interval)

    def notify(self, event: VenueEvent) -> Optional[asyncio.Task]:
        """Re-arms detection for the pair an on-chain event touched.

        Cycles for the same pair may overlap; nothing serialises them.
        """
        if not self._running:
            return None
        pair = self.pairs.get(event.handle.pair.name)
        if pair is None:
            return None
        task = asyncio.create_task(self.run_pair_cycle(pair))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def run_cycle(self) -> List[ArbitrageOpportunity]:
        """Runs one detection cycle across every watched pair concurrently."""
        results = await asyncio.gather(*(self.run_pair_cycle(pair) for pair in self.pairs.values()))
        return [opp for opp in results if opp is not None]

    async def run_pair_cycle(self, pair: TradingPair) -> Optional[ArbitrageOpportunity]:
        amount_in = pair.base_token.unit
        # Both reads are in flight before either is awaited.
        amount_a, amount_b = await asyncio.gather(
            self.quote_service.quote(self.venue_a, pair, amount_in),
            self.quote_service.quote(self.venue_b, pair, amount_in),
        )
        if amount_a is None or amount_b is None:
            self.logger.debug("Skipping %s: a venue quote is unavailable", pair.name)
            return None

        quote_a = PriceQuote(venue=self.venue_a, pair=pair, input_amount=amount_in, output_amount=amount_a)
        quote_b = PriceQuote(venue=self.venue_b, pair=pair, input_amount=amount_in, output_amount=amount_b)
        opportunity = self.analyzer.evaluate(pair, quote_a, quote_b)
        if opportunity is None:
            return None

        await self._emit(opportunity)
        return opportunity

    async def _emit(self, opportunity: ArbitrageOpportunity) -> None:
        for handler in self._handlers:
            try:
                result = handler(opportunity)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error("Opportunity handler %r failed for %s: %s", handler, opportunity.key, e)

    async def close(self) -> None:
        """Stops the timer loop and cancels event-triggered cycles still running."""
        self._running = False
        tasks = list(self._inflight)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._timer_task = None


def format_ratio(value) -> str:
    return f"{value * 100:.6f}%"


def print_opportunity(opp: ArbitrageOpportunity) -> None:
    """Formats and prints a single opportunity to the console."""
    quote_symbol = opp.pair.quote_token.symbol
    print(
        f"\n{C_CYAN}{opp.pair.name}{C_RESET} price information:\n"
        f"{opp.sell_venue.name} (high): {C_RED}{opp.sell_price}{C_RESET} {quote_symbol}\n"
        f"{opp.buy_venue.name} (low): {C_GREEN}{opp.buy_price}{C_RESET} {quote_symbol}\n"
        f"Price divergence: {C_GREEN}{format_ratio(opp.price_divergence)}{C_RESET}\n"
        f"Estimated cost: {C_YELLOW}{format_ratio(opp.total_cost_ratio)}{C_RESET}\n"
        f"Expected profit: {C_GREEN}{format_ratio(opp.expected_profit_ratio)}{C_RESET}"
    )
