import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis.analyzer import OpportunityAnalyzer
from analysis.models import CostModel, PairContractHandle, Token, TradingPair, VenueDescriptor, VenueSide
from detector import OpportunityDetector, format_ratio, print_opportunity
from services.subscription_manager import VenueEvent

UNIT = 10 ** 18

PAIR = TradingPair(
    name='BNB/USD',
    base_token=Token(address='0x' + 'bb' * 20, symbol='BNB', decimals=18),
    quote_token=Token(address='0x' + '55' * 20, symbol='USD', decimals=18),
)
VENUE_A = VenueDescriptor('pancakeswap', 'PancakeSwap', VenueSide.A, '0x' + '01' * 20, '0x' + '02' * 20)
VENUE_B = VenueDescriptor('biswap', 'BiSwap', VenueSide.B, '0x' + '03' * 20, '0x' + '04' * 20)


def _detector(prices, interval=60.0):
    quote_service = MagicMock()

    async def quote(venue, pair, amount_in):
        return prices[venue.side]

    quote_service.quote = AsyncMock(side_effect=quote)
    analyzer = OpportunityAnalyzer(CostModel(dex_fee=0.0025, flash_loan_fee=0.0009, slippage_buffer=0.01))
    return OpportunityDetector(quote_service, analyzer, [VENUE_A, VENUE_B], [PAIR], interval=interval)


def test_requires_one_venue_per_side():
    with pytest.raises(ValueError):
        OpportunityDetector(MagicMock(), MagicMock(), [VENUE_A, VENUE_A], [PAIR], interval=1.0)


@pytest.mark.asyncio
async def test_profitable_cycle_emits_to_all_handlers():
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 103 * UNIT})
    sync_handler = MagicMock()
    async_handler = AsyncMock()
    detector.add_handler(sync_handler)
    detector.add_handler(async_handler)

    opportunities = await detector.run_cycle()

    assert len(opportunities) == 1
    assert opportunities[0].buy_venue is VENUE_A
    sync_handler.assert_called_once_with(opportunities[0])
    async_handler.assert_awaited_once_with(opportunities[0])
    assert detector.quote_service.quote.await_count == 2
    for call in detector.quote_service.quote.await_args_list:
        assert call.args[2] == UNIT


@pytest.mark.asyncio
async def test_unprofitable_cycle_is_silent():
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 1006 * UNIT // 10})
    handler = MagicMock()
    detector.add_handler(handler)

    assert await detector.run_cycle() == []
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_unavailable_quote_skips_pair():
    detector = _detector({VenueSide.A: None, VenueSide.B: 103 * UNIT})
    handler = MagicMock()
    detector.add_handler(handler)

    assert await detector.run_pair_cycle(PAIR) is None
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_quotes_are_requested_concurrently():
    started = []
    release = asyncio.Event()
    quote_service = MagicMock()

    async def quote(venue, pair, amount_in):
        started.append(venue.side)
        await release.wait()
        return 100 * UNIT

    quote_service.quote = quote
    analyzer = OpportunityAnalyzer(CostModel(dex_fee=0.0025, flash_loan_fee=0.0009, slippage_buffer=0.01))
    detector = OpportunityDetector(quote_service, analyzer, [VENUE_A, VENUE_B], [PAIR], interval=1.0)

    cycle = asyncio.create_task(detector.run_pair_cycle(PAIR))
    for _ in range(50):
        await asyncio.sleep(0)
    assert sorted(side.value for side in started) == ['A', 'B']
    release.set()
    assert await cycle is None


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_others():
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 103 * UNIT})
    broken = MagicMock(side_effect=RuntimeError("boom"))
    healthy = MagicMock()
    detector.add_handler(broken)
    detector.add_handler(healthy)

    await detector.run_cycle()

    healthy.assert_called_once()


@pytest.mark.asyncio
async def test_notify_runs_cycle_for_event_pair():
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 103 * UNIT})
    handler = MagicMock()
    detector.add_handler(handler)
    event = VenueEvent(handle=PairContractHandle(VENUE_B, PAIR, '0x' + 'ab' * 20), name='Sync')

    assert detector.notify(event) is None  # not started yet

    detector.start()
    task = detector.notify(event)
    assert task is not None
    opp = await task
    assert opp.sell_venue is VENUE_B
    await detector.close()
    assert detector.running is False


@pytest.mark.asyncio
async def test_start_runs_initial_cycle_and_close_stops_timer():
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 103 * UNIT}, interval=3600)
    handler = MagicMock()
    detector.add_handler(handler)

    timer = detector.start()
    for _ in range(50):
        await asyncio.sleep(0)
    handler.assert_called_once()

    await detector.close()
    assert timer.cancelled() or timer.done()


@pytest.mark.asyncio
async def test_print_opportunity_shows_both_venues(capsys):
    detector = _detector({VenueSide.A: 100 * UNIT, VenueSide.B: 103 * UNIT})
    opp = (await detector.run_cycle())[0]

    print_opportunity(opp)

    output = capsys.readouterr().out
    assert 'BiSwap (high)' in output
    assert 'PancakeSwap (low)' in output
    assert '3.000000%' in output


def test_format_ratio():
    assert format_ratio(0.0159) == '1.590000%'
