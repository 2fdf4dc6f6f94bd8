import asyncio
import json
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aiohttp import WSMessage, WSMsgType

from analysis.models import Token, TradingPair, VenueDescriptor, VenueSide
from constants import SWAP_EVENT_TOPIC, SYNC_EVENT_TOPIC
from services.subscription_manager import (
    ConnectionState,
    SignalKind,
    SubscriptionFailedError,
    SubscriptionManager,
    TransportSignal,
)

PAIR = TradingPair(
    name='BNB/USD',
    base_token=Token(address='0x' + 'bb' * 20, symbol='BNB', decimals=18),
    quote_token=Token(address='0x' + '55' * 20, symbol='USD', decimals=18),
)
VENUE_A = VenueDescriptor('pancakeswap', 'PancakeSwap', VenueSide.A, '0x' + '01' * 20, '0x' + '02' * 20)
VENUE_B = VenueDescriptor('biswap', 'BiSwap', VenueSide.B, '0x' + '03' * 20, '0x' + '04' * 20)
PAIR_ADDRESSES = {VENUE_A.factory_address: '0x' + 'aa' * 20, VENUE_B.factory_address: '0x' + 'cc' * 20}


class FakeLedgerClient:
    def __init__(self, pair_addresses=PAIR_ADDRESSES):
        self.pair_addresses = dict(pair_addresses)
        self.frames = asyncio.Queue()
        self.subscriptions = {}
        self.subscribe_failures = 0
        self.connect = AsyncMock()
        self.reconnect = AsyncMock()
        self.disconnect = AsyncMock()
        self.unsubscribe = AsyncMock()

    async def get_pair(self, factory_address, token_a, token_b):
        return self.pair_addresses.get(factory_address)

    async def subscribe_logs(self, address, topics):
        if self.subscribe_failures:
            self.subscribe_failures -= 1
            raise aiohttp.ClientConnectionError("subscribe failed")
        assert topics == [[SWAP_EVENT_TOPIC, SYNC_EVENT_TOPIC]]
        subscription_id = f"0xsub{len(self.subscriptions) + 1}"
        self.subscriptions[subscription_id] = address
        return subscription_id

    def latest_subscription(self, address):
        return [sub for sub, addr in self.subscriptions.items() if addr == address][-1]

    async def receive(self):
        return await self.frames.get()

    def push_text(self, payload):
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self.frames.put_nowait(WSMessage(WSMsgType.TEXT, text, None))

    def push_close(self):
        self.frames.put_nowait(WSMessage(WSMsgType.CLOSE, 1006, None))


def _manager(ledger, on_event=None, sleep=None, max_attempts=5):
    return SubscriptionManager(
        ledger,
        [VENUE_A, VENUE_B],
        [PAIR],
        on_event or AsyncMock(),
        base_interval=5.0,
        max_attempts=max_attempts,
        sleep=sleep or AsyncMock(),
    )


async def _wait_for(predicate):
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_backoff_doubles_from_base():
    manager = _manager(FakeLedgerClient())
    assert [manager.backoff_delay(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 40.0, 80.0]


@pytest.mark.asyncio
async def test_start_subscribes_each_pair_contract():
    ledger = FakeLedgerClient()
    manager = _manager(ledger)

    await manager.start()

    assert manager.state is ConnectionState.CONNECTED
    assert sorted(ledger.subscriptions.values()) == sorted(PAIR_ADDRESSES.values())
    assert {handle.venue.name for handle in manager.handles} == {'PancakeSwap', 'BiSwap'}
    await manager.close()


@pytest.mark.asyncio
async def test_missing_pair_contract_is_skipped():
    ledger = FakeLedgerClient({VENUE_A.factory_address: '0x' + 'aa' * 20})
    manager = _manager(ledger)

    await manager.start()

    assert [handle.venue for handle in manager.handles] == [VENUE_A]
    await manager.close()


@pytest.mark.asyncio
async def test_initial_connection_failure_propagates():
    ledger = FakeLedgerClient()
    ledger.connect.side_effect = aiohttp.ClientConnectionError("refused")

    with pytest.raises(aiohttp.ClientConnectionError):
        await _manager(ledger).start()


@pytest.mark.asyncio
async def test_notifications_are_dispatched_as_venue_events():
    ledger = FakeLedgerClient()
    on_event = AsyncMock()
    manager = _manager(ledger, on_event=on_event)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    subscription_id = ledger.latest_subscription(PAIR_ADDRESSES[VENUE_B.factory_address])
    ledger.push_text({
        'jsonrpc': '2.0',
        'method': 'eth_subscription',
        'params': {'subscription': subscription_id, 'result': {'topics': [SYNC_EVENT_TOPIC], 'data': '0x'}},
    })
    await _wait_for(lambda: on_event.await_count == 1)

    event = on_event.await_args.args[0]
    assert event.name == 'Sync'
    assert event.handle.venue is VENUE_B
    assert event.handle.pair is PAIR

    await manager.close()
    await asyncio.wait_for(run_task, 1)
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_exhausted_reconnects_fail_with_exponential_delays():
    ledger = FakeLedgerClient()
    ledger.reconnect.side_effect = aiohttp.ClientConnectionError("still down")
    sleep = AsyncMock()
    manager = _manager(ledger, sleep=sleep)
    await manager.start()

    ledger.push_close()
    with pytest.raises(SubscriptionFailedError):
        await asyncio.wait_for(manager.run(), 1)

    assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0, 20.0, 40.0, 80.0]
    assert ledger.reconnect.await_count == 5
    assert manager.state is ConnectionState.FAILED


@pytest.mark.asyncio
async def test_rate_limit_message_triggers_reconnect_and_resubscribe():
    ledger = FakeLedgerClient()
    sleep = AsyncMock()
    manager = _manager(ledger, sleep=sleep)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    ledger.push_text({'jsonrpc': '2.0', 'error': {'code': -32005, 'message': 'Rate limit exceeded'}})
    await _wait_for(lambda: len(ledger.subscriptions) == 4 and manager.state is ConnectionState.CONNECTED)

    assert ledger.reconnect.await_count == 1
    sleep.assert_awaited_once_with(5.0)
    assert manager.attempts == 0

    await manager.close()
    await asyncio.wait_for(run_task, 1)


@pytest.mark.asyncio
async def test_plain_text_rate_limit_frame_is_detected():
    ledger = FakeLedgerClient()
    manager = _manager(ledger)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    ledger.push_text('429 Too Many Requests: rate limit reached')
    await _wait_for(lambda: ledger.reconnect.await_count == 1)

    await manager.close()
    await asyncio.wait_for(run_task, 1)


@pytest.mark.asyncio
async def test_attempt_counter_resets_after_successful_reconnect():
    ledger = FakeLedgerClient()
    sleep = AsyncMock()
    manager = _manager(ledger, sleep=sleep)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    ledger.subscribe_failures = 1
    ledger.push_close()
    await _wait_for(lambda: ledger.reconnect.await_count == 2 and manager.state is ConnectionState.CONNECTED)
    assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0]
    assert manager.attempts == 0

    ledger.push_close()
    await _wait_for(lambda: ledger.reconnect.await_count == 3 and manager.state is ConnectionState.CONNECTED)
    assert sleep.await_args_list[-1].args[0] == 5.0

    await manager.close()
    await asyncio.wait_for(run_task, 1)


@pytest.mark.asyncio
async def test_concurrent_failure_signals_cause_one_reconnect():
    ledger = FakeLedgerClient()
    manager = _manager(ledger)
    await manager.start()

    manager.request_reconnect("socket error")
    manager.request_reconnect("second error from the same session")
    run_task = asyncio.create_task(manager.run())
    await _wait_for(lambda: ledger.reconnect.await_count >= 1 and manager.state is ConnectionState.CONNECTED)
    for _ in range(50):
        await asyncio.sleep(0)

    assert ledger.reconnect.await_count == 1

    await manager.close()
    await asyncio.wait_for(run_task, 1)


@pytest.mark.asyncio
async def test_stale_signals_are_ignored():
    ledger = FakeLedgerClient()
    manager = _manager(ledger)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    manager._signals.put_nowait(TransportSignal(SignalKind.ERROR, generation=0, detail="old session"))
    for _ in range(50):
        await asyncio.sleep(0)

    ledger.reconnect.assert_not_awaited()
    assert manager.state is ConnectionState.CONNECTED

    await manager.close()
    await asyncio.wait_for(run_task, 1)


@pytest.mark.asyncio
async def test_close_unsubscribes_and_disconnects():
    ledger = FakeLedgerClient()
    manager = _manager(ledger)
    await manager.start()
    run_task = asyncio.create_task(manager.run())

    await manager.close()
    await asyncio.wait_for(run_task, 1)

    unsubscribed = sorted(call.args[0] for call in ledger.unsubscribe.await_args_list)
    assert unsubscribed == sorted(ledger.subscriptions)
    ledger.disconnect.assert_awaited_once()
    assert manager.state is ConnectionState.CLOSED
