#!/usr/bin/env python3
"""Long-lived Swap/Sync subscriptions on every watched pair contract.

Transport health is modelled as a small state machine fed by a signal queue:

    DISCONNECTED -> CONNECTED -> (close | error | rate limit) -> RECONNECTING
    RECONNECTING -> CONNECTED | FAILED

A reader task translates WebSocket frames into signals; the run loop is the
only consumer, so exactly one reconnect sequence can be in flight.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from aiohttp import WSMsgType

from analysis.models import PairContractHandle, TradingPair, VenueDescriptor
from constants import (
    EVENT_NAMES_BY_TOPIC,
    RATE_LIMIT_MARKER,
    SWAP_EVENT_TOPIC,
    SYNC_EVENT_TOPIC,
)
from services.ledger_client import LedgerClient, LedgerRPCError


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    RECONNECTING = 'reconnecting'
    FAILED = 'failed'
    CLOSED = 'closed'


class SignalKind(Enum):
    EVENT = 'event'
    CLOSED = 'closed'
    ERROR = 'error'
    RATE_LIMITED = 'rate_limited'


@dataclass(frozen=True)
class VenueEvent:
    """A Swap or Sync log emitted by a watched pair contract."""
    handle: PairContractHandle
    name: str
    log: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportSignal:
    kind: SignalKind
    generation: int
    event: Optional[VenueEvent] = None
    detail: Optional[str] = None


class SubscriptionFailedError(RuntimeError):
    """Reconnect attempts exhausted; the process supervisor has to step in."""


EventCallback = Callable[[VenueEvent], Optional[Awaitable[None]]]

_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)
_RECOVERABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, LedgerRPCError)


class SubscriptionManager:
    def __init__(
        self,
        ledger_client: LedgerClient,
        venues: List[VenueDescriptor],
        pairs: List[TradingPair],
        on_event: EventCallback,
        *,
        base_interval: float,
        max_attempts: int,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger_client
        self._venues = venues
        self._pairs = pairs
        self._on_event = on_event
        self._base_interval = base_interval
        self._max_attempts = max_attempts
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._reconnecting = False
        self._generation = 0
        self._signals: asyncio.Queue[TransportSignal] = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._handles: List[PairContractHandle] = []
        self._subscriptions: Dict[str, PairContractHandle] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def handles(self) -> List[PairContractHandle]:
        return list(self._handles)

    def backoff_delay(self, attempt: int) -> float:
        return self._base_interval * (2 ** (attempt - 1))

    async def start(self) -> None:
        """Opens the channel and subscribes; failures propagate to the caller."""
        await self._ledger.connect()
        await self._open_session()
        self._state = ConnectionState.CONNECTED

    async def run(self) -> None:
        """Consumes transport signals until closed.

        Raises :class:`SubscriptionFailedError` once reconnecting gives up.
        """
        if self._state is not ConnectionState.CONNECTED:
            await self.start()

        while True:
            signal = await self._signals.get()
            if self._state is ConnectionState.CLOSED:
                return
            if signal.generation != self._generation:
                # Raised by a session that has already been torn down.
                continue
            if signal.kind is SignalKind.EVENT:
                await self._dispatch(signal.event)
                continue

            self._logger.warning(
                "Subscription transport %s (%s); reconnecting",
                signal.kind.value, signal.detail or "no detail",
            )
            self._state = ConnectionState.DISCONNECTED
            await self._reconnect()

    def request_reconnect(self, reason: str) -> None:
        self._signals.put_nowait(TransportSignal(SignalKind.ERROR, self._generation, detail=reason))

    async def close(self) -> None:
        self._state = ConnectionState.CLOSED
        await self._stop_reader()
        for subscription_id in list(self._subscriptions):
            try:
                await self._ledger.unsubscribe(subscription_id)
            except _RECOVERABLE_ERRORS as exc:
                self._logger.debug("Unsubscribe %s failed during close: %s", subscription_id, exc)
        self._subscriptions.clear()
        await self._ledger.disconnect()
        # Wake the run loop so it can observe the CLOSED state.
        self._signals.put_nowait(TransportSignal(SignalKind.CLOSED, -1))
        self._logger.info("Subscriptions closed")

    async def _reconnect(self) -> None:
        if self._reconnecting:
            return
        self._reconnecting = True
        self._state = ConnectionState.RECONNECTING
        try:
            await self._stop_reader()
            while True:
                if self._attempts >= self._max_attempts:
                    self._state = ConnectionState.FAILED
                    self._logger.error("Reached %d reconnect attempts; giving up", self._max_attempts)
                    raise SubscriptionFailedError(
                        f"subscription transport failed after {self._max_attempts} reconnect attempts"
                    )

                self._attempts += 1
                delay = self.backoff_delay(self._attempts)
                self._logger.info("Reconnect attempt %d, waiting %.1f seconds", self._attempts, delay)
                await self._sleep(delay)
                if self._state is ConnectionState.CLOSED:
                    return

                try:
                    await self._ledger.reconnect()
                    await self._open_session()
                except _RECOVERABLE_ERRORS as exc:
                    self._logger.error("Reconnect attempt %d failed: %s", self._attempts, exc)
                    await self._stop_reader()
                    continue

                self._attempts = 0
                self._state = ConnectionState.CONNECTED
                self._logger.info("WebSocket reconnected; %d subscriptions live", len(self._subscriptions))
                return
        finally:
            self._reconnecting = False

    async def _open_session(self) -> None:
        # Pair addresses are stable but subscriptions are bound to the old session.
        handles = await self._resolve_handles()
        subscriptions: Dict[str, PairContractHandle] = {}
        for handle in handles:
            subscription_id = await self._ledger.subscribe_logs(
                handle.address,
                [[SWAP_EVENT_TOPIC, SYNC_EVENT_TOPIC]],
            )
            subscriptions[subscription_id] = handle
            self._logger.info(
                "Listening for %s %s events at %s",
                handle.venue.name, handle.pair.name, handle.address,
            )

        self._handles = handles
        self._subscriptions = subscriptions
        self._generation += 1
        self._reader = asyncio.create_task(self._read_loop(self._generation))

    async def _resolve_handles(self) -> List[PairContractHandle]:
        handles = []
        for pair in self._pairs:
            for venue in self._venues:
                address = await self._ledger.get_pair(
                    venue.factory_address,
                    pair.base_token.address,
                    pair.quote_token.address,
                )
                if address is None:
                    self._logger.warning("%s has no %s pair contract; not subscribing", venue.name, pair.name)
                    continue
                handles.append(PairContractHandle(venue=venue, pair=pair, address=address))
        return handles

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None or reader.done():
            return
        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass

    async def _read_loop(self, generation: int) -> None:
        try:
            while True:
                message = await self._ledger.receive()
                if message.type == WSMsgType.TEXT:
                    self._handle_text(message.data, generation)
                elif message.type in _CLOSED_TYPES:
                    self._signals.put_nowait(TransportSignal(SignalKind.CLOSED, generation))
                    return
                elif message.type == WSMsgType.ERROR:
                    self._signals.put_nowait(TransportSignal(SignalKind.ERROR, generation, detail=str(message.data)))
                    return
        except _RECOVERABLE_ERRORS as exc:
            self._signals.put_nowait(TransportSignal(SignalKind.ERROR, generation, detail=str(exc)))

    def _handle_text(self, text: str, generation: int) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            if RATE_LIMIT_MARKER in text.lower():
                self._signals.put_nowait(TransportSignal(SignalKind.RATE_LIMITED, generation, detail=text))
            return
        if not isinstance(data, dict):
            return

        error = data.get('error')
        if error:
            message = error.get('message', '') if isinstance(error, dict) else str(error)
            if RATE_LIMIT_MARKER in message.lower():
                self._signals.put_nowait(TransportSignal(SignalKind.RATE_LIMITED, generation, detail=message))
            else:
                self._logger.warning("Subscription channel error: %s", message)
            return

        if data.get('method') != 'eth_subscription':
            return
        params = data.get('params') or {}
        handle = self._subscriptions.get(params.get('subscription'))
        log = params.get('result') or {}
        topics = log.get('topics') or []
        if handle is None or not topics:
            return
        name = EVENT_NAMES_BY_TOPIC.get(str(topics[0]).lower())
        if name is None:
            return
        event = VenueEvent(handle=handle, name=name, log=log)
        self._signals.put_nowait(TransportSignal(SignalKind.EVENT, generation, event=event))

    async def _dispatch(self, event: VenueEvent) -> None:
        self._logger.info("Received %s %s event for %s", event.handle.venue.name, event.name, event.handle.pair.name)
        result = self._on_event(event)
        if asyncio.iscoroutine(result):
            await result
