#!/usr/bin/env python3
import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, List, Optional

import aiohttp
from aiohttp import ClientSession, WSMessage, WSMsgType
from eth_abi import encode
from web3 import Web3

from constants import GET_PAIR_SIG, ZERO_ADDRESS


class LedgerRPCError(RuntimeError):
    """A JSON-RPC response carried an ``error`` object (reverts included)."""

    def __init__(self, error: Any):
        self.error = error
        message = error.get('message') if isinstance(error, dict) else str(error)
        super().__init__(message)


class TransportClosedError(ConnectionError):
    """The subscription channel is not open or closed while in use."""


_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


class LedgerClient:
    """Dual-mode ledger connection.

    Point-in-time reads go through JSON-RPC over HTTP on the shared
    ``ClientSession``. Venue events arrive over a WebSocket opened on the same
    session; the client owns opening and re-opening that socket.
    """

    def __init__(
        self,
        session: ClientSession,
        *,
        rpc_url: str,
        ws_url: Optional[str],
        timeout: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._timeout = timeout
        self._logger = logger or logging.getLogger(__name__)
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._backlog: Deque[WSMessage] = deque()
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1

    # --- request/response channel ---

    async def rpc_call(self, method: str, params: list) -> Any:
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }
        async with self._session.post(
            self._rpc_url, json=payload, timeout=aiohttp.ClientTimeout(total=self._timeout)
        ) as response:
            response.raise_for_status()
            data = await response.json()
        if 'error' in data:
            raise LedgerRPCError(data['error'])
        return data.get('result')

    async def eth_call(self, to: str, data: str, block: str = "latest") -> Optional[str]:
        call_params = {"to": to, "data": data}
        return await self.rpc_call("eth_call", [call_params, block])

    async def get_pair(self, factory_address: str, token_a: str, token_b: str) -> Optional[str]:
        """Resolves a venue's pair contract; ``None`` when the pair does not exist."""
        calldata = GET_PAIR_SIG + encode(
            ['address', 'address'],
            [Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b)],
        ).hex()
        result = await self.eth_call(factory_address, calldata)
        pair_address = self.decode_address(result)
        if pair_address is None or pair_address == ZERO_ADDRESS:
            return None
        return pair_address

    # --- subscription channel ---

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if not self._ws_url:
            raise TransportClosedError("no WebSocket endpoint configured")
        self._backlog.clear()
        self._ws = await self._session.ws_connect(self._ws_url, heartbeat=30)
        self._logger.info("WebSocket connected to %s", self._ws_url)

    async def reconnect(self) -> None:
        await self.disconnect()
        await self.connect()

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        self._backlog.clear()
        if ws is not None and not ws.closed:
            await ws.close()

    async def subscribe_logs(self, address: str, topics: List[Any]) -> str:
        """Issues ``eth_subscribe("logs")`` and waits for the subscription id.

        Frames that arrive before the confirmation are kept and handed out by
        :meth:`receive` afterwards.
        """
        ws = self._require_ws()
        request_id = await self._get_request_id()
        await ws.send_json({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": address, "topics": topics}],
        })
        while True:
            message = await asyncio.wait_for(ws.receive(), timeout=self._timeout)
            if message.type in _CLOSED_TYPES or message.type == WSMsgType.ERROR:
                raise TransportClosedError(f"socket closed while subscribing to {address}")
            if message.type != WSMsgType.TEXT:
                continue
            try:
                data = json.loads(message.data)
            except ValueError:
                self._backlog.append(message)
                continue
            if isinstance(data, dict) and data.get('id') == request_id:
                if 'error' in data:
                    raise LedgerRPCError(data['error'])
                return data['result']
            self._backlog.append(message)

    async def unsubscribe(self, subscription_id: str) -> None:
        if not self.connected:
            return
        request_id = await self._get_request_id()
        await self._ws.send_json({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "eth_unsubscribe",
            "params": [subscription_id],
        })

    async def receive(self) -> WSMessage:
        if self._backlog:
            return self._backlog.popleft()
        return await self._require_ws().receive()

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise TransportClosedError("subscription channel is not connected")
        return self._ws

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id

    @staticmethod
    def normalise_address(address: str) -> str:
        if not address:
            return address
        if address.startswith('0x'):
            return '0x' + address[2:].lower()
        return '0x' + address.lower()

    @staticmethod
    def decode_address(value: Optional[str]) -> Optional[str]:
        if not value or len(value) < 42:
            return None
        return '0x' + value[-40:].lower()
