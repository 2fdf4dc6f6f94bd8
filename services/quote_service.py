#!/usr/bin/env python3
import asyncio
import logging
from typing import Optional

import aiohttp
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from analysis.models import TradingPair, VenueDescriptor
from constants import GET_AMOUNTS_OUT_SIG
from services.ledger_client import LedgerClient, LedgerRPCError


class QuoteService:
    """Read-only router quotes along the direct ``[base, quote]`` path.

    Any transport error, revert or malformed result yields ``None`` so the
    caller can skip the cycle. Retrying is the caller's business.
    """

    def __init__(self, ledger_client: LedgerClient, logger: Optional[logging.Logger] = None) -> None:
        self._ledger = ledger_client
        self._logger = logger or logging.getLogger(__name__)

    async def quote(self, venue: VenueDescriptor, pair: TradingPair, amount_in: int) -> Optional[int]:
        path = [
            Web3.to_checksum_address(pair.base_token.address),
            Web3.to_checksum_address(pair.quote_token.address),
        ]
        calldata = GET_AMOUNTS_OUT_SIG + encode(['uint256', 'address[]'], [amount_in, path]).hex()
        try:
            result = await self._ledger.eth_call(venue.router_address, calldata)
            if not result or result == '0x':
                raise ValueError("empty_result")
            (amounts,) = decode(['uint256[]'], bytes.fromhex(result[2:]))
        except (aiohttp.ClientError, asyncio.TimeoutError, LedgerRPCError, DecodingError, ValueError) as exc:
            self._logger.warning("%s quote for %s unavailable: %s", venue.name, pair.name, exc)
            return None

        if len(amounts) < 2:
            self._logger.warning("%s returned a short amounts array for %s", venue.name, pair.name)
            return None

        amount_out = int(amounts[-1])
        self._logger.debug(
            "%s quote %s: %s -> %s",
            venue.name, pair.name, amount_in, amount_out,
        )
        return amount_out
