"""Hands detected opportunities to the on-chain executor without waiting on finality."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Set

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.logs import DISCARD

from analysis.models import ArbitrageOpportunity, VenueSide
from chain.arbitrage_contract import FlashArbitrage
from chain.errors import Revert
from chain.ledger import Ledger
from constants import BASIS_POINTS, FLASH_ARBITRAGE_ABI


@dataclass(slots=True)
class ExecutionRequest:
    opportunity_key: str
    token_a: str
    token_b: str
    amount: int
    buy_side: VenueSide

    @classmethod
    def from_opportunity(cls, opportunity: ArbitrageOpportunity) -> ExecutionRequest:
        # The contract's first leg buys token B (quote) with the borrowed base.
        # Quote is cheapest where base sells highest, i.e. the opportunity's sell venue.
        return cls(
            opportunity_key=opportunity.key,
            token_a=opportunity.pair.base_token.address,
            token_b=opportunity.pair.quote_token.address,
            amount=opportunity.notional_amount,
            buy_side=opportunity.sell_venue.side,
        )


@dataclass(slots=True)
class ExecutionResult:
    opportunity_key: str
    executed: bool
    tx_hashes: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    profit: Optional[int] = None


class Submitter(Protocol):
    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        ...


ResultHandler = Callable[[ExecutionResult], Optional[Awaitable[None]]]


class ExecutionTrigger:
    """One opportunity, one ``executeArbitrage`` call. Nothing is retried."""

    def __init__(
        self,
        submitter: Submitter,
        *,
        min_profit_bps: int = 0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._submitter = submitter
        self._min_profit_ratio = Decimal(min_profit_bps) / BASIS_POINTS
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: list[ResultHandler] = []
        self._pending: Set[asyncio.Task] = set()

    def add_result_handler(self, handler: ResultHandler) -> None:
        self._handlers.append(handler)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, opportunity: ArbitrageOpportunity) -> Optional[asyncio.Task]:
        # Below the executor's on-chain minimum profit; never submitted.
        if opportunity.expected_profit_ratio < self._min_profit_ratio:
            self._logger.info(
                "[AutoTrade] %s skipped: expected %s below executor minimum %s",
                opportunity.key, opportunity.expected_profit_ratio, self._min_profit_ratio,
            )
            return None
        request = ExecutionRequest.from_opportunity(opportunity)
        task = asyncio.create_task(self._execute(request))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _execute(self, request: ExecutionRequest) -> ExecutionResult:
        self._logger.info(
            "[AutoTrade] %s | borrow %s of %s, buy on venue %s",
            request.opportunity_key, request.amount, request.token_a, request.buy_side.value,
        )
        try:
            result = await self._submitter.submit(request)
        except Exception as exc:
            self._logger.exception("Submitting %s failed", request.opportunity_key)
            result = ExecutionResult(opportunity_key=request.opportunity_key, executed=False, reason=str(exc))

        if result.executed:
            self._logger.info("[AutoTrade] %s executed, profit=%s tx=%s", result.opportunity_key, result.profit, result.tx_hashes)
        else:
            self._logger.warning("[AutoTrade] %s not executed: %s", result.opportunity_key, result.reason)

        for handler in self._handlers:
            try:
                outcome = handler(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as exc:
                self._logger.error("Execution result handler %r failed: %s", handler, exc)
        return result

    async def close(self) -> None:
        """Waits for submissions already in flight; they cannot be recalled."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


class Web3ContractSubmitter:
    """Signs and sends ``executeArbitrage`` to a deployed executor contract."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        *,
        chain_id: int,
        gas_limit: int,
        receipt_timeout: float = 120.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.web3 = Web3(Web3.HTTPProvider(rpc_url))
        if not self.web3.is_connected():
            raise RuntimeError(f"Could not connect to RPC URL: {rpc_url}")

        self.account = self.web3.eth.account.from_key(private_key)
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=FLASH_ARBITRAGE_ABI,
        )
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.logger = logger or logging.getLogger(__name__)

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        return await asyncio.to_thread(self._submit_sync, request)

    def _submit_sync(self, request: ExecutionRequest) -> ExecutionResult:
        key = request.opportunity_key
        function = self.contract.functions.executeArbitrage(
            Web3.to_checksum_address(request.token_a),
            Web3.to_checksum_address(request.token_b),
            request.amount,
            # The deployed ABI still takes a flag.
            request.buy_side is VenueSide.A,
        )
        try:
            # Dry run first so an obvious revert costs no gas.
            function.call({'from': self.account.address})
            tx = function.build_transaction({
                'from': self.account.address,
                'nonce': self.web3.eth.get_transaction_count(self.account.address),
                'gas': self.gas_limit,
                'gasPrice': self.web3.eth.gas_price,
                'chainId': self.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            hash_hex = Web3.to_hex(tx_hash)
            self.logger.info("Submitted executeArbitrage for %s: %s", key, hash_hex)
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except ContractLogicError as exc:
            return ExecutionResult(opportunity_key=key, executed=False, reason=exc.message or str(exc))
        except (Web3Exception, ValueError) as exc:
            self.logger.error("Web3 error while executing %s: %s", key, exc)
            return ExecutionResult(opportunity_key=key, executed=False, reason=str(exc))

        if receipt['status'] != 1:
            return ExecutionResult(opportunity_key=key, executed=False, tx_hashes=[hash_hex], reason="Transaction reverted")

        events = self.contract.events.ArbitrageExecuted().process_receipt(receipt, errors=DISCARD)
        profit = int(events[0]['args']['profit']) if events else None
        return ExecutionResult(opportunity_key=key, executed=True, tx_hashes=[hash_hex], profit=profit)


class LedgerSubmitter:
    """Runs the executor contract on an in-process :class:`chain.ledger.Ledger`."""

    def __init__(self, ledger: Ledger, contract: FlashArbitrage, sender: str) -> None:
        self.ledger = ledger
        self.contract = contract
        self.sender = sender

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        key = request.opportunity_key
        first_event = len(self.ledger.events)
        try:
            self.ledger.execute(
                self.sender,
                self.contract.execute_arbitrage,
                request.token_a,
                request.token_b,
                request.amount,
                request.buy_side,
            )
        except Revert as exc:
            return ExecutionResult(opportunity_key=key, executed=False, reason=exc.reason)

        profit = None
        for entry in self.ledger.events[first_event:]:
            if entry.name == 'ArbitrageExecuted' and entry.address == self.contract.address:
                profit = entry.args['profit']
        return ExecutionResult(opportunity_key=key, executed=True, profit=profit)
