"""Flash-loan funded two-venue arbitrage executor.

One call to :meth:`FlashArbitrage.execute_arbitrage` borrows ``amount`` of
token A, buys token B on the buy venue, sells it back on the other venue and
keeps what is left after repaying principal plus premium. It has to run inside
a :meth:`chain.ledger.Ledger.transaction`; every failure raises
:class:`chain.errors.Revert` and the ledger discards the whole attempt,
including the loan draw-down.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List

from eth_abi import decode, encode

from analysis.models import VenueSide
from chain.amm import ExactInputSingleParams, Router
from chain.errors import Revert, require
from chain.ledger import Contract, Ledger
from chain.lending_pool import LendingPool
from chain.token import ERC20Token
from constants import BASIS_POINTS, SWAP_DEADLINE_SECONDS, ZERO_ADDRESS

_CONTEXT_TYPES = ['address', 'address', 'string', 'uint24', 'address', 'string', 'uint24', 'address']


class ExecutionState(Enum):
    IDLE = 'idle'
    LOAN_REQUESTED = 'loan_requested'
    LOAN_RECEIVED = 'loan_received'
    SWAPPED_1 = 'swapped_1'
    SWAPPED_2 = 'swapped_2'
    PROFIT_VERIFIED = 'profit_verified'
    REPAID = 'repaid'
    FINALIZED = 'finalized'
    REVERTED = 'reverted'


@dataclass(frozen=True)
class VenueRoute:
    name: str
    router_address: str
    fee: int = 2500


@dataclass(frozen=True)
class FlashLoanContext:
    """Decoded callback parameters; lives for one callback only."""
    borrowed_asset: str
    counter_asset: str
    borrowed_amount: int
    fee: int
    buy_venue: VenueRoute
    sell_venue: VenueRoute
    initiating_caller: str

    def encode_params(self) -> bytes:
        return encode(_CONTEXT_TYPES, [
            self.counter_asset,
            self.buy_venue.router_address, self.buy_venue.name, self.buy_venue.fee,
            self.sell_venue.router_address, self.sell_venue.name, self.sell_venue.fee,
            self.initiating_caller,
        ])

    @classmethod
    def from_callback(cls, assets: List[str], amounts: List[int], premiums: List[int], params: bytes) -> FlashLoanContext:
        require(len(assets) == 1 and len(amounts) == 1 and len(premiums) == 1, "Expected a single borrowed asset")
        counter, buy_router, buy_name, buy_fee, sell_router, sell_name, sell_fee, caller = decode(_CONTEXT_TYPES, params)
        return cls(
            borrowed_asset=assets[0].lower(),
            counter_asset=counter.lower(),
            borrowed_amount=amounts[0],
            fee=premiums[0],
            buy_venue=VenueRoute(buy_name, buy_router.lower(), buy_fee),
            sell_venue=VenueRoute(sell_name, sell_router.lower(), sell_fee),
            initiating_caller=caller.lower(),
        )


class FlashArbitrage(Contract):
    def __init__(
        self,
        ledger: Ledger,
        *,
        owner: str,
        lending_pool: LendingPool,
        venues: Dict[VenueSide, VenueRoute],
        min_profit_bps: int = 10,
    ) -> None:
        super().__init__(ledger)
        if set(venues) != {VenueSide.A, VenueSide.B}:
            raise ValueError("a route for both venue sides is required")
        self.lending_pool = lending_pool
        self.venues = dict(venues)
        self.storage.update(owner=owner.lower(), min_profit_bps=min_profit_bps, paused=False, entered=False)
        self.last_execution_trace: List[ExecutionState] = []

    @property
    def owner(self) -> str:
        return self.storage['owner']

    @property
    def min_profit_bps(self) -> int:
        return self.storage['min_profit_bps']

    @property
    def paused(self) -> bool:
        return self.storage['paused']

    # --- entry point -----------------------------------------------------

    def execute_arbitrage(self, token_a: str, token_b: str, amount: int, buy_side: VenueSide) -> None:
        trace = [ExecutionState.IDLE]
        self.last_execution_trace = trace
        try:
            require(token_a.lower() != token_b.lower(), "Tokens must be different")
            require(token_a.lower() != ZERO_ADDRESS and token_b.lower() != ZERO_ADDRESS, "Invalid token address")
            require(self._is_token(token_a) and self._is_token(token_b), "Token is not an ERC20 contract")
            require(amount > 0, "Amount must be greater than 0")
            require(not self.paused, "Contract is paused")

            with self._non_reentrant():
                context = FlashLoanContext(
                    borrowed_asset=token_a.lower(),
                    counter_asset=token_b.lower(),
                    borrowed_amount=amount,
                    fee=self.lending_pool.premium_for(amount),
                    buy_venue=self.venues[buy_side],
                    sell_venue=self.venues[buy_side.other],
                    initiating_caller=self.msg_sender,
                )
                trace.append(ExecutionState.LOAN_REQUESTED)
                try:
                    self.ledger.call(
                        self.address,
                        self.lending_pool.flash_loan,
                        self.address, [token_a], [amount], [0], self.address, context.encode_params(), 0,
                    )
                except Revert as exc:
                    raise Revert(f"Flash loan failed: {exc.reason}") from exc
                except Exception as exc:
                    raise Revert("Flash loan failed") from exc
                trace.append(ExecutionState.REPAID)
            trace.append(ExecutionState.FINALIZED)
        except Revert:
            trace.append(ExecutionState.REVERTED)
            raise

    def execute_operation(
        self,
        assets: List[str],
        amounts: List[int],
        premiums: List[int],
        initiator: str,
        params: bytes,
    ) -> bool:
        require(self.msg_sender == self.lending_pool.address, "Caller must be the lending pool")
        require(initiator.lower() == self.address, "Initiator must be this contract")
        context = FlashLoanContext.from_callback(assets, amounts, premiums, params)
        trace = self.last_execution_trace
        trace.append(ExecutionState.LOAN_RECEIVED)

        received = self._swap(context.buy_venue, context.borrowed_asset, context.counter_asset, context.borrowed_amount)
        trace.append(ExecutionState.SWAPPED_1)
        final_amount = self._swap(context.sell_venue, context.counter_asset, context.borrowed_asset, received)
        trace.append(ExecutionState.SWAPPED_2)

        owed = context.borrowed_amount + context.fee
        net_profit = max(0, final_amount - owed)
        min_required = context.fee + context.borrowed_amount * self.min_profit_bps // BASIS_POINTS
        require(net_profit >= min_required, "Insufficient profit")
        trace.append(ExecutionState.PROFIT_VERIFIED)

        self._approve_exact(context.borrowed_asset, self.lending_pool.address, owed)
        self.emit(
            'ArbitrageExecuted',
            buyVenue=context.buy_venue.name,
            sellVenue=context.sell_venue.name,
            profit=net_profit,
            caller=context.initiating_caller,
        )
        return True

    # --- owner surface ---------------------------------------------------

    def set_min_profit_basis_points(self, basis_points: int) -> None:
        self._only_owner()
        require(basis_points > 0, "Min profit must be greater than 0")
        require(basis_points < BASIS_POINTS, "Min profit must be below 10000 basis points")
        self.storage['min_profit_bps'] = basis_points
        self.emit('MinProfitUpdated', basisPoints=basis_points)

    def pause(self) -> None:
        self._only_owner()
        require(not self.paused, "Contract is already paused")
        self.storage['paused'] = True
        self.emit('Paused', account=self.msg_sender)

    def unpause(self) -> None:
        self._only_owner()
        require(self.paused, "Contract is not paused")
        self.storage['paused'] = False
        self.emit('Unpaused', account=self.msg_sender)

    def emergency_withdraw(self, token: str) -> int:
        self._only_owner()
        contract = self._token(token)
        balance = contract.balance_of(self.address)
        require(balance > 0, "No balance to withdraw")
        self.ledger.call(self.address, contract.transfer, self.owner, balance)
        self.emit('EmergencyWithdraw', token=token.lower(), amount=balance)
        return balance

    def revoke_allowance(self, token: str, spender: str) -> None:
        self._only_owner()
        self.ledger.call(self.address, self._token(token).approve, spender, 0)

    def check_balance(self, token: str) -> int:
        return self._token(token).balance_of(self.address)

    def check_allowance(self, token: str, spender: str) -> int:
        return self._token(token).allowance(self.address, spender)

    # --- internals -------------------------------------------------------

    @contextmanager
    def _non_reentrant(self) -> Iterator[None]:
        require(not self.storage['entered'], "ReentrancyGuard: reentrant call")
        self.storage['entered'] = True
        try:
            yield
        finally:
            self.storage['entered'] = False

    def _only_owner(self) -> None:
        require(self.msg_sender == self.owner, "Caller is not the owner")

    def _is_token(self, address: str) -> bool:
        return isinstance(self.ledger.contract_at(address), ERC20Token)

    def _token(self, address: str) -> ERC20Token:
        contract = self.ledger.contract_at(address)
        require(isinstance(contract, ERC20Token), "Token is not an ERC20 contract")
        return contract

    def _approve_exact(self, token: str, spender: str, amount: int) -> None:
        contract = self._token(token)
        self.ledger.call(self.address, contract.approve, spender, 0)
        self.ledger.call(self.address, contract.approve, spender, amount)

    def _swap(self, route: VenueRoute, token_in: str, token_out: str, amount_in: int) -> int:
        router = self.ledger.contract_at(route.router_address)
        require(isinstance(router, Router), f"Unknown router for {route.name}")
        expected = router.quote_exact_input_single(token_in, token_out, route.fee, amount_in, 0)
        # Per-leg floor: the quoted output less the minimum-profit margin.
        min_out = expected * (BASIS_POINTS - self.min_profit_bps) // BASIS_POINTS
        self._approve_exact(token_in, router.address, amount_in)
        params = ExactInputSingleParams(
            token_in=token_in,
            token_out=token_out,
            fee=route.fee,
            recipient=self.address,
            deadline=self.ledger.timestamp + SWAP_DEADLINE_SECONDS,
            amount_in=amount_in,
            amount_out_minimum=min_out,
            sqrt_price_limit_x96=0,
        )
        return self.ledger.call(self.address, router.exact_input_single, params)
