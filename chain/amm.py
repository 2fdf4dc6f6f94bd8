"""Constant-product venues: pair pools, a factory registry and a swap router."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from chain.errors import require
from chain.ledger import Contract, Ledger
from chain.token import ERC20Token
from constants import BASIS_POINTS, ZERO_ADDRESS


@dataclass(frozen=True)
class ExactInputSingleParams:
    token_in: str
    token_out: str
    fee: int
    recipient: str
    deadline: int
    amount_in: int
    amount_out_minimum: int
    sqrt_price_limit_x96: int = 0


def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    token_a, token_b = token_a.lower(), token_b.lower()
    require(token_a != token_b, "AMM: identical addresses")
    return (token_a, token_b) if token_a < token_b else (token_b, token_a)


class PairPool(Contract):
    def __init__(self, ledger: Ledger, token_a: str, token_b: str, fee_bps: int = 25) -> None:
        super().__init__(ledger)
        self.token0, self.token1 = sort_tokens(token_a, token_b)
        self.fee_bps = fee_bps
        self.storage.update(reserve0=0, reserve1=0)

    def get_reserves(self) -> Tuple[int, int]:
        return self.storage['reserve0'], self.storage['reserve1']

    def reserves_for(self, token_in: str) -> Tuple[int, int]:
        reserve0, reserve1 = self.get_reserves()
        if token_in.lower() == self.token0:
            return reserve0, reserve1
        require(token_in.lower() == self.token1, "AMM: token not in pair")
        return reserve1, reserve0

    def get_amount_out(self, amount_in: int, token_in: str) -> int:
        require(amount_in > 0, "AMM: insufficient input amount")
        reserve_in, reserve_out = self.reserves_for(token_in)
        require(reserve_in > 0 and reserve_out > 0, "AMM: insufficient liquidity")
        amount_in_with_fee = amount_in * (BASIS_POINTS - self.fee_bps)
        return amount_in_with_fee * reserve_out // (reserve_in * BASIS_POINTS + amount_in_with_fee)

    def sync(self) -> None:
        """Sets reserves to the pool's actual token balances."""
        self._update(self._balance(self.token0), self._balance(self.token1))

    def swap(self, amount0_out: int, amount1_out: int, to: str) -> None:
        """Sends out the requested amounts; input must already sit in the pool."""
        require(amount0_out > 0 or amount1_out > 0, "AMM: insufficient output amount")
        reserve0, reserve1 = self.get_reserves()
        require(amount0_out < reserve0 and amount1_out < reserve1, "AMM: insufficient liquidity")

        if amount0_out:
            self.ledger.call(self.address, self._token(self.token0).transfer, to, amount0_out)
        if amount1_out:
            self.ledger.call(self.address, self._token(self.token1).transfer, to, amount1_out)

        balance0, balance1 = self._balance(self.token0), self._balance(self.token1)
        amount0_in = max(0, balance0 - (reserve0 - amount0_out))
        amount1_in = max(0, balance1 - (reserve1 - amount1_out))
        require(amount0_in > 0 or amount1_in > 0, "AMM: insufficient input amount")

        adjusted0 = balance0 * BASIS_POINTS - amount0_in * self.fee_bps
        adjusted1 = balance1 * BASIS_POINTS - amount1_in * self.fee_bps
        require(adjusted0 * adjusted1 >= reserve0 * reserve1 * BASIS_POINTS ** 2, "AMM: K")

        self._update(balance0, balance1)
        self.emit(
            'Swap',
            sender=self.msg_sender,
            amount0In=amount0_in,
            amount1In=amount1_in,
            amount0Out=amount0_out,
            amount1Out=amount1_out,
            to=to.lower(),
        )

    def _update(self, balance0: int, balance1: int) -> None:
        self.storage['reserve0'] = balance0
        self.storage['reserve1'] = balance1
        self.emit('Sync', reserve0=balance0, reserve1=balance1)

    def _token(self, address: str) -> ERC20Token:
        return self.ledger.contract_at(address)

    def _balance(self, address: str) -> int:
        return self._token(address).balance_of(self.address)


class Factory(Contract):
    def __init__(self, ledger: Ledger, fee_bps: int = 25) -> None:
        super().__init__(ledger)
        self.fee_bps = fee_bps
        self.storage.update(pairs={})

    def create_pair(self, token_a: str, token_b: str) -> PairPool:
        key = sort_tokens(token_a, token_b)
        require(key not in self.storage['pairs'], "AMM: pair exists")
        pool = PairPool(self.ledger, token_a, token_b, fee_bps=self.fee_bps)
        self.storage['pairs'][key] = pool.address
        self.emit('PairCreated', token0=key[0], token1=key[1], pair=pool.address)
        return pool

    def get_pair(self, token_a: str, token_b: str) -> str:
        if token_a.lower() == token_b.lower():
            return ZERO_ADDRESS
        return self.storage['pairs'].get(sort_tokens(token_a, token_b), ZERO_ADDRESS)

    def pool_for(self, token_a: str, token_b: str) -> Optional[PairPool]:
        return self.ledger.contract_at(self.get_pair(token_a, token_b))


class Router(Contract):
    """Swap entry point of one venue, bound to that venue's factory."""

    def __init__(self, ledger: Ledger, factory: Factory, name: str = '') -> None:
        super().__init__(ledger)
        self.factory = factory
        self.name = name

    def get_amounts_out(self, amount_in: int, path: List[str]) -> List[int]:
        require(len(path) >= 2, "Router: invalid path")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            pool = self._pool(token_in, token_out)
            amounts.append(pool.get_amount_out(amounts[-1], token_in))
        return amounts

    def quote_exact_input_single(
        self,
        token_in: str,
        token_out: str,
        fee: int,
        amount_in: int,
        sqrt_price_limit_x96: int = 0,
    ) -> int:
        return self._pool(token_in, token_out).get_amount_out(amount_in, token_in)

    def exact_input_single(self, params: ExactInputSingleParams) -> int:
        require(params.deadline >= self.ledger.timestamp, "Router: transaction too old")
        pool = self._pool(params.token_in, params.token_out)
        amount_out = pool.get_amount_out(params.amount_in, params.token_in)
        require(amount_out >= params.amount_out_minimum, "Router: too little received")

        token_in = self.ledger.contract_at(params.token_in)
        self.ledger.call(self.address, token_in.transfer_from, self.msg_sender, pool.address, params.amount_in)
        if params.token_in.lower() == pool.token0:
            amount0_out, amount1_out = 0, amount_out
        else:
            amount0_out, amount1_out = amount_out, 0
        self.ledger.call(self.address, pool.swap, amount0_out, amount1_out, params.recipient)
        return amount_out

    def _pool(self, token_a: str, token_b: str) -> PairPool:
        pool = self.factory.pool_for(token_a, token_b)
        require(pool is not None, "Router: pair does not exist")
        return pool
