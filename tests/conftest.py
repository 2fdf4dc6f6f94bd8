from dataclasses import dataclass

import pytest

from analysis.models import VenueSide
from chain import ERC20Token, Factory, FlashArbitrage, LendingPool, Ledger, PairPool, Router, VenueRoute

UNIT = 10 ** 18


@dataclass
class ArbitrageWorld:
    ledger: Ledger
    owner: str
    base: ERC20Token
    quote: ERC20Token
    router_a: Router
    router_b: Router
    pool_a: PairPool
    pool_b: PairPool
    lending_pool: LendingPool
    contract: FlashArbitrage


def build_world(price_a=100, price_b=103, depth=1000, loan_liquidity=1000, min_profit_bps=10) -> ArbitrageWorld:
    """Two constant-product venues quoting ``price_*`` quote tokens per base token."""
    ledger = Ledger()
    owner = ledger.new_address()
    base = ERC20Token(ledger, 'BNB')
    quote = ERC20Token(ledger, 'USD')

    def venue(name, price):
        factory = Factory(ledger, fee_bps=25)
        router = Router(ledger, factory, name)
        pool = factory.create_pair(base.address, quote.address)
        base.mint(pool.address, depth * UNIT)
        quote.mint(pool.address, depth * price * UNIT)
        pool.sync()
        return router, pool

    router_a, pool_a = venue('PancakeSwap', price_a)
    router_b, pool_b = venue('BiSwap', price_b)

    lending_pool = LendingPool(ledger)
    base.mint(lending_pool.address, loan_liquidity * UNIT)

    contract = FlashArbitrage(
        ledger,
        owner=owner,
        lending_pool=lending_pool,
        venues={
            VenueSide.A: VenueRoute('PancakeSwap', router_a.address),
            VenueSide.B: VenueRoute('BiSwap', router_b.address),
        },
        min_profit_bps=min_profit_bps,
    )
    ledger.events.clear()
    return ArbitrageWorld(ledger, owner, base, quote, router_a, router_b, pool_a, pool_b, lending_pool, contract)


@pytest.fixture
def world():
    return build_world()


@pytest.fixture
def flat_world():
    """Both venues at the same price; every round trip loses the fees."""
    return build_world(price_a=100, price_b=100)


@pytest.fixture
def make_world():
    return build_world
