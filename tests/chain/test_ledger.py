import pytest

from chain import ERC20Token, Ledger, Revert
from chain.amm import ExactInputSingleParams, Factory, Router
from constants import ZERO_ADDRESS

UNIT = 10 ** 18


@pytest.fixture
def ledger():
    return Ledger()


def test_failed_transaction_restores_storage_and_events(ledger):
    token = ERC20Token(ledger, 'USD')
    alice, bob = ledger.new_address(), ledger.new_address()
    token.mint(alice, 100)
    event_count = len(ledger.events)

    def transfer_then_fail():
        token.transfer(bob, 60)
        raise Revert("late failure")

    with pytest.raises(Revert, match="late failure"):
        ledger.execute(alice, transfer_then_fail)

    assert token.balance_of(alice) == 100
    assert token.balance_of(bob) == 0
    assert len(ledger.events) == event_count


def test_successful_transaction_commits(ledger):
    token = ERC20Token(ledger, 'USD')
    alice, bob = ledger.new_address(), ledger.new_address()
    token.mint(alice, 100)

    assert ledger.execute(alice, token.transfer, bob, 60) is True

    assert token.balance_of(bob) == 60
    assert ledger.events_named('Transfer')[-1].args == {'sender': alice, 'to': bob, 'value': 60}


def test_call_sets_and_restores_sender(ledger):
    token = ERC20Token(ledger, 'USD')
    alice, bob = ledger.new_address(), ledger.new_address()
    seen = []

    def nested():
        seen.append(token.msg_sender)
        ledger.call(bob, lambda: seen.append(token.msg_sender))
        seen.append(token.msg_sender)

    ledger.execute(alice, nested)

    assert seen == [alice, bob, alice]
    with pytest.raises(Revert):
        token.msg_sender


def test_transactions_cannot_nest(ledger):
    with pytest.raises(RuntimeError):
        with ledger.transaction(ledger.new_address()):
            with ledger.transaction(ledger.new_address()):
                pass


def test_transfer_from_consumes_allowance(ledger):
    token = ERC20Token(ledger, 'USD')
    owner, spender = ledger.new_address(), ledger.new_address()
    token.mint(owner, 10)
    ledger.execute(owner, token.approve, spender, 7)

    ledger.execute(spender, token.transfer_from, owner, spender, 5)
    assert token.allowance(owner, spender) == 2

    with pytest.raises(Revert, match="insufficient allowance"):
        ledger.execute(spender, token.transfer_from, owner, spender, 3)
    assert token.balance_of(spender) == 5


def test_transfer_rejects_zero_address_and_overdraft(ledger):
    token = ERC20Token(ledger, 'USD')
    alice = ledger.new_address()
    token.mint(alice, 1)

    with pytest.raises(Revert, match="zero address"):
        ledger.execute(alice, token.transfer, ZERO_ADDRESS, 1)
    with pytest.raises(Revert, match="exceeds balance"):
        ledger.execute(alice, token.transfer, ledger.new_address(), 2)


@pytest.fixture
def venue(ledger):
    base, quote = ERC20Token(ledger, 'BNB'), ERC20Token(ledger, 'USD')
    factory = Factory(ledger, fee_bps=25)
    router = Router(ledger, factory, 'PancakeSwap')
    pool = factory.create_pair(base.address, quote.address)
    base.mint(pool.address, 1000 * UNIT)
    quote.mint(pool.address, 100000 * UNIT)
    pool.sync()
    return base, quote, factory, router, pool


def test_factory_lookup_is_order_independent(ledger, venue):
    base, quote, factory, _, pool = venue
    assert factory.get_pair(base.address, quote.address) == pool.address
    assert factory.get_pair(quote.address.upper().replace('0X', '0x'), base.address) == pool.address
    assert factory.get_pair(base.address, ledger.new_address()) == ZERO_ADDRESS


def test_amounts_out_apply_fee_and_price_impact(venue):
    base, quote, _, router, _ = venue
    amounts = router.get_amounts_out(UNIT, [base.address, quote.address])

    assert amounts[0] == UNIT
    # Just under 100 * 0.9975 because of price impact.
    assert 99 * UNIT < amounts[1] < 9975 * UNIT // 100
    assert router.quote_exact_input_single(base.address, quote.address, 2500, UNIT) == amounts[1]


def test_exact_input_single_swaps_and_emits_events(ledger, venue):
    base, quote, _, router, pool = venue
    trader = ledger.new_address()
    base.mint(trader, UNIT)
    expected = router.quote_exact_input_single(base.address, quote.address, 2500, UNIT)

    def swap():
        base.approve(router.address, UNIT)
        return ledger.call(trader, router.exact_input_single, ExactInputSingleParams(
            token_in=base.address,
            token_out=quote.address,
            fee=2500,
            recipient=trader,
            deadline=ledger.timestamp,
            amount_in=UNIT,
            amount_out_minimum=expected,
        ))

    assert ledger.execute(trader, swap) == expected
    assert quote.balance_of(trader) == expected
    assert pool.get_reserves() == (1001 * UNIT, 100000 * UNIT - expected)
    names = [entry.name for entry in ledger.events if entry.address == pool.address]
    assert names[-2:] == ['Sync', 'Swap']


@pytest.mark.parametrize(
    "deadline_offset, minimum_extra, reason",
    [(-1, 0, "too old"), (0, 1, "too little received")],
)
def test_exact_input_single_guards(ledger, venue, deadline_offset, minimum_extra, reason):
    base, quote, _, router, pool = venue
    trader = ledger.new_address()
    base.mint(trader, UNIT)
    expected = router.quote_exact_input_single(base.address, quote.address, 2500, UNIT)
    params = ExactInputSingleParams(
        token_in=base.address,
        token_out=quote.address,
        fee=2500,
        recipient=trader,
        deadline=ledger.timestamp + deadline_offset,
        amount_in=UNIT,
        amount_out_minimum=expected + minimum_extra,
    )

    with pytest.raises(Revert, match=reason):
        ledger.execute(trader, router.exact_input_single, params)
    assert pool.get_reserves() == (1000 * UNIT, 100000 * UNIT)
