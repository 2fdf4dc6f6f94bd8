from __future__ import annotations

from typing import List

from chain.errors import require
from chain.ledger import Contract, Ledger
from constants import BASIS_POINTS, FLASH_LOAN_PREMIUM_BPS


class LendingPool(Contract):
    """Uncollateralised same-transaction loans.

    The receiver gets the funds, runs ``execute_operation`` with the pool as
    caller and must leave an allowance covering principal plus premium, which
    the pool pulls back before returning. Anything short of that reverts.
    """

    def __init__(self, ledger: Ledger, premium_bps: int = FLASH_LOAN_PREMIUM_BPS) -> None:
        super().__init__(ledger)
        self.premium_bps = premium_bps

    def premium_for(self, amount: int) -> int:
        return amount * self.premium_bps // BASIS_POINTS

    def flash_loan(
        self,
        receiver_address: str,
        assets: List[str],
        amounts: List[int],
        modes: List[int],
        on_behalf_of: str,
        params: bytes,
        referral_code: int = 0,
    ) -> None:
        require(len(assets) == len(amounts) == len(modes), "LendingPool: inconsistent flash loan params")
        receiver = self.ledger.contract_at(receiver_address)
        require(receiver is not None and hasattr(receiver, 'execute_operation'), "LendingPool: invalid receiver")
        initiator = self.msg_sender

        premiums = [self.premium_for(amount) for amount in amounts]
        for asset, amount, mode in zip(assets, amounts, modes):
            require(mode == 0, "LendingPool: only no-debt flash loans are supported")
            token = self.ledger.contract_at(asset)
            require(token is not None, "LendingPool: unknown asset")
            require(token.balance_of(self.address) >= amount, "LendingPool: insufficient liquidity")
            self.ledger.call(self.address, token.transfer, receiver.address, amount)

        ok = self.ledger.call(
            self.address, receiver.execute_operation, list(assets), list(amounts), premiums, initiator, params,
        )
        require(ok is True, "LendingPool: invalid flash loan executor return")

        for asset, amount, premium in zip(assets, amounts, premiums):
            token = self.ledger.contract_at(asset)
            self.ledger.call(self.address, token.transfer_from, receiver.address, self.address, amount + premium)
            self.emit(
                'FlashLoan',
                target=receiver.address,
                initiator=initiator,
                asset=asset.lower(),
                amount=amount,
                premium=premium,
                referralCode=referral_code,
            )
