from __future__ import annotations

from typing import Optional

from chain.errors import require
from chain.ledger import Contract, Ledger
from constants import ZERO_ADDRESS


class ERC20Token(Contract):
    """Minimal fungible token: balances, allowances, transfers."""

    def __init__(self, ledger: Ledger, symbol: str, decimals: int = 18, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.symbol = symbol
        self.decimals = decimals
        self.storage.update(balances={}, allowances={}, total_supply=0)

    def total_supply(self) -> int:
        return self.storage['total_supply']

    def balance_of(self, account: str) -> int:
        return self.storage['balances'].get(account.lower(), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.storage['allowances'].get((owner.lower(), spender.lower()), 0)

    def approve(self, spender: str, amount: int) -> bool:
        require(amount >= 0, "ERC20: negative allowance")
        owner = self.msg_sender
        self.storage['allowances'][(owner, spender.lower())] = amount
        self.emit('Approval', owner=owner, spender=spender.lower(), value=amount)
        return True

    def transfer(self, to: str, amount: int) -> bool:
        self._move(self.msg_sender, to.lower(), amount)
        return True

    def transfer_from(self, owner: str, to: str, amount: int) -> bool:
        spender = self.msg_sender
        key = (owner.lower(), spender)
        allowed = self.storage['allowances'].get(key, 0)
        require(allowed >= amount, "ERC20: insufficient allowance")
        self.storage['allowances'][key] = allowed - amount
        self._move(owner.lower(), to.lower(), amount)
        return True

    def mint(self, to: str, amount: int) -> None:
        """Issues new supply; used when seeding balances and pool liquidity."""
        require(amount >= 0, "ERC20: negative mint")
        balances = self.storage['balances']
        balances[to.lower()] = balances.get(to.lower(), 0) + amount
        self.storage['total_supply'] += amount
        self.emit('Transfer', sender=ZERO_ADDRESS, to=to.lower(), value=amount)

    def _move(self, sender: str, to: str, amount: int) -> None:
        require(amount >= 0, "ERC20: negative amount")
        require(to != ZERO_ADDRESS, "ERC20: transfer to the zero address")
        balances = self.storage['balances']
        balance = balances.get(sender, 0)
        require(balance >= amount, "ERC20: transfer amount exceeds balance")
        balances[sender] = balance - amount
        balances[to] = balances.get(to, 0) + amount
        self.emit('Transfer', sender=sender, to=to, value=amount)
