"""A single-process ledger with all-or-nothing transactions.

Every contract keeps its mutable state in ``storage``. Entering
:meth:`Ledger.transaction` snapshots all storages and the event log; any
exception escaping the block restores the snapshot before it propagates, so a
failed transaction leaves no trace apart from the exception itself.
"""
from __future__ import annotations

import copy
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from chain.errors import Revert


@dataclass(frozen=True)
class LogEntry:
    address: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


class Contract:
    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        self.ledger = ledger
        self.address = (address or ledger.new_address()).lower()
        self.storage: Dict[str, Any] = {}
        ledger.register(self)

    @property
    def msg_sender(self) -> str:
        return self.ledger.msg_sender

    def emit(self, name: str, **args: Any) -> None:
        self.ledger.emit(self.address, name, args)


_Snapshot = Tuple[Dict[str, Dict[str, Any]], int]


class Ledger:
    def __init__(self, timestamp: int = 1_700_000_000) -> None:
        self.timestamp = timestamp
        self.events: List[LogEntry] = []
        self._contracts: Dict[str, Contract] = {}
        self._callers: List[str] = []
        self._next_address = 1
        self._in_transaction = False

    def new_address(self) -> str:
        address = '0x' + format(0x1000 + self._next_address, '040x')
        self._next_address += 1
        return address

    def register(self, contract: Contract) -> None:
        if contract.address in self._contracts:
            raise ValueError(f"address {contract.address} already in use")
        self._contracts[contract.address] = contract

    def contract_at(self, address: Optional[str]) -> Optional[Contract]:
        if not address:
            return None
        return self._contracts.get(address.lower())

    @property
    def msg_sender(self) -> str:
        if not self._callers:
            raise Revert("no active call")
        return self._callers[-1]

    def emit(self, address: str, name: str, args: Dict[str, Any]) -> None:
        self.events.append(LogEntry(address=address, name=name, args=dict(args)))

    def events_named(self, name: str) -> List[LogEntry]:
        return [entry for entry in self.events if entry.name == name]

    def call(self, sender: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invokes ``fn`` with ``sender`` as ``msg_sender`` for its duration."""
        self._callers.append(sender.lower())
        try:
            return fn(*args, **kwargs)
        finally:
            self._callers.pop()

    @contextmanager
    def transaction(self, sender: str) -> Iterator[None]:
        if self._in_transaction:
            raise RuntimeError("transactions cannot be nested")
        snapshot = self._snapshot()
        self._in_transaction = True
        self._callers.append(sender.lower())
        try:
            yield
        except Exception:
            self._restore(snapshot)
            raise
        finally:
            self._callers.pop()
            self._in_transaction = False

    def execute(self, sender: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Runs ``fn`` as a complete transaction sent by ``sender``."""
        with self.transaction(sender):
            return fn(*args, **kwargs)

    def _snapshot(self) -> _Snapshot:
        storages = {address: copy.deepcopy(contract.storage) for address, contract in self._contracts.items()}
        return storages, len(self.events)

    def _restore(self, snapshot: _Snapshot) -> None:
        storages, event_count = snapshot
        for address, storage in storages.items():
            self._contracts[address].storage = storage
        del self.events[event_count:]
