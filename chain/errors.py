"""Failure raised by contract code; aborts and rolls back the enclosing transaction."""


class Revert(Exception):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(reason or "execution reverted")


def require(condition: bool, reason: str) -> None:
    if not condition:
        raise Revert(reason)
