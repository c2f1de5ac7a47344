"""balances module: transfers and reserved funds."""

from __future__ import annotations

from ..calls import Call
from ..config import EXISTENTIAL_DEPOSIT, MODULE_BALANCES, U128_MAX
from ..errors import DispatchError
from .state import DispatchContext, LedgerState

INSUFFICIENT_BALANCE = "InsufficientBalance"
EXISTENTIAL_DEPOSIT_ERROR = "ExistentialDeposit"
KEEP_ALIVE = "KeepAlive"
OVERFLOW = "Overflow"


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(MODULE_BALANCES, name, message)


def transfer(state: LedgerState, src: bytes, dest: bytes, value: int, keep_alive: bool = True) -> None:
    sender = state.account(src)
    if sender.free < value:
        raise _reject(INSUFFICIENT_BALANCE, f"free {sender.free} < {value}")
    remaining = sender.free - value
    if keep_alive and remaining < EXISTENTIAL_DEPOSIT:
        raise _reject(KEEP_ALIVE, "transfer would kill the sender account")
    receiver = state.account(dest)
    if receiver.free == 0 and receiver.reserved == 0 and value < EXISTENTIAL_DEPOSIT:
        raise _reject(EXISTENTIAL_DEPOSIT_ERROR, f"{value} below existential deposit")
    if receiver.free + value > U128_MAX:
        raise _reject(OVERFLOW)
    sender.free = remaining
    receiver.free += value


def reserve(state: LedgerState, who: bytes, amount: int) -> None:
    acc = state.account(who)
    if acc.free < amount:
        raise _reject(INSUFFICIENT_BALANCE, f"cannot reserve {amount}, free {acc.free}")
    acc.free -= amount
    acc.reserved += amount


def unreserve(state: LedgerState, who: bytes, amount: int) -> int:
    """Move up to `amount` back to free balance; returns the amount moved."""
    acc = state.account(who)
    moved = min(acc.reserved, amount)
    acc.reserved -= moved
    acc.free += moved
    return moved


def repatriate_reserved(state: LedgerState, src: bytes, dest: bytes, amount: int) -> None:
    """Move reserved funds of `src` into the free balance of `dest`."""
    sender = state.account(src)
    if sender.reserved < amount:
        raise _reject(INSUFFICIENT_BALANCE, f"reserved {sender.reserved} < {amount}")
    sender.reserved -= amount
    state.account(dest).free += amount


def slash_reserved(state: LedgerState, who: bytes, amount: int) -> int:
    """Burn up to `amount` of reserved funds; returns the amount burned."""
    acc = state.account(who)
    burned = min(acc.reserved, amount)
    acc.reserved -= burned
    return burned


def withdraw_fee(state: LedgerState, who: bytes, fee: int) -> bool:
    acc = state.accounts.get(who)
    if acc is None or acc.free < fee:
        return False
    acc.free -= fee
    return True


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    if call.function == "transferKeepAlive":
        transfer(state, ctx.origin, call.args["dest"], call.args["value"], keep_alive=True)
        ctx.deposit(MODULE_BALANCES, "Transfer")
    else:
        raise _reject("CallNotSupported", str(call))
