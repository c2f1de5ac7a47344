"""Dev ledger runtime: fee charging, atomic dispatch, and the storage view."""

from __future__ import annotations

from copy import deepcopy
from typing import Callable, Optional

from blake3 import blake3

from .. import storage
from ..calls import Call
from ..config import (
    MODULE_AGENT_ATTESTATION,
    MODULE_BALANCES,
    MODULE_COMPUTE_POOL,
    MODULE_SETTLEMENT,
    MODULE_SYSTEM,
    MODULE_TASK_MODE,
    MODULE_TX_PAYMENT,
    MODULE_ZK_COMPUTE,
    TX_FEE,
)
from ..encoding import (
    encode_account,
    encode_intent_record,
    encode_node_record,
    encode_u64,
    encode_zk_task_record,
)
from ..errors import DispatchError
from ..types import DispatchOutcome, EmittedEvent, OtherFailure
from . import agent_attestation, balances, compute_pool, settlement, task_mode, zk_compute
from .state import DispatchContext, LedgerState, OpaqueDispatchError

ModuleApply = Callable[[LedgerState, DispatchContext, Call], None]

_MODULES: dict[str, ModuleApply] = {
    MODULE_BALANCES: balances.apply,
    MODULE_SETTLEMENT: settlement.apply,
    MODULE_COMPUTE_POOL: compute_pool.apply,
    MODULE_TASK_MODE: task_mode.apply,
    MODULE_AGENT_ATTESTATION: agent_attestation.apply,
    MODULE_ZK_COMPUTE: zk_compute.apply,
}

_WITHDRAW = EmittedEvent(MODULE_BALANCES, "Withdraw")
_FEE_PAID = EmittedEvent(MODULE_TX_PAYMENT, "TransactionFeePaid")
_SUCCESS = EmittedEvent(MODULE_SYSTEM, "ExtrinsicSuccess")
_FAILED = EmittedEvent(MODULE_SYSTEM, "ExtrinsicFailed")


def can_pay_fee(state: LedgerState, who: bytes, pending: int = 0) -> bool:
    """True when `who` covers the fee for `pending` queued operations plus one more."""
    return state.free_balance(who) >= TX_FEE * (pending + 1)


def apply_operation(
    state: LedgerState, origin: bytes, call: Call, height: int
) -> tuple[LedgerState, Optional[DispatchOutcome]]:
    """Apply one included operation.

    The fee and nonce are charged whether or not the call succeeds; the call's
    own effects are committed only on success. Returns (state, None) when the
    fee can no longer be paid: the operation is invalid and is not included.
    """
    charged = deepcopy(state)
    if not balances.withdraw_fee(charged, origin, TX_FEE):
        return state, None
    charged.account(origin).nonce += 1

    working = deepcopy(charged)
    ctx = DispatchContext(origin=origin, height=height)
    failure = None
    try:
        _MODULES[call.module](working, ctx, call)
    except DispatchError as exc:
        failure = exc.module_error
    except OpaqueDispatchError as exc:
        failure = OtherFailure(str(exc))

    if failure is not None:
        events = (_WITHDRAW, _FEE_PAID, _FAILED)
        return charged, DispatchOutcome(events=events, failure=failure)
    events = (_WITHDRAW, *ctx.events, _FEE_PAID, _SUCCESS)
    return working, DispatchOutcome(events=events)


def storage_snapshot(state: LedgerState) -> dict[bytes, bytes]:
    """Encode the queryable storage items of `state`."""
    out: dict[bytes, bytes] = {}
    for who, acc in state.accounts.items():
        out[storage.account_key(who)] = encode_account(acc.free, acc.reserved)
    out[storage.next_intent_id_key()] = encode_u64(state.next_intent_id)
    for intent_id, intent in state.intents.items():
        out[storage.intent_key(intent_id)] = encode_intent_record(intent)
    out[storage.next_pool_id_key()] = encode_u64(state.next_pool_id)
    out[storage.next_task_id_key()] = encode_u64(state.next_task_id)
    for (pool_id, who), amount in state.stakes.items():
        out[storage.pool_stake_key(pool_id, who)] = storage.encode_u128(amount)
    out[storage.next_definition_id_key()] = encode_u64(state.next_definition_id)
    out[storage.next_order_id_key()] = encode_u64(state.next_order_id)
    for who, node in state.nodes.items():
        out[storage.node_key(who)] = encode_node_record(node)
    out[storage.next_attestation_id_key()] = encode_u64(state.next_attestation_id)
    out[storage.next_zk_task_id_key()] = encode_u64(state.next_zk_task_id)
    for task_id, task in state.zk_tasks.items():
        out[storage.zk_task_key(task_id)] = encode_zk_task_record(task)
    for who, score in state.miner_scores.items():
        out[storage.miner_score_key(who)] = storage.encode_u32(score)
    return out


def state_digest(snapshot: dict[bytes, bytes]) -> bytes:
    """BLAKE3-256 over the snapshot in key order."""
    buf = bytearray()
    for key in sorted(snapshot):
        value = snapshot[key]
        buf += encode_u64(len(key)) + key
        buf += encode_u64(len(value)) + value
    return blake3(bytes(buf)).digest()
