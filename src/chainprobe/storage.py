"""Storage items the harness reads back after an operation, and their readers."""

from __future__ import annotations

from typing import Optional, Tuple

from .config import (
    INITIAL_MINER_SCORE,
    MODULE_AGENT_ATTESTATION,
    MODULE_COMPUTE_POOL,
    MODULE_SETTLEMENT,
    MODULE_SYSTEM,
    MODULE_TASK_MODE,
    MODULE_ZK_COMPUTE,
)
from .encoding import (
    Reader,
    Writer,
    decode_account,
    decode_intent_record,
    decode_node_record,
    decode_u64,
    decode_zk_task_record,
    encode_u64,
    storage_key,
)
from .remote import RemoteSystem
from .types import NodeRegistration, PaymentIntent, ZkTask


def account_key(who: bytes) -> bytes:
    return storage_key(MODULE_SYSTEM, "Account", who)


def next_intent_id_key() -> bytes:
    return storage_key(MODULE_SETTLEMENT, "NextIntentId")


def intent_key(intent_id: int) -> bytes:
    return storage_key(MODULE_SETTLEMENT, "PaymentIntents", encode_u64(intent_id))


def next_pool_id_key() -> bytes:
    return storage_key(MODULE_COMPUTE_POOL, "NextPoolId")


def next_task_id_key() -> bytes:
    return storage_key(MODULE_COMPUTE_POOL, "NextTaskId")


def pool_stake_key(pool_id: int, who: bytes) -> bytes:
    return storage_key(MODULE_COMPUTE_POOL, "PoolStakes", encode_u64(pool_id) + who)


def next_definition_id_key() -> bytes:
    return storage_key(MODULE_TASK_MODE, "NextTaskId")


def next_order_id_key() -> bytes:
    return storage_key(MODULE_TASK_MODE, "NextOrderId")


def node_key(who: bytes) -> bytes:
    return storage_key(MODULE_AGENT_ATTESTATION, "Nodes", who)


def next_attestation_id_key() -> bytes:
    return storage_key(MODULE_AGENT_ATTESTATION, "NextAttestationId")


def next_zk_task_id_key() -> bytes:
    return storage_key(MODULE_ZK_COMPUTE, "NextTaskId")


def zk_task_key(task_id: int) -> bytes:
    return storage_key(MODULE_ZK_COMPUTE, "Tasks", encode_u64(task_id))


def miner_score_key(who: bytes) -> bytes:
    return storage_key(MODULE_ZK_COMPUTE, "MinerScores", who)


def encode_u128(v: int) -> bytes:
    w = Writer()
    w.write_u128(v)
    return w.to_bytes()


def decode_u128(data: bytes) -> int:
    r = Reader(data)
    v = r.read_u128()
    r.finish()
    return v


def encode_u32(v: int) -> bytes:
    w = Writer()
    w.write_u32(v)
    return w.to_bytes()


def decode_u32(data: bytes) -> int:
    r = Reader(data)
    v = r.read_u32()
    r.finish()
    return v


# --- Readers ---


async def read_account(remote: RemoteSystem, who: bytes) -> Tuple[int, int]:
    """(free, reserved); an unknown account reads as empty."""
    raw = await remote.query(account_key(who))
    if raw is None:
        return 0, 0
    return decode_account(raw)


async def read_counter(remote: RemoteSystem, key: bytes) -> int:
    raw = await remote.query(key)
    return decode_u64(raw) if raw is not None else 0


async def read_intent(remote: RemoteSystem, intent_id: int) -> Optional[PaymentIntent]:
    raw = await remote.query(intent_key(intent_id))
    if raw is None:
        return None
    return decode_intent_record(raw)


async def read_stake(remote: RemoteSystem, pool_id: int, who: bytes) -> int:
    raw = await remote.query(pool_stake_key(pool_id, who))
    return decode_u128(raw) if raw is not None else 0


async def read_node(remote: RemoteSystem, who: bytes) -> Optional[NodeRegistration]:
    raw = await remote.query(node_key(who))
    return decode_node_record(raw) if raw is not None else None


async def read_zk_task(remote: RemoteSystem, task_id: int) -> Optional[ZkTask]:
    raw = await remote.query(zk_task_key(task_id))
    return decode_zk_task_record(raw) if raw is not None else None


async def read_miner_score(remote: RemoteSystem, who: bytes) -> int:
    """A miner without a stored score has the initial score."""
    raw = await remote.query(miner_score_key(who))
    return decode_u32(raw) if raw is not None else INITIAL_MINER_SCORE
