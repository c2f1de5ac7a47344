"""Dev ledger state model."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..config import (
    GENESIS_BALANCE,
    SETTLEMENT_DELAY_BLOCKS,
    ZK_PALLET_ACCOUNT,
    ZK_REWARD_POOL,
)
from ..types import EmittedEvent, NodeRegistration, PaymentIntent, SettlementReceipt, ZkTask


class OpaqueDispatchError(Exception):
    """A dispatch failure that carries only a message, e.g. a bad origin."""


@dataclass
class AccountData:
    free: int = 0
    reserved: int = 0
    nonce: int = 0


class PoolStatus(Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class TaskStatus(Enum):
    COMPUTING = "Computing"
    PROOF_SUBMITTED = "ProofSubmitted"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass
class ComputePool:
    pool_id: int
    owner: bytes
    gpu_model: bytes
    gpu_memory: int
    has_nvlink: bool
    nvlink_efficiency: int
    price_per_task: int
    deposit: int = 0
    status: PoolStatus = PoolStatus.ACTIVE
    total_stake: int = 0


@dataclass
class ComputeTask:
    task_id: int
    user: bytes
    pool_id: int
    m: int
    n: int
    k: int
    priority: int
    escrow: int
    status: TaskStatus = TaskStatus.COMPUTING
    submitted_at: int = 0
    proof_hash: Optional[bytes] = None
    verifier: Optional[bytes] = None
    reward_claimed: bool = False


@dataclass
class TaskDefinition:
    task_id: int
    admin: bytes
    model_id: bytes
    version: bytes
    input_price: int
    output_price: int
    max_tokens: int
    policy_cid: bytes
    active: bool = True


@dataclass
class TaskOrder:
    order_id: int
    task_id: int
    customer: bytes
    miner: bytes
    input_tokens: int
    output_tokens: int
    charged: int
    created_at: int = 0


class AttestationStatus(Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    SLASHED = "Slashed"
    DEFENDED = "Defended"


@dataclass
class Attestation:
    attestation_id: int
    attester: bytes
    task_id: int
    result_hash: bytes
    model_id: bytes
    input_tokens: int
    output_tokens: int
    deposit: int
    submitted_at: int
    challenge_end: int
    status: AttestationStatus = AttestationStatus.PENDING
    challenger: Optional[bytes] = None


@dataclass
class AgentCapability:
    owner: bytes
    model_ids: tuple[bytes, ...]
    max_concurrent: int
    price_per_token: int
    region: bytes
    updated_at: int = 0


@dataclass
class LedgerState:
    accounts: dict[bytes, AccountData] = field(default_factory=dict)
    height: int = 0
    # x402Settlement
    facilitator: bytes = b""
    settlement_delay: int = SETTLEMENT_DELAY_BLOCKS
    next_intent_id: int = 0
    intents: dict[int, PaymentIntent] = field(default_factory=dict)
    used_nonces: set[tuple[bytes, int]] = field(default_factory=set)
    used_fingerprints: set[bytes] = field(default_factory=set)
    receipts: dict[int, SettlementReceipt] = field(default_factory=dict)
    # computePoolScheduler
    next_pool_id: int = 0
    pools: dict[int, ComputePool] = field(default_factory=dict)
    pool_by_owner: dict[bytes, int] = field(default_factory=dict)
    next_task_id: int = 0
    tasks: dict[int, ComputeTask] = field(default_factory=dict)
    stakes: dict[tuple[int, bytes], int] = field(default_factory=dict)
    # taskMode
    admin: bytes = b""
    oracle_price: Optional[int] = None
    next_definition_id: int = 0
    definitions: dict[int, TaskDefinition] = field(default_factory=dict)
    next_order_id: int = 0
    orders: dict[int, TaskOrder] = field(default_factory=dict)
    # agentAttestation
    nodes: dict[bytes, NodeRegistration] = field(default_factory=dict)
    next_attestation_id: int = 0
    attestations: dict[int, Attestation] = field(default_factory=dict)
    attester_task_count: dict[tuple[bytes, int], int] = field(default_factory=dict)
    capabilities: dict[bytes, AgentCapability] = field(default_factory=dict)
    model_providers: set[tuple[bytes, bytes]] = field(default_factory=set)
    # zkCompute
    next_zk_task_id: int = 0
    zk_tasks: dict[int, ZkTask] = field(default_factory=dict)
    zk_pending: list[int] = field(default_factory=list)
    zk_verified: list[int] = field(default_factory=list)
    miner_scores: dict[bytes, int] = field(default_factory=dict)
    zk_used_nonces: set[tuple[bytes, int]] = field(default_factory=set)
    zk_pending_count: dict[bytes, int] = field(default_factory=dict)

    def account(self, who: bytes) -> AccountData:
        acc = self.accounts.get(who)
        if acc is None:
            acc = AccountData()
            self.accounts[who] = acc
        return acc

    def free_balance(self, who: bytes) -> int:
        acc = self.accounts.get(who)
        return acc.free if acc is not None else 0


@dataclass
class DispatchContext:
    """Origin, block height and the business events one call deposits."""

    origin: bytes
    height: int
    events: list[EmittedEvent] = field(default_factory=list)

    def deposit(self, namespace: str, name: str) -> None:
        self.events.append(EmittedEvent(namespace, name))


def genesis_state(
    endowed: tuple[bytes, ...],
    facilitator: bytes,
    admin: bytes,
    balance: int = GENESIS_BALANCE,
    settlement_delay: int = SETTLEMENT_DELAY_BLOCKS,
    oracle_price: Optional[int] = None,
) -> LedgerState:
    state = LedgerState(
        facilitator=facilitator,
        admin=admin,
        settlement_delay=settlement_delay,
        oracle_price=oracle_price,
    )
    for who in endowed:
        state.accounts[who] = AccountData(free=balance)
    state.accounts[ZK_PALLET_ACCOUNT] = AccountData(free=ZK_REWARD_POOL)
    return state
