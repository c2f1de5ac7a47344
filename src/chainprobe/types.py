"""Core types shared by the confirmation engine, the intent protocol and the dev ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Tuple, Union

from .errors import ErrorKind, ModuleError


@dataclass(frozen=True)
class Operation:
    """A request to mutate remote state. Immutable once built."""

    payload: bytes
    signer: bytes
    label: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.payload, (bytes, bytearray)) or not self.payload:
            raise ValueError("operation payload must be non-empty bytes")


@dataclass(frozen=True)
class EmittedEvent:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}.{self.name}"


# --- Outcomes ---


@dataclass(frozen=True)
class Confirmed:
    block: str
    events: Tuple[EmittedEvent, ...] = ()

    def has_event(self, namespace: str, name: str) -> bool:
        return EmittedEvent(namespace, name) in self.events


@dataclass(frozen=True)
class Rejected:
    error_kind: ErrorKind
    error_detail: str
    module_error: Optional[ModuleError] = None

    def is_module_error(self, module: str, name: str) -> bool:
        return (
            self.error_kind == ErrorKind.BUSINESS_REJECTION
            and self.module_error == ModuleError(module, name)
        )


@dataclass(frozen=True)
class TimedOut:
    pass


Outcome = Union[Confirmed, Rejected, TimedOut]


# --- Remote status stream ---


@dataclass(frozen=True)
class OtherFailure:
    """Unstructured failure: the remote only reported a message."""

    message: str


DispatchFailure = Union[ModuleError, OtherFailure]


@dataclass(frozen=True)
class DispatchOutcome:
    events: Tuple[EmittedEvent, ...] = ()
    failure: Optional[DispatchFailure] = None

    @property
    def success(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class Broadcast:
    """Non-authoritative pool status (ready, future, broadcast, finalized)."""

    stage: str = "broadcast"


@dataclass(frozen=True)
class Included:
    block: str
    result: DispatchOutcome = field(default_factory=DispatchOutcome)


@dataclass(frozen=True)
class Dropped:
    detail: str


@dataclass(frozen=True)
class ConnectionLost:
    detail: str


StatusEvent = Union[Broadcast, Included, Dropped, ConnectionLost]


# --- Payment intents ---


class IntentStatus(IntEnum):
    SUBMITTED = 0
    VERIFIED = 1
    FINALIZED = 2
    FAILED = 3

    @property
    def terminal(self) -> bool:
        return self in (IntentStatus.FINALIZED, IntentStatus.FAILED)


@dataclass
class PaymentIntent:
    payer: bytes
    payee: bytes
    amount: int
    nonce: int
    fingerprint: bytes
    signature: bytes = b""
    intent_id: int = 0
    status: IntentStatus = IntentStatus.SUBMITTED
    created_at: int = 0
    verified_at: Optional[int] = None
    settled_at: Optional[int] = None


@dataclass(frozen=True)
class SettlementReceipt:
    intent_id: int
    payer: bytes
    payee: bytes
    amount: int
    settled_at: int


# --- Compute nodes and zk proofs ---


@dataclass
class NodeRegistration:
    owner: bytes
    gpu_uuid: bytes
    tflops: int
    registered_at: int = 0
    last_heartbeat: int = 0
    is_active: bool = True


class ZkStatus(IntEnum):
    PENDING = 0
    VERIFIED = 1
    FAILED = 2


@dataclass
class ZkTask:
    task_id: int
    miner: bytes
    proof: bytes
    dimensions: Tuple[int, int, int]
    multiplier_q100: int
    base_reward: int
    submission_deposit: int
    status: ZkStatus = ZkStatus.PENDING
    submitted_at: int = 0
    reward_claimed: bool = False
