"""Call payloads: module/call registry and the typed encoder for operation bytes.

Payload layout: module_index (u8) ++ call_index (u8) ++ args, each argument
encoded according to its declared kind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .config import (
    FINGERPRINT_SIZE,
    IDENTITY_SIZE,
    MODULE_AGENT_ATTESTATION,
    MODULE_BALANCES,
    MODULE_COMPUTE_POOL,
    MODULE_SETTLEMENT,
    MODULE_TASK_MODE,
    MODULE_ZK_COMPUTE,
)
from .crypto import Keypair
from .encoding import Reader, Writer
from .errors import format_error
from .types import Operation, PaymentIntent

ArgSpec = Tuple[Tuple[str, str], ...]

MODULE_INDEX: Dict[str, int] = {
    MODULE_BALANCES: 5,
    MODULE_TASK_MODE: 50,
    MODULE_COMPUTE_POOL: 51,
    MODULE_AGENT_ATTESTATION: 52,
    MODULE_ZK_COMPUTE: 53,
    MODULE_SETTLEMENT: 54,
}

# (module, function) -> (call_index, args)
CALLS: Dict[Tuple[str, str], Tuple[int, ArgSpec]] = {
    (MODULE_BALANCES, "transferKeepAlive"): (3, (("dest", "account"), ("value", "u128"))),
    (MODULE_TASK_MODE, "createTaskDefinition"): (0, (
        ("model_id", "bytes"),
        ("version", "bytes"),
        ("input_price", "u128"),
        ("output_price", "u128"),
        ("max_tokens", "u64"),
        ("policy_cid", "bytes"),
    )),
    (MODULE_TASK_MODE, "updateTaskDefinition"): (1, (
        ("task_id", "u64"),
        ("input_price", "option_u128"),
        ("output_price", "option_u128"),
        ("max_tokens", "option_u64"),
        ("is_active", "option_bool"),
    )),
    (MODULE_TASK_MODE, "createTaskOrder"): (2, (
        ("task_id", "u64"),
        ("miner", "account"),
        ("input_tokens", "u64"),
        ("output_tokens", "u64"),
    )),
    (MODULE_COMPUTE_POOL, "registerPool"): (0, (
        ("gpu_model", "bytes"),
        ("gpu_memory", "u32"),
        ("has_nvlink", "bool"),
        ("nvlink_efficiency", "u32"),
        ("price_per_task", "u128"),
    )),
    (MODULE_COMPUTE_POOL, "updatePoolConfig"): (1, (
        ("pool_id", "u64"),
        ("gpu_model", "bytes"),
        ("gpu_memory", "u32"),
        ("has_nvlink", "bool"),
        ("nvlink_efficiency", "u32"),
        ("price_per_task", "u128"),
    )),
    (MODULE_COMPUTE_POOL, "submitTask"): (3, (
        ("m", "u32"),
        ("n", "u32"),
        ("k", "u32"),
        ("priority", "u8"),
        ("preferred_pool", "option_u64"),
    )),
    (MODULE_COMPUTE_POOL, "submitProof"): (4, (("task_id", "u64"), ("proof_hash", "h256"))),
    (MODULE_COMPUTE_POOL, "verifyProof"): (5, (("task_id", "u64"), ("result", "bool"))),
    (MODULE_COMPUTE_POOL, "claimReward"): (6, (("task_id", "u64"),)),
    (MODULE_COMPUTE_POOL, "stakeToPool"): (7, (("pool_id", "u64"), ("amount", "u128"))),
    (MODULE_COMPUTE_POOL, "unstakeFromPool"): (8, (("pool_id", "u64"), ("amount", "u128"))),
    (MODULE_AGENT_ATTESTATION, "registerNode"): (0, (("gpu_uuid", "bytes"), ("tflops", "u32"))),
    (MODULE_AGENT_ATTESTATION, "heartbeat"): (1, ()),
    (MODULE_AGENT_ATTESTATION, "submitAttestation"): (2, (
        ("task_id", "u64"),
        ("result_hash", "h256"),
        ("model_id", "bytes"),
        ("input_tokens", "u64"),
        ("output_tokens", "u64"),
    )),
    (MODULE_AGENT_ATTESTATION, "challengeAttestation"): (3, (("attestation_id", "u64"),)),
    (MODULE_AGENT_ATTESTATION, "confirmAttestation"): (4, (("attestation_id", "u64"),)),
    (MODULE_AGENT_ATTESTATION, "resolveChallenge"): (5, (
        ("attestation_id", "u64"),
        ("attester_is_guilty", "bool"),
    )),
    (MODULE_AGENT_ATTESTATION, "updateCapability"): (6, (
        ("model_ids", "bytes_list"),
        ("max_concurrent", "u32"),
        ("price_per_token", "u128"),
        ("region", "bytes"),
    )),
    # dimensions (m, n, k) encode as three consecutive u32
    (MODULE_ZK_COMPUTE, "submitProof"): (0, (
        ("proof", "bytes"),
        ("m", "u32"),
        ("n", "u32"),
        ("k", "u32"),
        ("multiplier_q100", "u32"),
        ("nonce", "u64"),
    )),
    (MODULE_ZK_COMPUTE, "verifyTask"): (1, (("task_id", "u64"),)),
    (MODULE_ZK_COMPUTE, "claimReward"): (2, (("task_id", "u64"),)),
    (MODULE_SETTLEMENT, "submitPaymentIntent"): (0, (
        ("miner", "account"),
        ("amount", "u128"),
        ("nonce", "u64"),
        ("replay_fingerprint", "h256"),
        ("facilitator_signature", "bytes"),
    )),
    (MODULE_SETTLEMENT, "verifySettlement"): (1, (("intent_id", "u64"),)),
    (MODULE_SETTLEMENT, "finalizeSettlement"): (2, (("intent_id", "u64"),)),
    (MODULE_SETTLEMENT, "failPaymentIntent"): (3, (("intent_id", "u64"),)),
}

_BY_INDEX: Dict[Tuple[int, int], Tuple[str, str]] = {
    (MODULE_INDEX[module], index): (module, function)
    for (module, function), (index, _) in CALLS.items()
}


@dataclass
class Call:
    module: str
    function: str
    args: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.module}.{self.function}"


def _write_arg(w: Writer, name: str, kind: str, value: Any) -> None:
    if kind == "account":
        w.write_fixed(name, value, IDENTITY_SIZE)
    elif kind == "h256":
        w.write_fixed(name, value, FINGERPRINT_SIZE)
    elif kind == "u8":
        w.write_u8(value)
    elif kind == "u32":
        w.write_u32(value)
    elif kind == "u64":
        w.write_u64(value)
    elif kind == "u128":
        w.write_u128(value)
    elif kind == "bool":
        w.write_bool(bool(value))
    elif kind == "bytes":
        if not isinstance(value, (bytes, bytearray)):
            raise format_error(f"{name} must be bytes")
        w.write_vec(bytes(value))
    elif kind == "bytes_list":
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, (bytes, bytearray)) for v in value):
            raise format_error(f"{name} must be a list of bytes")
        w.write_compact(len(value))
        for v in value:
            w.write_vec(bytes(v))
    elif kind.startswith("option_"):
        if value is None:
            w.write_bool(False)
            return
        w.write_bool(True)
        _write_arg(w, name, kind[len("option_"):], value)
    else:
        raise format_error(f"unknown argument kind {kind}")


def _read_arg(r: Reader, kind: str) -> Any:
    if kind in ("account", "h256"):
        return r.read_bytes(32)
    if kind == "u8":
        return r.read_u8()
    if kind == "u32":
        return r.read_u32()
    if kind == "u64":
        return r.read_u64()
    if kind == "u128":
        return r.read_u128()
    if kind == "bool":
        return r.read_bool()
    if kind == "bytes":
        return r.read_vec()
    if kind == "bytes_list":
        return [r.read_vec() for _ in range(r.read_compact())]
    if kind.startswith("option_"):
        if not r.read_bool():
            return None
        return _read_arg(r, kind[len("option_"):])
    raise format_error(f"unknown argument kind {kind}")


def encode_call(call: Call) -> bytes:
    spec = CALLS.get((call.module, call.function))
    if spec is None:
        raise format_error(f"unknown call {call}")
    call_index, args = spec
    w = Writer()
    w.write_u8(MODULE_INDEX[call.module])
    w.write_u8(call_index)
    for name, kind in args:
        if name not in call.args and not kind.startswith("option_"):
            raise format_error(f"{call}: missing argument {name}")
        _write_arg(w, name, kind, call.args.get(name))
    extra = set(call.args) - {name for name, _ in args}
    if extra:
        raise format_error(f"{call}: unexpected arguments {sorted(extra)}")
    return w.to_bytes()


def decode_call(data: bytes) -> Call:
    r = Reader(data)
    key = (r.read_u8(), r.read_u8())
    if key not in _BY_INDEX:
        raise format_error(f"unknown call index {key}")
    module, function = _BY_INDEX[key]
    _, spec = CALLS[(module, function)]
    args = {name: _read_arg(r, kind) for name, kind in spec}
    r.finish()
    return Call(module, function, args)


def operation(call: Call, signer: Keypair, label: Optional[str] = None) -> Operation:
    return Operation(payload=encode_call(call), signer=signer.public_key, label=label or str(call))


# --- Builders ---


def transfer_keep_alive(dest: bytes, value: int) -> Call:
    return Call(MODULE_BALANCES, "transferKeepAlive", {"dest": dest, "value": value})


def submit_payment_intent(intent: PaymentIntent) -> Call:
    return Call(MODULE_SETTLEMENT, "submitPaymentIntent", {
        "miner": intent.payee,
        "amount": intent.amount,
        "nonce": intent.nonce,
        "replay_fingerprint": intent.fingerprint,
        "facilitator_signature": intent.signature,
    })


def verify_settlement(intent_id: int) -> Call:
    return Call(MODULE_SETTLEMENT, "verifySettlement", {"intent_id": intent_id})


def finalize_settlement(intent_id: int) -> Call:
    return Call(MODULE_SETTLEMENT, "finalizeSettlement", {"intent_id": intent_id})


def fail_payment_intent(intent_id: int) -> Call:
    return Call(MODULE_SETTLEMENT, "failPaymentIntent", {"intent_id": intent_id})


def create_task_definition(
    model_id: bytes,
    version: bytes,
    input_price: int,
    output_price: int,
    max_tokens: int,
    policy_cid: bytes,
) -> Call:
    return Call(MODULE_TASK_MODE, "createTaskDefinition", {
        "model_id": model_id,
        "version": version,
        "input_price": input_price,
        "output_price": output_price,
        "max_tokens": max_tokens,
        "policy_cid": policy_cid,
    })


def update_task_definition(
    task_id: int,
    input_price: Optional[int] = None,
    output_price: Optional[int] = None,
    max_tokens: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> Call:
    return Call(MODULE_TASK_MODE, "updateTaskDefinition", {
        "task_id": task_id,
        "input_price": input_price,
        "output_price": output_price,
        "max_tokens": max_tokens,
        "is_active": is_active,
    })


def create_task_order(task_id: int, miner: bytes, input_tokens: int, output_tokens: int) -> Call:
    return Call(MODULE_TASK_MODE, "createTaskOrder", {
        "task_id": task_id,
        "miner": miner,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    })


def _pool_args(gpu_model: bytes, gpu_memory: int, has_nvlink: bool, nvlink_efficiency: int, price_per_task: int) -> Dict[str, Any]:
    return {
        "gpu_model": gpu_model,
        "gpu_memory": gpu_memory,
        "has_nvlink": has_nvlink,
        "nvlink_efficiency": nvlink_efficiency,
        "price_per_task": price_per_task,
    }


def register_pool(gpu_model: bytes, gpu_memory: int, has_nvlink: bool, nvlink_efficiency: int, price_per_task: int) -> Call:
    return Call(
        MODULE_COMPUTE_POOL,
        "registerPool",
        _pool_args(gpu_model, gpu_memory, has_nvlink, nvlink_efficiency, price_per_task),
    )


def update_pool_config(
    pool_id: int, gpu_model: bytes, gpu_memory: int, has_nvlink: bool, nvlink_efficiency: int, price_per_task: int
) -> Call:
    args = _pool_args(gpu_model, gpu_memory, has_nvlink, nvlink_efficiency, price_per_task)
    return Call(MODULE_COMPUTE_POOL, "updatePoolConfig", {"pool_id": pool_id, **args})


PRIORITY_LOW = 0
PRIORITY_NORMAL = 1
PRIORITY_HIGH = 2


def submit_task(m: int, n: int, k: int, priority: int = PRIORITY_NORMAL, preferred_pool: Optional[int] = None) -> Call:
    return Call(MODULE_COMPUTE_POOL, "submitTask", {
        "m": m,
        "n": n,
        "k": k,
        "priority": priority,
        "preferred_pool": preferred_pool,
    })


def submit_proof(task_id: int, proof_hash: bytes) -> Call:
    return Call(MODULE_COMPUTE_POOL, "submitProof", {"task_id": task_id, "proof_hash": proof_hash})


def verify_proof(task_id: int, result: bool) -> Call:
    return Call(MODULE_COMPUTE_POOL, "verifyProof", {"task_id": task_id, "result": result})


def claim_reward(task_id: int) -> Call:
    return Call(MODULE_COMPUTE_POOL, "claimReward", {"task_id": task_id})


def stake_to_pool(pool_id: int, amount: int) -> Call:
    return Call(MODULE_COMPUTE_POOL, "stakeToPool", {"pool_id": pool_id, "amount": amount})


def unstake_from_pool(pool_id: int, amount: int) -> Call:
    return Call(MODULE_COMPUTE_POOL, "unstakeFromPool", {"pool_id": pool_id, "amount": amount})


def register_node(gpu_uuid: bytes, tflops: int) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "registerNode", {"gpu_uuid": gpu_uuid, "tflops": tflops})


def heartbeat() -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "heartbeat")


def submit_attestation(
    task_id: int, result_hash: bytes, model_id: bytes, input_tokens: int, output_tokens: int
) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "submitAttestation", {
        "task_id": task_id,
        "result_hash": result_hash,
        "model_id": model_id,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    })


def challenge_attestation(attestation_id: int) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "challengeAttestation", {"attestation_id": attestation_id})


def confirm_attestation(attestation_id: int) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "confirmAttestation", {"attestation_id": attestation_id})


def resolve_challenge(attestation_id: int, attester_is_guilty: bool) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "resolveChallenge", {
        "attestation_id": attestation_id,
        "attester_is_guilty": attester_is_guilty,
    })


def update_capability(model_ids: list, max_concurrent: int, price_per_token: int, region: bytes) -> Call:
    return Call(MODULE_AGENT_ATTESTATION, "updateCapability", {
        "model_ids": list(model_ids),
        "max_concurrent": max_concurrent,
        "price_per_token": price_per_token,
        "region": region,
    })


def submit_zk_proof(proof: bytes, dimensions: Tuple[int, int, int], multiplier_q100: int, nonce: int) -> Call:
    m, n, k = dimensions
    return Call(MODULE_ZK_COMPUTE, "submitProof", {
        "proof": proof,
        "m": m,
        "n": n,
        "k": k,
        "multiplier_q100": multiplier_q100,
        "nonce": nonce,
    })


def verify_zk_task(task_id: int) -> Call:
    return Call(MODULE_ZK_COMPUTE, "verifyTask", {"task_id": task_id})


def claim_zk_reward(task_id: int) -> Call:
    return Call(MODULE_ZK_COMPUTE, "claimReward", {"task_id": task_id})
