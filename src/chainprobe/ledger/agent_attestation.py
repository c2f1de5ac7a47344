"""agentAttestation module: compute node registry, capabilities and result attestations.

An attestation reserves a deposit from the attester and opens a challenge
window. Unchallenged attestations are confirmed by the admin once the window
has passed; challenged ones are resolved by the admin, slashing a share of the
deposit when the attester is found guilty.
"""

from __future__ import annotations

from ..calls import Call
from ..config import (
    ATTESTATION_DEPOSIT,
    CHALLENGE_WINDOW_BLOCKS,
    HEARTBEAT_INTERVAL_BLOCKS,
    MAX_GPU_UUID_LEN,
    MAX_MODEL_ID_LEN,
    MAX_MODELS_PER_AGENT,
    MAX_REGION_LEN,
    MODULE_AGENT_ATTESTATION,
    SLASH_PERCENT,
)
from ..errors import DispatchError
from ..types import NodeRegistration
from . import balances
from .state import (
    AgentCapability,
    Attestation,
    AttestationStatus,
    DispatchContext,
    LedgerState,
    OpaqueDispatchError,
)

M = MODULE_AGENT_ATTESTATION


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(M, name, message)


def _require_admin(state: LedgerState, ctx: DispatchContext) -> None:
    if state.admin and ctx.origin != state.admin:
        raise OpaqueDispatchError("BadOrigin")


def _require_node(state: LedgerState, who: bytes) -> NodeRegistration:
    node = state.nodes.get(who)
    if node is None:
        raise _reject("NodeNotRegistered")
    return node


def _get_pending(state: LedgerState, attestation_id: int) -> Attestation:
    att = state.attestations.get(attestation_id)
    if att is None:
        raise _reject("AttestationNotFound", f"attestation {attestation_id}")
    if att.status != AttestationStatus.PENDING:
        raise _reject("InvalidStatus", att.status.value)
    return att


def providers_for_model(state: LedgerState, model_id: bytes) -> list[bytes]:
    """Active nodes that advertise `model_id`."""
    return sorted(
        who
        for model, who in state.model_providers
        if model == model_id and who in state.nodes and state.nodes[who].is_active
    )


def _register_node(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    who = ctx.origin
    if who in state.nodes:
        raise _reject("NodeAlreadyRegistered")
    gpu_uuid = args["gpu_uuid"]
    if len(gpu_uuid) > MAX_GPU_UUID_LEN:
        raise _reject("ArithmeticOverflow", "gpu uuid too long")
    state.nodes[who] = NodeRegistration(
        owner=who,
        gpu_uuid=gpu_uuid,
        tflops=args["tflops"],
        registered_at=ctx.height,
        last_heartbeat=ctx.height,
    )
    ctx.deposit(M, "NodeRegistered")


def _heartbeat(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    node = _require_node(state, ctx.origin)
    due = node.last_heartbeat + HEARTBEAT_INTERVAL_BLOCKS
    if ctx.height < due:
        raise _reject("HeartbeatTooEarly", f"next heartbeat at block {due}")
    node.last_heartbeat = ctx.height
    node.is_active = True
    ctx.deposit(M, "HeartbeatReceived")


def _submit_attestation(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    attester = ctx.origin
    _require_node(state, attester)
    try:
        balances.reserve(state, attester, ATTESTATION_DEPOSIT)
    except DispatchError:
        raise _reject("InsufficientDeposit") from None
    model_id = args["model_id"]
    if len(model_id) > MAX_MODEL_ID_LEN:
        raise _reject("ArithmeticOverflow", "model id too long")

    attestation_id = state.next_attestation_id
    state.next_attestation_id += 1
    state.attestations[attestation_id] = Attestation(
        attestation_id=attestation_id,
        attester=attester,
        task_id=args["task_id"],
        result_hash=args["result_hash"],
        model_id=model_id,
        input_tokens=args["input_tokens"],
        output_tokens=args["output_tokens"],
        deposit=ATTESTATION_DEPOSIT,
        submitted_at=ctx.height,
        challenge_end=ctx.height + CHALLENGE_WINDOW_BLOCKS,
    )
    key = (attester, args["task_id"])
    state.attester_task_count[key] = state.attester_task_count.get(key, 0) + 1
    ctx.deposit(M, "AttestationSubmitted")


def _challenge(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    att = _get_pending(state, args["attestation_id"])
    if att.challenger is not None:
        raise _reject("AlreadyChallenged")
    if ctx.height > att.challenge_end:
        raise _reject("ChallengeWindowExpired")
    att.challenger = ctx.origin
    ctx.deposit(M, "AttestationChallenged")


def _confirm(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    _require_admin(state, ctx)
    att = _get_pending(state, args["attestation_id"])
    if att.challenger is not None:
        raise _reject("AlreadyChallenged")
    if ctx.height <= att.challenge_end:
        raise _reject("ChallengeWindowNotExpired", f"window ends at block {att.challenge_end}")
    att.status = AttestationStatus.CONFIRMED
    balances.unreserve(state, att.attester, att.deposit)
    ctx.deposit(M, "AttestationConfirmed")


def _resolve(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    _require_admin(state, ctx)
    att = _get_pending(state, args["attestation_id"])
    if att.challenger is None:
        raise _reject("InvalidStatus", "attestation was not challenged")
    if not args["attester_is_guilty"]:
        balances.unreserve(state, att.attester, att.deposit)
        att.status = AttestationStatus.DEFENDED
        ctx.deposit(M, "AttestationDefended")
        return
    slash = att.deposit * SLASH_PERCENT // 100
    balances.slash_reserved(state, att.attester, slash)
    balances.unreserve(state, att.attester, att.deposit - slash)
    att.status = AttestationStatus.SLASHED
    ctx.deposit(M, "AttestationSlashed")


def _update_capability(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    who = ctx.origin
    _require_node(state, who)
    model_ids = tuple(args["model_ids"])
    if any(len(m) > MAX_MODEL_ID_LEN for m in model_ids):
        raise _reject("InvalidModelId")
    if len(model_ids) > MAX_MODELS_PER_AGENT:
        raise _reject("TooManyModels", f"{len(model_ids)} > {MAX_MODELS_PER_AGENT}")
    region = args["region"]
    if len(region) > MAX_REGION_LEN:
        raise _reject("InvalidRegion")

    old = state.capabilities.get(who)
    if old is not None:
        for model in old.model_ids:
            state.model_providers.discard((model, who))
    for model in model_ids:
        state.model_providers.add((model, who))
    state.capabilities[who] = AgentCapability(
        owner=who,
        model_ids=model_ids,
        max_concurrent=args["max_concurrent"],
        price_per_token=args["price_per_token"],
        region=region,
        updated_at=ctx.height,
    )
    ctx.deposit(M, "AgentCapabilityUpdated")


_HANDLERS = {
    "registerNode": _register_node,
    "heartbeat": _heartbeat,
    "submitAttestation": _submit_attestation,
    "challengeAttestation": _challenge,
    "confirmAttestation": _confirm,
    "resolveChallenge": _resolve,
    "updateCapability": _update_capability,
}


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    handler = _HANDLERS.get(call.function)
    if handler is None:
        raise _reject("CallNotSupported", str(call))
    handler(state, ctx, call.args)
