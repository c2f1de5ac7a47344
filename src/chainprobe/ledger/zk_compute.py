"""zkCompute module: matrix-multiplication proofs, verification, miner scores and rewards."""

from __future__ import annotations

from ..calls import Call
from ..config import (
    INITIAL_MINER_SCORE,
    MAX_MINER_SCORE,
    MAX_PROOF_SIZE,
    MAX_ZK_MULTIPLIER,
    MAX_ZK_PENDING_PER_MINER,
    MAX_ZK_PENDING_TASKS,
    MAX_ZK_VERIFIED_TASKS,
    MIN_MINER_SCORE_TO_SUBMIT,
    MIN_ZK_MULTIPLIER,
    MODULE_ZK_COMPUTE,
    SCORE_ON_SUCCESS,
    SCORE_PENALTY_ON_FAILURE,
    U128_MAX,
    ZK_BASE_REWARD,
    ZK_PALLET_ACCOUNT,
    ZK_REWARD_DIVISOR,
    ZK_SUBMISSION_DEPOSIT,
    ZK_VERIFICATION_TIMEOUT_BLOCKS,
)
from ..errors import DispatchError
from ..types import ZkStatus, ZkTask
from . import balances
from .state import DispatchContext, LedgerState

M = MODULE_ZK_COMPUTE


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(M, name, message)


def verify_proof(proof: bytes, dimensions: tuple[int, int, int]) -> bool:
    """Dev chain verifier: any non-empty proof verifies."""
    return len(proof) > 0


def calculate_reward(task: ZkTask) -> int:
    m, n, k = task.dimensions
    reward = task.base_reward * m * n * k * task.multiplier_q100 // ZK_REWARD_DIVISOR
    if reward > U128_MAX:
        raise _reject("ArithmeticOverflow", "reward does not fit u128")
    return reward


def miner_score(state: LedgerState, miner: bytes) -> int:
    return state.miner_scores.get(miner, INITIAL_MINER_SCORE)


def _set_score(state: LedgerState, ctx: DispatchContext, miner: bytes, score: int) -> None:
    state.miner_scores[miner] = score
    ctx.deposit(M, "MinerScoreUpdated")


def _get_task(state: LedgerState, task_id: int) -> ZkTask:
    task = state.zk_tasks.get(task_id)
    if task is None:
        raise _reject("TaskNotFound", f"zk task {task_id}")
    return task


def _submit_proof(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    miner = ctx.origin
    dimensions = (args["m"], args["n"], args["k"])
    if 0 in dimensions:
        raise _reject("InvalidDimensions", "x".join(map(str, dimensions)))
    multiplier = args["multiplier_q100"]
    if not MIN_ZK_MULTIPLIER <= multiplier <= MAX_ZK_MULTIPLIER:
        raise _reject("InvalidMultiplier", str(multiplier))
    if (miner, args["nonce"]) in state.zk_used_nonces:
        raise _reject("NonceAlreadyUsed")
    if miner_score(state, miner) < MIN_MINER_SCORE_TO_SUBMIT:
        raise _reject("InsufficientMinerScore")
    pending = state.zk_pending_count.get(miner, 0)
    if pending >= MAX_ZK_PENDING_PER_MINER:
        raise _reject("TooManyPendingTasksForMiner")
    if len(args["proof"]) > MAX_PROOF_SIZE:
        raise _reject("ProofTooLarge", f"{len(args['proof'])} bytes")

    balances.reserve(state, miner, ZK_SUBMISSION_DEPOSIT)
    if len(state.zk_pending) >= MAX_ZK_PENDING_TASKS:
        raise _reject("TooManyPendingTasks")

    task_id = state.next_zk_task_id
    state.next_zk_task_id += 1
    state.zk_tasks[task_id] = ZkTask(
        task_id=task_id,
        miner=miner,
        proof=args["proof"],
        dimensions=dimensions,
        multiplier_q100=multiplier,
        base_reward=ZK_BASE_REWARD,
        submission_deposit=ZK_SUBMISSION_DEPOSIT,
        submitted_at=ctx.height,
    )
    state.zk_pending.append(task_id)
    state.zk_used_nonces.add((miner, args["nonce"]))
    state.zk_pending_count[miner] = pending + 1
    ctx.deposit(M, "ProofSubmitted")


def _verify_task(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    task = _get_task(state, args["task_id"])
    if task.status != ZkStatus.PENDING:
        raise _reject("InvalidTaskStatus", task.status.name)

    timed_out = ctx.height > task.submitted_at + ZK_VERIFICATION_TIMEOUT_BLOCKS
    verified = not timed_out and verify_proof(task.proof, task.dimensions)
    task.status = ZkStatus.VERIFIED if verified else ZkStatus.FAILED
    state.zk_pending.remove(task.task_id)
    state.zk_pending_count[task.miner] = max(0, state.zk_pending_count.get(task.miner, 0) - 1)

    if verified:
        if len(state.zk_verified) >= MAX_ZK_VERIFIED_TASKS:
            raise _reject("TooManyVerifiedTasks")
        state.zk_verified.append(task.task_id)
        score = min(miner_score(state, task.miner) + SCORE_ON_SUCCESS, MAX_MINER_SCORE)
        _set_score(state, ctx, task.miner, score)
    else:
        _set_score(state, ctx, task.miner, max(0, miner_score(state, task.miner) - SCORE_PENALTY_ON_FAILURE))
        moved = min(state.account(task.miner).reserved, task.submission_deposit)
        balances.repatriate_reserved(state, task.miner, ZK_PALLET_ACCOUNT, moved)
        if moved < task.submission_deposit:
            ctx.deposit(M, "DepositSlashed")
    ctx.deposit(M, "ProofVerified")


def _claim_reward(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    task = _get_task(state, args["task_id"])
    if task.miner != ctx.origin:
        raise _reject("NotTaskMiner")
    if task.status != ZkStatus.VERIFIED:
        raise _reject("TaskNotVerified", task.status.name)
    if task.reward_claimed:
        raise _reject("RewardAlreadyClaimed")

    reward = calculate_reward(task)
    try:
        balances.transfer(state, ZK_PALLET_ACCOUNT, task.miner, reward, keep_alive=False)
    except DispatchError:
        raise _reject("BalanceTransferFailed", f"reward pool cannot pay {reward}") from None
    balances.unreserve(state, task.miner, task.submission_deposit)
    task.reward_claimed = True
    ctx.deposit(M, "RewardClaimed")


_HANDLERS = {
    "submitProof": _submit_proof,
    "verifyTask": _verify_task,
    "claimReward": _claim_reward,
}


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    handler = _HANDLERS.get(call.function)
    if handler is None:
        raise _reject("CallNotSupported", str(call))
    handler(state, ctx, call.args)
