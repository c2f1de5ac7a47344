"""computePoolScheduler module: GPU pools, matrix tasks, proofs, rewards and staking."""

from __future__ import annotations

from typing import Optional

from ..calls import Call
from ..config import (
    BASE_NVLINK_EFFICIENCY,
    COMPLEXITY_UNIT,
    MAX_NVLINK_EFFICIENCY,
    MIN_NVLINK_EFFICIENCY,
    MODULE_COMPUTE_POOL,
    POOL_DEPOSIT,
    TASK_DEPOSIT,
    U128_MAX,
)
from ..errors import DispatchError
from . import balances
from .state import (
    ComputePool,
    ComputeTask,
    DispatchContext,
    LedgerState,
    PoolStatus,
    TaskStatus,
)

M = MODULE_COMPUTE_POOL


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(M, name, message)


def _get_pool(state: LedgerState, pool_id: int) -> ComputePool:
    pool = state.pools.get(pool_id)
    if pool is None:
        raise _reject("PoolNotFound", f"pool {pool_id}")
    return pool


def _get_task(state: LedgerState, task_id: int) -> ComputeTask:
    task = state.tasks.get(task_id)
    if task is None:
        raise _reject("TaskNotFound", f"task {task_id}")
    return task


def _check_hardware(gpu_memory: int, price_per_task: int, has_nvlink: bool, efficiency: int) -> None:
    if gpu_memory <= 0:
        raise _reject("InvalidDimensions", "gpu_memory must be positive")
    if price_per_task <= 0:
        raise _reject("InsufficientBalance", "price_per_task must be positive")
    if has_nvlink:
        if not MIN_NVLINK_EFFICIENCY <= efficiency <= MAX_NVLINK_EFFICIENCY:
            raise _reject("InvalidNvlinkEfficiency", f"{efficiency}")
    elif efficiency != BASE_NVLINK_EFFICIENCY:
        raise _reject("InvalidNvlinkEfficiency", f"{efficiency} without NVLink")


def calculate_reward(pool: ComputePool, m: int, n: int, k: int) -> int:
    """price_per_task scaled by task complexity and NVLink efficiency."""
    factor = max(1, (m * n * k) // COMPLEXITY_UNIT)
    reward = pool.price_per_task * factor
    if pool.has_nvlink:
        reward = reward * pool.nvlink_efficiency // 100
    if reward > U128_MAX:
        raise _reject("ArithmeticOverflow", "reward does not fit u128")
    return reward


def _register_pool(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    owner = ctx.origin
    if owner in state.pool_by_owner:
        raise _reject("PoolAlreadyExists")
    _check_hardware(
        args["gpu_memory"], args["price_per_task"], args["has_nvlink"], args["nvlink_efficiency"]
    )
    try:
        balances.reserve(state, owner, POOL_DEPOSIT)
    except DispatchError:
        raise _reject("InsufficientBalance", "cannot reserve pool deposit") from None

    pool_id = state.next_pool_id
    state.next_pool_id += 1
    state.pools[pool_id] = ComputePool(
        pool_id=pool_id,
        owner=owner,
        gpu_model=args["gpu_model"],
        gpu_memory=args["gpu_memory"],
        has_nvlink=args["has_nvlink"],
        nvlink_efficiency=args["nvlink_efficiency"],
        price_per_task=args["price_per_task"],
        deposit=POOL_DEPOSIT,
    )
    state.pool_by_owner[owner] = pool_id
    ctx.deposit(M, "PoolRegistered")


def _update_pool_config(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    _check_hardware(
        args["gpu_memory"], args["price_per_task"], args["has_nvlink"], args["nvlink_efficiency"]
    )
    pool = _get_pool(state, args["pool_id"])
    if pool.owner != ctx.origin:
        raise _reject("NotPoolOwner")
    if pool.status != PoolStatus.ACTIVE:
        raise _reject("PoolInactive")
    pool.gpu_model = args["gpu_model"]
    pool.gpu_memory = args["gpu_memory"]
    pool.has_nvlink = args["has_nvlink"]
    pool.nvlink_efficiency = args["nvlink_efficiency"]
    pool.price_per_task = args["price_per_task"]
    ctx.deposit(M, "PoolConfigUpdated")


def _select_pool(state: LedgerState, k: int, preferred: Optional[int]) -> ComputePool:
    if preferred is not None:
        pool = _get_pool(state, preferred)
        if pool.status != PoolStatus.ACTIVE:
            raise _reject("PoolInactive")
        if pool.gpu_memory < k:
            raise _reject("NoAvailablePool", f"pool {preferred} has too little memory")
        return pool
    candidates = [
        p for p in state.pools.values() if p.status == PoolStatus.ACTIVE and p.gpu_memory >= k
    ]
    if not candidates:
        raise _reject("NoAvailablePool")
    # Highest memory first, then cheapest, then lowest id.
    return min(candidates, key=lambda p: (-p.gpu_memory, p.price_per_task, p.pool_id))


def _submit_task(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    m, n, k = args["m"], args["n"], args["k"]
    if m <= 0 or n <= 0 or k <= 0:
        raise _reject("InvalidDimensions", f"{m}x{n}x{k}")
    task_id = state.next_task_id
    state.next_task_id += 1
    ctx.deposit(M, "TaskSubmitted")

    pool = _select_pool(state, k, args.get("preferred_pool"))
    reward = calculate_reward(pool, m, n, k)
    escrow = reward + TASK_DEPOSIT
    try:
        balances.reserve(state, ctx.origin, escrow)
    except DispatchError:
        raise _reject("InsufficientBalance", f"cannot escrow {escrow}") from None

    state.tasks[task_id] = ComputeTask(
        task_id=task_id,
        user=ctx.origin,
        pool_id=pool.pool_id,
        m=m,
        n=n,
        k=k,
        priority=args["priority"],
        escrow=reward,
        submitted_at=ctx.height,
    )
    ctx.deposit(M, "TaskAssigned")


def _submit_proof(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    proof_hash = args["proof_hash"]
    if proof_hash == bytes(32):
        raise _reject("InvalidProof", "zero proof hash")
    task = _get_task(state, args["task_id"])
    if task.status != TaskStatus.COMPUTING:
        raise _reject("InvalidTaskState", task.status.value)
    pool = _get_pool(state, task.pool_id)
    if pool.owner != ctx.origin:
        raise _reject("NotAssignedPoolOwner")
    task.proof_hash = proof_hash
    task.status = TaskStatus.PROOF_SUBMITTED
    ctx.deposit(M, "ProofSubmitted")


def _verify_proof(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    task = _get_task(state, args["task_id"])
    if task.status != TaskStatus.PROOF_SUBMITTED:
        raise _reject("InvalidTaskState", task.status.value)
    pool = _get_pool(state, task.pool_id)
    if pool.owner == ctx.origin:
        raise _reject("SelfVerificationNotAllowed")

    task.verifier = ctx.origin
    ctx.deposit(M, "ProofVerified")
    if args["result"]:
        task.status = TaskStatus.COMPLETED
        ctx.deposit(M, "RewardAvailable")
        return
    task.status = TaskStatus.FAILED
    balances.unreserve(state, task.user, task.escrow + TASK_DEPOSIT)


def _claim_reward(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    task = _get_task(state, args["task_id"])
    if task.status != TaskStatus.COMPLETED:
        raise _reject("InvalidTaskState", task.status.value)
    pool = _get_pool(state, task.pool_id)
    if pool.owner != ctx.origin:
        raise _reject("NotAssignedPoolOwner")
    if task.reward_claimed:
        raise _reject("RewardAlreadyClaimed")
    balances.repatriate_reserved(state, task.user, pool.owner, task.escrow)
    balances.unreserve(state, task.user, TASK_DEPOSIT)
    task.reward_claimed = True
    ctx.deposit(M, "RewardClaimed")


def _stake(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    pool = _get_pool(state, args["pool_id"])
    amount = args["amount"]
    try:
        balances.reserve(state, ctx.origin, amount)
    except DispatchError:
        raise _reject("InsufficientBalance", f"cannot stake {amount}") from None
    key = (pool.pool_id, ctx.origin)
    state.stakes[key] = state.stakes.get(key, 0) + amount
    pool.total_stake += amount
    ctx.deposit(M, "Staked")


def _unstake(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    pool_id, amount = args["pool_id"], args["amount"]
    key = (pool_id, ctx.origin)
    current = state.stakes.get(key, 0)
    if current < amount:
        raise _reject("StakeNotFound", f"staked {current} < {amount}")
    balances.unreserve(state, ctx.origin, amount)
    if current == amount:
        del state.stakes[key]
    else:
        state.stakes[key] = current - amount
    pool = state.pools.get(pool_id)
    if pool is not None:
        pool.total_stake -= amount
    ctx.deposit(M, "Unstaked")


_HANDLERS = {
    "registerPool": _register_pool,
    "updatePoolConfig": _update_pool_config,
    "submitTask": _submit_task,
    "submitProof": _submit_proof,
    "verifyProof": _verify_proof,
    "claimReward": _claim_reward,
    "stakeToPool": _stake,
    "unstakeFromPool": _unstake,
}


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    handler = _HANDLERS.get(call.function)
    if handler is None:
        raise _reject("CallNotSupported", str(call))
    handler(state, ctx, call.args)
