"""taskMode module: priced AI task definitions and customer orders."""

from __future__ import annotations

from ..calls import Call
from ..config import (
    MAX_MODEL_ID_LEN,
    MAX_POLICY_CID_LEN,
    MODULE_TASK_MODE,
    TOKENS_PER_PRICE_UNIT,
    U64_MAX,
    UNIT,
)
from ..errors import DispatchError
from . import balances
from .state import DispatchContext, LedgerState, OpaqueDispatchError, TaskDefinition, TaskOrder

M = MODULE_TASK_MODE


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(M, name, message)


def _get_definition(state: LedgerState, task_id: int) -> TaskDefinition:
    definition = state.definitions.get(task_id)
    if definition is None:
        raise _reject("TaskDefinitionNotFound", f"task definition {task_id}")
    return definition


def order_value(definition: TaskDefinition, input_tokens: int, output_tokens: int) -> int:
    """Order value in the oracle's quote currency (prices are per 1k tokens)."""
    value = (
        input_tokens * definition.input_price // TOKENS_PER_PRICE_UNIT
        + output_tokens * definition.output_price // TOKENS_PER_PRICE_UNIT
    )
    if value > U64_MAX:
        raise _reject("ArithmeticOverflow", "order value does not fit u64")
    return value


def _create_definition(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    if state.admin and ctx.origin != state.admin:
        raise OpaqueDispatchError("BadOrigin")
    if len(args["model_id"]) > MAX_MODEL_ID_LEN or len(args["version"]) > MAX_MODEL_ID_LEN:
        raise _reject("ArithmeticOverflow", "model id or version too long")
    if len(args["policy_cid"]) > MAX_POLICY_CID_LEN:
        raise _reject("ArithmeticOverflow", "policy cid too long")

    task_id = state.next_definition_id
    state.next_definition_id += 1
    state.definitions[task_id] = TaskDefinition(
        task_id=task_id,
        admin=ctx.origin,
        model_id=args["model_id"],
        version=args["version"],
        input_price=args["input_price"],
        output_price=args["output_price"],
        max_tokens=args["max_tokens"],
        policy_cid=args["policy_cid"],
    )
    ctx.deposit(M, "TaskDefinitionCreated")


def _update_definition(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    definition = _get_definition(state, args["task_id"])
    if definition.admin != ctx.origin:
        raise _reject("NotAuthorized")
    if args.get("input_price") is not None:
        definition.input_price = args["input_price"]
    if args.get("output_price") is not None:
        definition.output_price = args["output_price"]
    if args.get("max_tokens") is not None:
        definition.max_tokens = args["max_tokens"]
    if args.get("is_active") is not None:
        definition.active = args["is_active"]
    ctx.deposit(M, "TaskDefinitionUpdated")


def _create_order(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    definition = _get_definition(state, args["task_id"])
    if not definition.active:
        raise _reject("TaskDefinitionInactive")
    input_tokens, output_tokens = args["input_tokens"], args["output_tokens"]
    if input_tokens + output_tokens > definition.max_tokens:
        raise _reject("TokenCountExceedsLimit")
    if not state.oracle_price:
        raise _reject("PriceOracleUnavailable")

    charged = order_value(definition, input_tokens, output_tokens) * UNIT // state.oracle_price
    try:
        balances.reserve(state, ctx.origin, charged)
    except DispatchError:
        raise _reject("InsufficientBalance", f"cannot reserve {charged}") from None

    order_id = state.next_order_id
    state.next_order_id += 1
    state.orders[order_id] = TaskOrder(
        order_id=order_id,
        task_id=definition.task_id,
        customer=ctx.origin,
        miner=args["miner"],
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        charged=charged,
        created_at=ctx.height,
    )
    ctx.deposit(M, "TaskOrderCreated")


_HANDLERS = {
    "createTaskDefinition": _create_definition,
    "updateTaskDefinition": _update_definition,
    "createTaskOrder": _create_order,
}


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    handler = _HANDLERS.get(call.function)
    if handler is None:
        raise _reject("CallNotSupported", str(call))
    handler(state, ctx, call.args)
