"""x402Settlement module: payment intents, facilitator verification, delayed settlement."""

from __future__ import annotations

import logging

from .. import intent as intent_protocol
from ..calls import Call
from ..config import MAX_SIGNATURE_LEN, MODULE_SETTLEMENT, U64_MAX
from ..errors import DispatchError
from ..types import IntentStatus, PaymentIntent, SettlementReceipt
from . import balances
from .state import DispatchContext, LedgerState

logger = logging.getLogger(__name__)


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(MODULE_SETTLEMENT, name, message)


def _get_intent(state: LedgerState, intent_id: int) -> PaymentIntent:
    found = state.intents.get(intent_id)
    if found is None:
        raise _reject(intent_protocol.PAYMENT_INTENT_NOT_FOUND, f"intent {intent_id}")
    return found


def _submit(state: LedgerState, ctx: DispatchContext, args: dict) -> None:
    merchant = ctx.origin
    nonce = args["nonce"]
    fingerprint = args["replay_fingerprint"]
    signature = args["facilitator_signature"]
    amount = args["amount"]

    if (merchant, nonce) in state.used_nonces:
        raise _reject(intent_protocol.INVALID_NONCE, f"nonce {nonce} already used")
    if fingerprint in state.used_fingerprints:
        raise _reject(intent_protocol.REPLAY_FINGERPRINT_USED)
    if not signature or len(signature) > MAX_SIGNATURE_LEN:
        raise _reject(
            intent_protocol.INVALID_FACILITATOR_SIGNATURE,
            f"signature length {len(signature)}",
        )
    try:
        balances.reserve(state, merchant, amount)
    except DispatchError:
        raise _reject(intent_protocol.INSUFFICIENT_BALANCE, f"cannot reserve {amount}") from None

    intent_id = state.next_intent_id
    if intent_id >= U64_MAX:
        raise _reject(intent_protocol.ARITHMETIC_OVERFLOW, "intent id space exhausted")
    state.next_intent_id = intent_id + 1
    state.used_nonces.add((merchant, nonce))
    state.used_fingerprints.add(fingerprint)
    state.intents[intent_id] = PaymentIntent(
        payer=merchant,
        payee=args["miner"],
        amount=amount,
        nonce=nonce,
        fingerprint=fingerprint,
        signature=signature,
        intent_id=intent_id,
        status=IntentStatus.SUBMITTED,
        created_at=ctx.height,
    )
    ctx.deposit(MODULE_SETTLEMENT, "PaymentIntentSubmitted")


def _verify(state: LedgerState, ctx: DispatchContext, intent_id: int) -> None:
    if ctx.origin != state.facilitator:
        raise _reject(intent_protocol.NOT_AUTHORIZED, "only the facilitator may verify")
    pending = _get_intent(state, intent_id)
    if intent_protocol.verify(pending, ctx.origin, state.facilitator, ctx.height):
        ctx.deposit(MODULE_SETTLEMENT, "PaymentIntentVerified")
        return
    logger.info("intent %d: facilitator signature rejected", intent_id)
    balances.unreserve(state, pending.payer, pending.amount)
    ctx.deposit(MODULE_SETTLEMENT, "PaymentIntentFailed")


def _finalize(state: LedgerState, ctx: DispatchContext, intent_id: int) -> None:
    verified = _get_intent(state, intent_id)
    intent_protocol.finalize(
        verified, ctx.origin, state.facilitator, ctx.height, state.settlement_delay
    )
    try:
        balances.repatriate_reserved(state, verified.payer, verified.payee, verified.amount)
    except DispatchError:
        raise _reject(intent_protocol.INSUFFICIENT_BALANCE, "reserved funds missing") from None
    state.receipts[intent_id] = SettlementReceipt(
        intent_id=intent_id,
        payer=verified.payer,
        payee=verified.payee,
        amount=verified.amount,
        settled_at=ctx.height,
    )
    ctx.deposit(MODULE_SETTLEMENT, "PaymentIntentSettled")


def _fail(state: LedgerState, ctx: DispatchContext, intent_id: int) -> None:
    if ctx.origin != state.facilitator:
        raise _reject(intent_protocol.NOT_AUTHORIZED, "only the facilitator may fail an intent")
    target = _get_intent(state, intent_id)
    intent_protocol.fail(target, ctx.origin, state.facilitator)
    balances.unreserve(state, target.payer, target.amount)
    ctx.deposit(MODULE_SETTLEMENT, "PaymentIntentFailed")


def apply(state: LedgerState, ctx: DispatchContext, call: Call) -> None:
    fn = call.function
    if fn == "submitPaymentIntent":
        _submit(state, ctx, call.args)
    elif fn == "verifySettlement":
        _verify(state, ctx, call.args["intent_id"])
    elif fn == "finalizeSettlement":
        _finalize(state, ctx, call.args["intent_id"])
    elif fn == "failPaymentIntent":
        _fail(state, ctx, call.args["intent_id"])
    else:
        raise _reject("CallNotSupported", str(call))
