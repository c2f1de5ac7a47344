"""Payment-intent protocol: signing, verification and the lifecycle state machine.

The canonical message comes from `encoding.build_canonical_message` on every
path (signing here, the facilitator check in `verify`, the dev ledger), so the
signer and the verifier cannot drift apart.

Lifecycle::

    SUBMITTED --verify (facilitator, valid signature)--> VERIFIED
    VERIFIED  --finalize (settlement delay elapsed)----> FINALIZED
    SUBMITTED | VERIFIED --fail (facilitator)----------> FAILED

A signature that does not verify sends the intent straight to FAILED.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from blake3 import blake3

from .config import (
    CANONICAL_MESSAGE_SIZE,
    DEFAULT_POLL_INTERVAL_SECS,
    MODULE_SETTLEMENT,
)
from .crypto import Keypair, verify_signature
from .encoding import build_canonical_message, intent_message
from .errors import DispatchError, protocol_violation, timeout_error
from .types import IntentStatus, PaymentIntent

if TYPE_CHECKING:
    from .remote import RemoteSystem

logger = logging.getLogger(__name__)

# Business error names reported by the settlement module
INVALID_NONCE = "InvalidNonce"
REPLAY_FINGERPRINT_USED = "ReplayFingerprintUsed"
INVALID_FACILITATOR_SIGNATURE = "InvalidFacilitatorSignature"
PAYMENT_INTENT_NOT_FOUND = "PaymentIntentNotFound"
INVALID_PAYMENT_INTENT_STATUS = "InvalidPaymentIntentStatus"
INSUFFICIENT_BALANCE = "InsufficientBalance"
SETTLEMENT_DELAY_NOT_MET = "SettlementDelayNotMet"
NOT_AUTHORIZED = "NotAuthorized"
ARITHMETIC_OVERFLOW = "ArithmeticOverflow"


def _reject(name: str, message: str = "") -> DispatchError:
    return DispatchError(MODULE_SETTLEMENT, name, message)


def fingerprint_of(work: bytes) -> bytes:
    """BLAKE3-256 content hash used as an intent's correlation id."""
    return blake3(bytes(work)).digest()


def sign_message(message: bytes, key: Keypair) -> bytes:
    if len(message) != CANONICAL_MESSAGE_SIZE:
        raise protocol_violation(
            f"refusing to sign {len(message)}-byte message, expected {CANONICAL_MESSAGE_SIZE}"
        )
    return key.sign(message)


def verify_message(message: bytes, signature: bytes, public_key: bytes) -> bool:
    if len(message) != CANONICAL_MESSAGE_SIZE:
        raise protocol_violation(
            f"canonical message must be {CANONICAL_MESSAGE_SIZE} bytes, got {len(message)}"
        )
    return verify_signature(message, signature, public_key)


def sign_intent(
    payer: bytes,
    payee: bytes,
    amount: int,
    nonce: int,
    fingerprint: bytes,
    facilitator: Keypair,
) -> bytes:
    message = build_canonical_message(payer, payee, amount, nonce, fingerprint)
    return sign_message(message, facilitator)


def new_intent(
    payer: bytes,
    payee: bytes,
    amount: int,
    nonce: int,
    fingerprint: bytes,
    facilitator: Keypair,
) -> PaymentIntent:
    """Build a SUBMITTED intent carrying the facilitator's signature."""
    signature = sign_intent(payer, payee, amount, nonce, fingerprint, facilitator)
    return PaymentIntent(
        payer=payer,
        payee=payee,
        amount=amount,
        nonce=nonce,
        fingerprint=fingerprint,
        signature=signature,
    )


def signature_valid(intent: PaymentIntent, facilitator: bytes) -> bool:
    return verify_message(intent_message(intent), intent.signature, facilitator)


# --- State machine ---


def verify(intent: PaymentIntent, caller: bytes, facilitator: bytes, height: int) -> bool:
    """Facilitator check of the intent signature.

    Returns True and moves to VERIFIED, or returns False and moves to FAILED.
    """
    if caller != facilitator:
        raise _reject(NOT_AUTHORIZED, "only the facilitator may verify")
    if intent.status != IntentStatus.SUBMITTED:
        raise _reject(INVALID_PAYMENT_INTENT_STATUS, f"intent is {intent.status.name}")

    if not signature_valid(intent, facilitator):
        intent.status = IntentStatus.FAILED
        logger.debug("intent %d failed signature verification", intent.intent_id)
        return False

    intent.status = IntentStatus.VERIFIED
    intent.verified_at = height
    return True


def finalize(
    intent: PaymentIntent, caller: bytes, facilitator: bytes, height: int, delay: int
) -> None:
    if intent.status != IntentStatus.VERIFIED:
        raise _reject(INVALID_PAYMENT_INTENT_STATUS, f"intent is {intent.status.name}")
    if caller not in (intent.payer, intent.payee, facilitator):
        raise _reject(NOT_AUTHORIZED, "caller is not a party to the intent")
    if intent.verified_at is None:
        raise _reject(INVALID_PAYMENT_INTENT_STATUS, "verified intent has no verification height")
    ready_at = intent.verified_at + delay
    if height < ready_at:
        raise _reject(
            SETTLEMENT_DELAY_NOT_MET, f"height {height} < {ready_at}"
        )

    intent.status = IntentStatus.FINALIZED
    intent.settled_at = height


def fail(intent: PaymentIntent, caller: bytes, facilitator: bytes) -> None:
    if caller != facilitator:
        raise _reject(NOT_AUTHORIZED, "only the facilitator may fail an intent")
    if intent.status not in (IntentStatus.SUBMITTED, IntentStatus.VERIFIED):
        raise _reject(INVALID_PAYMENT_INTENT_STATUS, f"intent is {intent.status.name}")
    intent.status = IntentStatus.FAILED


def cycles_remaining(intent: PaymentIntent, height: int, delay: int) -> int:
    if intent.verified_at is None:
        return delay
    return max(0, intent.verified_at + delay - height)


async def wait_for_cycles(
    remote: "RemoteSystem",
    since_height: int,
    cycles: int,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECS,
) -> int:
    """Wait until the remote height reaches `since_height + cycles`.

    Polling is bounded by `timeout`; returns the height observed.
    """
    target = since_height + cycles
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        height = await remote.current_height()
        if height >= target:
            return height
        if loop.time() >= deadline:
            raise timeout_error(f"height {height} did not reach {target} within {timeout}s")
        logger.debug("waiting for height %d (at %d)", target, height)
        await asyncio.sleep(min(poll_interval, max(0.0, deadline - loop.time())))
