"""Payment-intent signing, verification and lifecycle transitions."""

from __future__ import annotations

import pytest

from chainprobe import intent
from chainprobe.dev_accounts import ALICE, ALICE_KEY, BOB, CHARLIE, FACILITATOR, FACILITATOR_KEY
from chainprobe.encoding import build_canonical_message
from chainprobe.errors import DispatchError, ErrorKind, HarnessError
from chainprobe.types import IntentStatus, PaymentIntent

FP = b"\x01" * 32


def _submitted(signer=FACILITATOR_KEY) -> PaymentIntent:
    return intent.new_intent(ALICE, BOB, 500, 1, FP, signer)


def _verified(height: int = 10) -> PaymentIntent:
    target = _submitted()
    assert intent.verify(target, FACILITATOR, FACILITATOR, height)
    return target


# --- Signing ---


def test_signature_covers_canonical_message() -> None:
    signed = _submitted()
    message = build_canonical_message(ALICE, BOB, 500, 1, FP)
    assert intent.verify_message(message, signed.signature, FACILITATOR)
    assert intent.signature_valid(signed, FACILITATOR)


@pytest.mark.parametrize(
    "field, value",
    [("payer", CHARLIE), ("payee", CHARLIE), ("amount", 501), ("nonce", 2), ("fingerprint", b"\x02" * 32)],
)
def test_any_field_change_breaks_signature(field: str, value) -> None:
    signed = _submitted()
    setattr(signed, field, value)
    assert not intent.signature_valid(signed, FACILITATOR)


def test_wrong_length_message_is_a_protocol_violation() -> None:
    with pytest.raises(HarnessError) as exc:
        intent.sign_message(b"\x00" * 119, FACILITATOR_KEY)
    assert exc.value.kind == ErrorKind.PROTOCOL_VIOLATION

    with pytest.raises(HarnessError) as exc:
        intent.verify_message(b"\x00" * 121, bytes(64), FACILITATOR)
    assert exc.value.kind == ErrorKind.PROTOCOL_VIOLATION


def test_fingerprint_of_is_blake3_256() -> None:
    assert intent.fingerprint_of(b"work") == intent.fingerprint_of(b"work")
    assert len(intent.fingerprint_of(b"work")) == 32
    assert intent.fingerprint_of(b"work") != intent.fingerprint_of(b"other")


# --- Verify ---


def test_verify_moves_to_verified() -> None:
    target = _verified(height=10)
    assert target.status == IntentStatus.VERIFIED
    assert target.verified_at == 10


def test_verify_with_foreign_signature_fails_intent() -> None:
    target = _submitted(signer=ALICE_KEY)
    assert not intent.verify(target, FACILITATOR, FACILITATOR, 3)
    assert target.status == IntentStatus.FAILED
    assert target.verified_at is None


def test_only_facilitator_verifies() -> None:
    target = _submitted()
    with pytest.raises(DispatchError) as exc:
        intent.verify(target, ALICE, FACILITATOR, 3)
    assert exc.value.name == intent.NOT_AUTHORIZED
    assert target.status == IntentStatus.SUBMITTED


def test_verify_twice_is_rejected() -> None:
    target = _verified()
    with pytest.raises(DispatchError) as exc:
        intent.verify(target, FACILITATOR, FACILITATOR, 11)
    assert exc.value.name == intent.INVALID_PAYMENT_INTENT_STATUS


# --- Finalize ---


def test_finalize_waits_for_delay() -> None:
    target = _verified(height=10)
    with pytest.raises(DispatchError) as exc:
        intent.finalize(target, ALICE, FACILITATOR, 14, delay=5)
    assert exc.value.name == intent.SETTLEMENT_DELAY_NOT_MET
    assert target.status == IntentStatus.VERIFIED

    intent.finalize(target, ALICE, FACILITATOR, 15, delay=5)
    assert target.status == IntentStatus.FINALIZED
    assert target.settled_at == 15


@pytest.mark.parametrize("caller", [ALICE, BOB, FACILITATOR])
def test_any_party_may_finalize(caller: bytes) -> None:
    target = _verified(height=0)
    intent.finalize(target, caller, FACILITATOR, 5, delay=5)
    assert target.status == IntentStatus.FINALIZED


def test_stranger_cannot_finalize() -> None:
    target = _verified(height=0)
    with pytest.raises(DispatchError) as exc:
        intent.finalize(target, CHARLIE, FACILITATOR, 50, delay=5)
    assert exc.value.name == intent.NOT_AUTHORIZED


def test_finalize_requires_verified() -> None:
    with pytest.raises(DispatchError) as exc:
        intent.finalize(_submitted(), ALICE, FACILITATOR, 50, delay=5)
    assert exc.value.name == intent.INVALID_PAYMENT_INTENT_STATUS


# --- Fail ---


def test_fail_from_submitted_and_verified() -> None:
    for target in (_submitted(), _verified()):
        intent.fail(target, FACILITATOR, FACILITATOR)
        assert target.status == IntentStatus.FAILED


def test_terminal_states_are_final() -> None:
    target = _verified(height=0)
    intent.finalize(target, ALICE, FACILITATOR, 5, delay=5)
    assert target.status.terminal
    with pytest.raises(DispatchError) as exc:
        intent.fail(target, FACILITATOR, FACILITATOR)
    assert exc.value.name == intent.INVALID_PAYMENT_INTENT_STATUS


def test_only_facilitator_fails() -> None:
    with pytest.raises(DispatchError) as exc:
        intent.fail(_submitted(), BOB, FACILITATOR)
    assert exc.value.name == intent.NOT_AUTHORIZED


def test_cycles_remaining() -> None:
    target = _verified(height=10)
    assert intent.cycles_remaining(target, 12, 5) == 3
    assert intent.cycles_remaining(target, 20, 5) == 0
    assert intent.cycles_remaining(_submitted(), 12, 5) == 5


# --- Waiting for cycles ---


async def test_wait_for_cycles_polls_height(remote) -> None:
    heights = iter(range(100))

    async def climbing_height() -> int:
        remote.height = next(heights)
        return remote.height

    remote.current_height = climbing_height
    height = await intent.wait_for_cycles(remote, since_height=2, cycles=3, timeout=1.0, poll_interval=0.001)
    assert height == 5


async def test_wait_for_cycles_times_out(remote) -> None:
    remote.height = 1
    with pytest.raises(HarnessError) as exc:
        await intent.wait_for_cycles(remote, since_height=1, cycles=5, timeout=0.05, poll_interval=0.01)
    assert exc.value.kind == ErrorKind.TIMEOUT
