"""Wire-format tests: canonical intent message, compact integers, envelopes, storage records."""

from __future__ import annotations

import pytest

from chainprobe import calls
from chainprobe.config import CANONICAL_MESSAGE_SIZE, U128_MAX, U64_MAX
from chainprobe.dev_accounts import ALICE, BOB
from chainprobe.encoding import (
    Reader,
    Writer,
    build_canonical_message,
    decode_intent_record,
    decode_node_record,
    decode_signed_operation,
    decode_zk_task_record,
    encode_intent_record,
    encode_node_record,
    encode_signed_operation,
    encode_zk_task_record,
    storage_key,
)
from chainprobe.errors import ErrorKind, HarnessError
from chainprobe.types import IntentStatus, NodeRegistration, PaymentIntent, ZkStatus, ZkTask


def _hash(b: int) -> bytes:
    return bytes([b]) * 32


# --- Canonical message ---


def test_canonical_message_layout() -> None:
    """payer ++ payee ++ amount u128 LE ++ nonce u64 LE ++ fingerprint."""
    payer, payee, fp = _hash(0x11), _hash(0x22), _hash(0x33)
    message = build_canonical_message(payer, payee, 0x0102, 7, fp)

    assert len(message) == CANONICAL_MESSAGE_SIZE == 120
    assert message[0:32] == payer
    assert message[32:64] == payee
    assert message[64:80] == bytes([0x02, 0x01]) + bytes(14)
    assert message[80:88] == bytes([7]) + bytes(7)
    assert message[88:120] == fp


def test_canonical_message_bounds() -> None:
    message = build_canonical_message(ALICE, BOB, U128_MAX, U64_MAX, _hash(1))
    assert message[64:80] == b"\xff" * 16
    assert message[80:88] == b"\xff" * 8

    with pytest.raises(HarnessError) as exc:
        build_canonical_message(ALICE, BOB, U128_MAX + 1, 0, _hash(1))
    assert exc.value.kind == ErrorKind.INVALID_FORMAT

    with pytest.raises(HarnessError):
        build_canonical_message(ALICE, BOB, 1, U64_MAX + 1, _hash(1))
    with pytest.raises(HarnessError):
        build_canonical_message(ALICE, BOB, -1, 0, _hash(1))


@pytest.mark.parametrize("field", ["payer", "payee", "fingerprint"])
def test_canonical_message_rejects_wrong_lengths(field: str) -> None:
    args = {"payer": ALICE, "payee": BOB, "fingerprint": _hash(1)}
    args[field] = b"\x00" * 31
    with pytest.raises(HarnessError) as exc:
        build_canonical_message(args["payer"], args["payee"], 1, 1, args["fingerprint"])
    assert exc.value.kind == ErrorKind.INVALID_FORMAT
    assert field in exc.value.message


# --- Compact integers ---


@pytest.mark.parametrize(
    "value, encoded",
    [
        (0, "00"),
        (1, "04"),
        (63, "fc"),
        (64, "0101"),
        (16383, "fdff"),
        (16384, "02000100"),
        ((1 << 30) - 1, "feffffff"),
        (1 << 30, "0300000040"),
    ],
)
def test_compact_known_values(value: int, encoded: str) -> None:
    w = Writer()
    w.write_compact(value)
    assert w.to_bytes().hex() == encoded
    assert Reader(bytes.fromhex(encoded)).read_compact() == value


def test_reader_rejects_truncated_input() -> None:
    r = Reader(b"\x01\x02")
    with pytest.raises(HarnessError) as exc:
        r.read_u64()
    assert exc.value.kind == ErrorKind.INVALID_FORMAT


def test_reader_rejects_invalid_bool() -> None:
    with pytest.raises(HarnessError):
        Reader(b"\x02").read_bool()


def test_writer_rejects_overflow() -> None:
    with pytest.raises(HarnessError):
        Writer().write_u8(256)
    with pytest.raises(HarnessError):
        Writer().write_u32(-1)


# --- Envelopes and calls ---


def test_signed_operation_envelope() -> None:
    payload = calls.encode_call(calls.transfer_keep_alive(BOB, 5))
    envelope = encode_signed_operation(ALICE, 3, b"\x09" * 64, payload)

    assert len(envelope) == 32 + 8 + 64 + len(payload)
    signer, nonce, signature, decoded = decode_signed_operation(envelope)
    assert (signer, nonce, signature, decoded) == (ALICE, 3, b"\x09" * 64, payload)


def test_signed_operation_requires_payload() -> None:
    with pytest.raises(HarnessError):
        decode_signed_operation(encode_signed_operation(ALICE, 0, bytes(64), b""))


def test_call_payload_prefix_and_options() -> None:
    call = calls.update_task_definition(7, input_price=5)
    payload = calls.encode_call(call)

    assert payload[0] == calls.MODULE_INDEX["taskMode"]
    assert payload[1] == 1
    decoded = calls.decode_call(payload)
    assert decoded.args == {
        "task_id": 7,
        "input_price": 5,
        "output_price": None,
        "max_tokens": None,
        "is_active": None,
    }


def test_call_encoding_rejects_bad_arguments() -> None:
    with pytest.raises(HarnessError):
        calls.encode_call(calls.Call("balances", "transferKeepAlive", {"dest": BOB}))
    with pytest.raises(HarnessError):
        calls.encode_call(calls.Call("balances", "transferKeepAlive", {"dest": BOB, "value": 1, "memo": b""}))
    with pytest.raises(HarnessError):
        calls.encode_call(calls.Call("balances", "burn", {}))
    with pytest.raises(HarnessError):
        calls.decode_call(b"\xff\x00")


# --- Storage ---


def test_storage_key_structure() -> None:
    plain = storage_key("x402Settlement", "NextIntentId")
    assert len(plain) == 32

    mapped = storage_key("system", "Account", ALICE)
    assert len(mapped) == 32 + 16 + 32
    assert mapped.endswith(ALICE)
    assert mapped[:16] != plain[:16]
    assert storage_key("system", "Account", BOB) != mapped


def test_intent_record_decodes_what_was_stored() -> None:
    stored = PaymentIntent(
        payer=ALICE,
        payee=BOB,
        amount=500,
        nonce=1,
        fingerprint=_hash(1),
        signature=b"\x05" * 64,
        intent_id=4,
        status=IntentStatus.VERIFIED,
        created_at=10,
        verified_at=12,
    )
    assert decode_intent_record(encode_intent_record(stored)) == stored


def test_intent_record_rejects_unknown_status() -> None:
    raw = bytearray(encode_intent_record(PaymentIntent(ALICE, BOB, 1, 1, _hash(1), b"\x01")))
    # status byte sits after id, identities, amount, nonce, fingerprint and the 1-byte-prefixed signature
    raw[8 + 32 + 32 + 16 + 8 + 32 + 2] = 9
    with pytest.raises(HarnessError):
        decode_intent_record(bytes(raw))


def test_capability_call_carries_model_list() -> None:
    call = calls.update_capability([b"gpt-4-turbo", b"llama"], 10, 1_000_000, b"us-east")
    payload = calls.encode_call(call)

    assert payload[:2] == bytes([calls.MODULE_INDEX["agentAttestation"], 6])
    # compact count of two, then the first length-prefixed model id
    assert payload[2] == 2 << 2
    assert payload[3:4 + len(b"gpt-4-turbo")] == bytes([len(b"gpt-4-turbo") << 2]) + b"gpt-4-turbo"
    assert calls.decode_call(payload).args["model_ids"] == [b"gpt-4-turbo", b"llama"]
    with pytest.raises(HarnessError):
        calls.encode_call(calls.update_capability(["gpt-4-turbo"], 10, 1, b"eu"))


def test_node_record_decodes_what_was_stored() -> None:
    node = NodeRegistration(ALICE, b"GPU-uuid-0001", 100, registered_at=3, last_heartbeat=7, is_active=False)
    assert decode_node_record(encode_node_record(node)) == node


def test_zk_task_record_rejects_unknown_status() -> None:
    task = ZkTask(0, ALICE, b"proof", (2, 3, 4), 130, 10, 5, status=ZkStatus.VERIFIED, submitted_at=9)
    assert decode_zk_task_record(encode_zk_task_record(task)) == task

    raw = bytearray(encode_zk_task_record(task))
    # status byte follows id, miner, the 1-byte-prefixed proof and three u32 dimensions
    raw[8 + 32 + 1 + len(b"proof") + 12] = 7
    with pytest.raises(HarnessError):
        decode_zk_task_record(bytes(raw))
