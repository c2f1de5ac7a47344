"""Wire-format encoding: canonical payment-intent message, envelopes, storage layouts.

Integers are fixed-width little-endian, identities and hashes are raw 32-byte
strings, variable byte vectors carry a SCALE compact length prefix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from blake3 import blake3

from .config import (
    CANONICAL_MESSAGE_SIZE,
    FINGERPRINT_SIZE,
    IDENTITY_SIZE,
    SIGNATURE_SIZE,
    U128_MAX,
    U64_MAX,
)
from .errors import format_error
from .types import IntentStatus, NodeRegistration, PaymentIntent, ZkStatus, ZkTask


@dataclass
class Writer:
    buf: bytearray = field(default_factory=bytearray)

    def _write_uint(self, v: int, size: int) -> None:
        v = int(v)
        if v < 0 or v >= 1 << (size * 8):
            raise format_error(f"value {v} does not fit u{size * 8}")
        self.buf.extend(v.to_bytes(size, "little", signed=False))

    def write_u8(self, v: int) -> None:
        self._write_uint(v, 1)

    def write_u16(self, v: int) -> None:
        self._write_uint(v, 2)

    def write_u32(self, v: int) -> None:
        self._write_uint(v, 4)

    def write_u64(self, v: int) -> None:
        self._write_uint(v, 8)

    def write_u128(self, v: int) -> None:
        self._write_uint(v, 16)

    def write_bool(self, v: bool) -> None:
        self.write_u8(1 if v else 0)

    def write_bytes(self, b: bytes) -> None:
        self.buf.extend(b)

    def write_fixed(self, name: str, value: bytes, size: int) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise format_error(f"{name} must be bytes")
        _expect_len(name, bytes(value), size)
        self.buf.extend(value)

    def write_compact(self, v: int) -> None:
        v = int(v)
        if v < 0 or v > U128_MAX:
            raise format_error(f"compact value {v} out of range")
        if v < 1 << 6:
            self.write_u8(v << 2)
        elif v < 1 << 14:
            self.write_u16((v << 2) | 0b01)
        elif v < 1 << 30:
            self.write_u32((v << 2) | 0b10)
        else:
            raw = v.to_bytes((v.bit_length() + 7) // 8, "little")
            self.write_u8(((len(raw) - 4) << 2) | 0b11)
            self.buf.extend(raw)

    def write_vec(self, value: bytes) -> None:
        self.write_compact(len(value))
        self.buf.extend(value)

    def to_bytes(self) -> bytes:
        return bytes(self.buf)


class Reader:
    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def read_bytes(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise format_error(f"unexpected end of input reading {n} bytes at {self.pos}")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def _read_uint(self, size: int) -> int:
        return int.from_bytes(self.read_bytes(size), "little", signed=False)

    def read_u8(self) -> int:
        return self._read_uint(1)

    def read_u16(self) -> int:
        return self._read_uint(2)

    def read_u32(self) -> int:
        return self._read_uint(4)

    def read_u64(self) -> int:
        return self._read_uint(8)

    def read_u128(self) -> int:
        return self._read_uint(16)

    def read_bool(self) -> bool:
        v = self.read_u8()
        if v not in (0, 1):
            raise format_error(f"invalid bool byte {v}")
        return v == 1

    def read_compact(self) -> int:
        first = self.data[self.pos] if self.pos < len(self.data) else None
        if first is None:
            raise format_error("unexpected end of input reading compact")
        mode = first & 0b11
        if mode == 0b00:
            return self.read_u8() >> 2
        if mode == 0b01:
            return self.read_u16() >> 2
        if mode == 0b10:
            return self.read_u32() >> 2
        self.pos += 1
        return int.from_bytes(self.read_bytes((first >> 2) + 4), "little")

    def read_vec(self) -> bytes:
        return self.read_bytes(self.read_compact())

    def finish(self) -> None:
        if self.remaining():
            raise format_error(f"{self.remaining()} trailing bytes")


def _expect_len(name: str, value: bytes, size: int) -> None:
    if len(value) != size:
        raise format_error(f"{name} must be {size} bytes, got {len(value)}")


# --- Canonical payment-intent message ---


def build_canonical_message(
    payer: bytes, payee: bytes, amount: int, nonce: int, fingerprint: bytes
) -> bytes:
    """Encode the five signed fields of a payment intent.

    Layout: payer (32) ++ payee (32) ++ amount (u128 LE) ++ nonce (u64 LE)
    ++ fingerprint (32). Always 120 bytes.
    """
    w = Writer()
    w.write_fixed("payer", payer, IDENTITY_SIZE)
    w.write_fixed("payee", payee, IDENTITY_SIZE)
    if not 0 <= int(amount) <= U128_MAX:
        raise format_error("amount must fit u128")
    w.write_u128(amount)
    if not 0 <= int(nonce) <= U64_MAX:
        raise format_error("nonce must fit u64")
    w.write_u64(nonce)
    w.write_fixed("fingerprint", fingerprint, FINGERPRINT_SIZE)
    message = w.to_bytes()
    assert len(message) == CANONICAL_MESSAGE_SIZE
    return message


def intent_message(intent: PaymentIntent) -> bytes:
    return build_canonical_message(
        intent.payer, intent.payee, intent.amount, intent.nonce, intent.fingerprint
    )


# --- Signed operation envelope ---


def operation_signing_bytes(nonce: int, payload: bytes) -> bytes:
    w = Writer()
    w.write_u64(nonce)
    w.write_bytes(payload)
    return w.to_bytes()


def encode_signed_operation(signer: bytes, nonce: int, signature: bytes, payload: bytes) -> bytes:
    w = Writer()
    w.write_fixed("signer", signer, IDENTITY_SIZE)
    w.write_u64(nonce)
    w.write_fixed("signature", signature, SIGNATURE_SIZE)
    w.write_bytes(payload)
    return w.to_bytes()


def decode_signed_operation(data: bytes) -> Tuple[bytes, int, bytes, bytes]:
    """Return (signer, nonce, signature, payload)."""
    r = Reader(data)
    signer = r.read_bytes(IDENTITY_SIZE)
    nonce = r.read_u64()
    signature = r.read_bytes(SIGNATURE_SIZE)
    payload = r.read_bytes(r.remaining())
    if not payload:
        raise format_error("signed operation has empty payload")
    return signer, nonce, signature, payload


# --- Storage keys and records ---


def _hash16(data: bytes) -> bytes:
    return blake3(data).digest()[:16]


def storage_key(module: str, item: str, key: bytes = b"") -> bytes:
    """Prefix hashes of module and item, then a hash-concat of the map key."""
    out = _hash16(module.encode()) + _hash16(item.encode())
    if key:
        out += _hash16(key) + key
    return out


def encode_u64(v: int) -> bytes:
    w = Writer()
    w.write_u64(v)
    return w.to_bytes()


def decode_u64(data: bytes) -> int:
    r = Reader(data)
    v = r.read_u64()
    r.finish()
    return v


def encode_account(free: int, reserved: int) -> bytes:
    w = Writer()
    w.write_u128(free)
    w.write_u128(reserved)
    return w.to_bytes()


def decode_account(data: bytes) -> Tuple[int, int]:
    r = Reader(data)
    free, reserved = r.read_u128(), r.read_u128()
    r.finish()
    return free, reserved


def _write_option_u32(w: Writer, value: Optional[int]) -> None:
    if value is None:
        w.write_bool(False)
        return
    w.write_bool(True)
    w.write_u32(value)


def _read_option_u32(r: Reader) -> Optional[int]:
    return r.read_u32() if r.read_bool() else None


def encode_intent_record(intent: PaymentIntent) -> bytes:
    w = Writer()
    w.write_u64(intent.intent_id)
    w.write_fixed("payer", intent.payer, IDENTITY_SIZE)
    w.write_fixed("payee", intent.payee, IDENTITY_SIZE)
    w.write_u128(intent.amount)
    w.write_u64(intent.nonce)
    w.write_fixed("fingerprint", intent.fingerprint, FINGERPRINT_SIZE)
    w.write_vec(intent.signature)
    w.write_u8(int(intent.status))
    w.write_u32(intent.created_at)
    _write_option_u32(w, intent.verified_at)
    _write_option_u32(w, intent.settled_at)
    return w.to_bytes()


def decode_intent_record(data: bytes) -> PaymentIntent:
    r = Reader(data)
    intent_id = r.read_u64()
    payer = r.read_bytes(IDENTITY_SIZE)
    payee = r.read_bytes(IDENTITY_SIZE)
    amount = r.read_u128()
    nonce = r.read_u64()
    fingerprint = r.read_bytes(FINGERPRINT_SIZE)
    signature = r.read_vec()
    status_byte = r.read_u8()
    try:
        status = IntentStatus(status_byte)
    except ValueError:
        raise format_error(f"invalid intent status {status_byte}") from None
    created_at = r.read_u32()
    verified_at = _read_option_u32(r)
    settled_at = _read_option_u32(r)
    r.finish()
    return PaymentIntent(
        intent_id=intent_id,
        payer=payer,
        payee=payee,
        amount=amount,
        nonce=nonce,
        fingerprint=fingerprint,
        signature=signature,
        status=status,
        created_at=created_at,
        verified_at=verified_at,
        settled_at=settled_at,
    )


def encode_node_record(node: NodeRegistration) -> bytes:
    w = Writer()
    w.write_fixed("owner", node.owner, IDENTITY_SIZE)
    w.write_vec(node.gpu_uuid)
    w.write_u32(node.tflops)
    w.write_u32(node.registered_at)
    w.write_u32(node.last_heartbeat)
    w.write_bool(node.is_active)
    return w.to_bytes()


def decode_node_record(data: bytes) -> NodeRegistration:
    r = Reader(data)
    node = NodeRegistration(
        owner=r.read_bytes(IDENTITY_SIZE),
        gpu_uuid=r.read_vec(),
        tflops=r.read_u32(),
        registered_at=r.read_u32(),
        last_heartbeat=r.read_u32(),
        is_active=r.read_bool(),
    )
    r.finish()
    return node


def encode_zk_task_record(task: ZkTask) -> bytes:
    w = Writer()
    w.write_u64(task.task_id)
    w.write_fixed("miner", task.miner, IDENTITY_SIZE)
    w.write_vec(task.proof)
    for d in task.dimensions:
        w.write_u32(d)
    w.write_u8(int(task.status))
    w.write_u128(task.base_reward)
    w.write_u32(task.multiplier_q100)
    w.write_u32(task.submitted_at)
    w.write_u128(task.submission_deposit)
    w.write_bool(task.reward_claimed)
    return w.to_bytes()


def decode_zk_task_record(data: bytes) -> ZkTask:
    r = Reader(data)
    task_id = r.read_u64()
    miner = r.read_bytes(IDENTITY_SIZE)
    proof = r.read_vec()
    dimensions = (r.read_u32(), r.read_u32(), r.read_u32())
    status_byte = r.read_u8()
    try:
        status = ZkStatus(status_byte)
    except ValueError:
        raise format_error(f"invalid zk task status {status_byte}") from None
    base_reward = r.read_u128()
    multiplier_q100 = r.read_u32()
    submitted_at = r.read_u32()
    submission_deposit = r.read_u128()
    reward_claimed = r.read_bool()
    r.finish()
    return ZkTask(
        task_id=task_id,
        miner=miner,
        proof=proof,
        dimensions=dimensions,
        multiplier_q100=multiplier_q100,
        base_reward=base_reward,
        submission_deposit=submission_deposit,
        status=status,
        submitted_at=submitted_at,
        reward_claimed=reward_claimed,
    )
