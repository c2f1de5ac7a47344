"""In-process dev node implementing `RemoteSystem`.

Operations are checked when imported (envelope, signature, nonce, fee) and
rejected synchronously with node-style error strings; valid ones wait in the
pool until `produce_block` includes them. A background producer can drive
block production on a timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from blake3 import blake3

from ..calls import Call, decode_call
from ..config import DEFAULT_BLOCK_TIME_SECS, SETTLEMENT_DELAY_BLOCKS
from ..crypto import Keypair, verify_signature
from ..dev_accounts import ALICE, ENDOWED_ACCOUNTS, FACILITATOR
from ..encoding import (
    decode_signed_operation,
    encode_signed_operation,
    encode_u64,
    operation_signing_bytes,
)
from ..errors import HarnessError, protocol_violation, transport_error
from ..remote import StatusStream
from ..types import Broadcast, ConnectionLost, Dropped, Included
from . import runtime
from .state import LedgerState, genesis_state

logger = logging.getLogger(__name__)

GENESIS_HASH = "0x" + "00" * 32

ERR_UNDECODABLE = "1002: Verification Error: could not decode operation"
ERR_BAD_SIGNATURE = "1010: Invalid Transaction: Transaction has a bad signature"
ERR_STALE = "1010: Invalid Transaction: Transaction is outdated"
ERR_FUTURE = "1010: Invalid Transaction: Transaction will be valid in the future"
ERR_PAYMENT = "1010: Invalid Transaction: Inability to pay some fees , e.g. account balance too low"
ERR_ALREADY_IMPORTED = "1013: Transaction Already Imported"
ERR_PRIORITY = "1014: Priority is too low"


@dataclass
class _Pending:
    handle: str
    origin: bytes
    nonce: int
    call: Call


class DevNode:
    def __init__(
        self,
        state: Optional[LedgerState] = None,
        block_time: float = DEFAULT_BLOCK_TIME_SECS,
        settlement_delay: int = SETTLEMENT_DELAY_BLOCKS,
        oracle_price: Optional[int] = None,
        duplicate_inclusion: bool = False,
        stalled: bool = False,
    ):
        if state is None:
            state = genesis_state(
                ENDOWED_ACCOUNTS,
                facilitator=FACILITATOR,
                admin=ALICE,
                settlement_delay=settlement_delay,
                oracle_price=oracle_price,
            )
        self.state = state
        self.block_time = block_time
        self.duplicate_inclusion = duplicate_inclusion
        self.stalled = stalled
        self.block_hashes: list[str] = [GENESIS_HASH]
        self.unwatched: list[str] = []
        self._storage = runtime.storage_snapshot(state)
        self._pool: list[_Pending] = []
        self._streams: dict[str, StatusStream] = {}
        self._imported: set[str] = set()
        self._producer: Optional[asyncio.Task] = None
        self._block_lock = asyncio.Lock()

    # --- RemoteSystem ---

    async def submit(self, payload: bytes, signer: Keypair) -> str:
        who = signer.public_key
        nonce = self.next_nonce(who)
        signature = signer.sign(operation_signing_bytes(nonce, payload))
        return self.import_signed(encode_signed_operation(who, nonce, signature, payload))

    def subscribe_status(self, handle: str) -> StatusStream:
        stream = self._streams.get(handle)
        if stream is None:
            raise protocol_violation(f"no status stream for {handle}")
        return stream

    async def query(self, key: bytes) -> Optional[bytes]:
        return self._storage.get(bytes(key))

    async def current_height(self) -> int:
        return self.state.height

    # --- Pool ---

    def next_nonce(self, who: bytes) -> int:
        """Account nonce plus operations from `who` already waiting in the pool."""
        acc = self.state.accounts.get(who)
        base = acc.nonce if acc is not None else 0
        return base + sum(1 for p in self._pool if p.origin == who)

    @property
    def pending(self) -> int:
        return len(self._pool)

    def import_signed(self, envelope: bytes) -> str:
        """Validate a signed envelope and place it in the pool.

        Raises HarnessError(TRANSPORT_FAILURE) for every import rejection.
        """
        try:
            signer, nonce, signature, payload = decode_signed_operation(envelope)
            call = decode_call(payload)
        except HarnessError as e:
            logger.debug("undecodable operation: %s", e.message)
            raise transport_error(ERR_UNDECODABLE) from None
        if not verify_signature(operation_signing_bytes(nonce, payload), signature, signer):
            raise transport_error(ERR_BAD_SIGNATURE)

        handle = "0x" + blake3(envelope).hexdigest()
        if handle in self._imported:
            raise transport_error(ERR_ALREADY_IMPORTED)

        acc = self.state.accounts.get(signer)
        account_nonce = acc.nonce if acc is not None else 0
        expected = self.next_nonce(signer)
        if nonce < account_nonce:
            raise transport_error(ERR_STALE)
        if nonce < expected:
            raise transport_error(ERR_PRIORITY)
        if nonce > expected:
            raise transport_error(ERR_FUTURE)
        if not runtime.can_pay_fee(self.state, signer, expected - account_nonce):
            raise transport_error(ERR_PAYMENT)

        stream = StatusStream(handle, on_close=self._release)
        stream.push(Broadcast("ready"))
        self._streams[handle] = stream
        self._imported.add(handle)
        self._pool.append(_Pending(handle, signer, nonce, call))
        logger.debug("imported %s as %s (nonce %d)", call, handle[:10], nonce)
        return handle

    async def _release(self, handle: str) -> None:
        self._streams.pop(handle, None)
        self.unwatched.append(handle)

    # --- Blocks ---

    async def produce_block(self) -> str:
        async with self._block_lock:
            height = self.state.height + 1
            working = self.state
            working.height = height
            included = []
            if not self.stalled:
                pending, self._pool = self._pool, []
                for op in pending:
                    acc = working.accounts.get(op.origin)
                    if acc is None or acc.nonce != op.nonce:
                        included.append((op, None, ERR_STALE))
                        continue
                    working, result = runtime.apply_operation(working, op.origin, op.call, height)
                    included.append((op, result, ERR_PAYMENT))

            self.state = working
            self._storage = runtime.storage_snapshot(working)
            parent = self.block_hashes[-1]
            seal = bytes.fromhex(parent[2:]) + encode_u64(height) + runtime.state_digest(self._storage)
            block_hash = "0x" + blake3(seal).hexdigest()
            self.block_hashes.append(block_hash)

        for op, result, reason in included:
            stream = self._streams.get(op.handle)
            if stream is None:
                continue
            if result is None:
                stream.push(Dropped(reason))
                continue
            stream.push(Included(block_hash, result))
            if self.duplicate_inclusion:
                stream.push(Included(block_hash, result))
        logger.debug("block #%d %s: %d operations", height, block_hash[:10], len(included))
        return block_hash

    async def advance(self, blocks: int) -> int:
        for _ in range(blocks):
            await self.produce_block()
        return self.state.height

    async def _run_producer(self) -> None:
        while True:
            await asyncio.sleep(self.block_time)
            await self.produce_block()

    async def start(self) -> None:
        if self._producer is None:
            self._producer = asyncio.create_task(self._run_producer())

    async def stop(self) -> None:
        task, self._producer = self._producer, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        await self.stop()
        for stream in list(self._streams.values()):
            stream.push(ConnectionLost("dev node shut down"))

    async def __aenter__(self) -> "DevNode":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
