"""In-process dev node: import checks, block production, and end-to-end confirmation."""

from __future__ import annotations

import asyncio

import pytest

from chainprobe import calls, storage
from chainprobe.config import GENESIS_BALANCE, TX_FEE, UNIT
from chainprobe.dev_accounts import ALICE, ALICE_KEY, BOB, BOB_KEY, FACILITATOR_KEY
from chainprobe.encoding import encode_signed_operation, operation_signing_bytes
from chainprobe.engine import ConfirmationEngine
from chainprobe.errors import ErrorKind, HarnessError
from chainprobe.ledger import node as dev
from chainprobe.ledger.node import DevNode
from chainprobe.types import Broadcast, Confirmed, Dropped, Included, Rejected, TimedOut


def _payload(value: int = UNIT) -> bytes:
    return calls.encode_call(calls.transfer_keep_alive(BOB, value))


def _envelope(nonce: int, payload: bytes, key=ALICE_KEY) -> bytes:
    signature = key.sign(operation_signing_bytes(nonce, payload))
    return encode_signed_operation(key.public_key, nonce, signature, payload)


def _import_error(node: DevNode, envelope: bytes) -> str:
    with pytest.raises(HarnessError) as exc:
        node.import_signed(envelope)
    assert exc.value.kind == ErrorKind.TRANSPORT_FAILURE
    return exc.value.message


async def _execute_in_next_block(node: DevNode, engine: ConfirmationEngine, call: calls.Call, key=ALICE_KEY):
    task = asyncio.create_task(engine.execute(calls.operation(call, key), key))
    await asyncio.sleep(0)
    await node.produce_block()
    return await task


# --- Import checks ---


def test_import_rejects_undecodable(dev_node: DevNode) -> None:
    assert _import_error(dev_node, b"\x00" * 20) == dev.ERR_UNDECODABLE
    assert _import_error(dev_node, _envelope(0, b"\xff\xff")) == dev.ERR_UNDECODABLE


def test_import_rejects_bad_signature(dev_node: DevNode) -> None:
    envelope = bytearray(_envelope(0, _payload()))
    envelope[40] ^= 0x01
    assert _import_error(dev_node, bytes(envelope)) == dev.ERR_BAD_SIGNATURE


def test_import_checks_nonce(dev_node: DevNode) -> None:
    assert _import_error(dev_node, _envelope(1, _payload())) == dev.ERR_FUTURE

    dev_node.import_signed(_envelope(0, _payload(UNIT)))
    assert _import_error(dev_node, _envelope(0, _payload(UNIT))) == dev.ERR_ALREADY_IMPORTED
    assert _import_error(dev_node, _envelope(0, _payload(2 * UNIT))) == dev.ERR_PRIORITY
    dev_node.import_signed(_envelope(1, _payload(UNIT)))
    assert dev_node.pending == 2


async def test_import_rejects_stale_nonce(dev_node: DevNode) -> None:
    dev_node.import_signed(_envelope(0, _payload(UNIT)))
    await dev_node.produce_block()
    assert _import_error(dev_node, _envelope(0, _payload(2 * UNIT))) == dev.ERR_STALE


def test_import_requires_fee(dev_node: DevNode) -> None:
    envelope = _envelope(0, _payload(), key=FACILITATOR_KEY)
    assert _import_error(dev_node, envelope) == dev.ERR_PAYMENT


def test_subscribe_unknown_handle(dev_node: DevNode) -> None:
    with pytest.raises(HarnessError) as exc:
        dev_node.subscribe_status("0xdead")
    assert exc.value.kind == ErrorKind.PROTOCOL_VIOLATION


# --- Blocks ---


async def test_block_includes_pool_in_order(dev_node: DevNode) -> None:
    first = await dev_node.submit(_payload(UNIT), ALICE_KEY)
    second = await dev_node.submit(_payload(2 * UNIT), ALICE_KEY)
    assert dev_node.next_nonce(ALICE) == 2

    block = await dev_node.produce_block()

    assert dev_node.pending == 0
    assert await dev_node.current_height() == 1
    assert dev_node.block_hashes == [dev.GENESIS_HASH, block]
    for handle in (first, second):
        stream = dev_node.subscribe_status(handle)
        assert await stream.__anext__() == Broadcast("ready")
        included = await stream.__anext__()
        assert isinstance(included, Included)
        assert included.block == block
        assert included.result.success
    free, reserved = await storage.read_account(dev_node, ALICE)
    assert free == GENESIS_BALANCE - 3 * UNIT - 2 * TX_FEE
    assert reserved == 0


async def test_block_hashes_chain(dev_node: DevNode) -> None:
    height = await dev_node.advance(3)
    assert height == 3
    assert len(set(dev_node.block_hashes)) == 4


async def test_stale_pool_entry_is_dropped(dev_node: DevNode) -> None:
    handle = await dev_node.submit(_payload(), ALICE_KEY)
    dev_node.state.account(ALICE).nonce += 1
    await dev_node.produce_block()

    stream = dev_node.subscribe_status(handle)
    await stream.__anext__()
    assert await stream.__anext__() == Dropped(dev.ERR_STALE)


# --- Through the engine ---


async def test_confirmed_transfer(dev_node: DevNode) -> None:
    engine = ConfirmationEngine(dev_node, default_timeout=1.0)
    outcome = await _execute_in_next_block(dev_node, engine, calls.transfer_keep_alive(BOB, UNIT))

    assert isinstance(outcome, Confirmed)
    # balances.Transfer is bookkeeping and filtered out
    assert outcome.events == ()
    assert outcome.block == dev_node.block_hashes[-1]
    assert len(dev_node.unwatched) == 1


async def test_business_rejection(dev_node: DevNode) -> None:
    engine = ConfirmationEngine(dev_node, default_timeout=1.0)
    outcome = await _execute_in_next_block(dev_node, engine, calls.verify_settlement(0))

    assert isinstance(outcome, Rejected)
    assert outcome.is_module_error("x402Settlement", "NotAuthorized")


async def test_opaque_rejection(dev_node: DevNode) -> None:
    engine = ConfirmationEngine(dev_node, default_timeout=1.0)
    call = calls.create_task_definition(b"m", b"v", 1, 1, 10, b"c")
    outcome = await _execute_in_next_block(dev_node, engine, call, key=BOB_KEY)

    assert outcome == Rejected(ErrorKind.OPAQUE_REJECTION, "BadOrigin")


async def test_unfunded_signer_is_transport_rejected(dev_node: DevNode) -> None:
    engine = ConfirmationEngine(dev_node, default_timeout=1.0)
    op = calls.operation(calls.verify_settlement(0), FACILITATOR_KEY)
    outcome = await engine.execute(op, FACILITATOR_KEY)

    assert outcome == Rejected(ErrorKind.TRANSPORT_FAILURE, dev.ERR_PAYMENT)


async def test_stalled_node_times_out() -> None:
    node = DevNode(stalled=True)
    engine = ConfirmationEngine(node)
    task = asyncio.create_task(engine.execute(calls.operation(calls.transfer_keep_alive(BOB, UNIT), ALICE_KEY), ALICE_KEY, 0.1))
    await asyncio.sleep(0)
    await node.produce_block()

    assert await task == TimedOut()
    assert node.pending == 1
    assert len(node.unwatched) == 1


async def test_duplicate_inclusion_resolves_once() -> None:
    node = DevNode(duplicate_inclusion=True)
    engine = ConfirmationEngine(node, default_timeout=1.0)
    outcome = await _execute_in_next_block(node, engine, calls.transfer_keep_alive(BOB, UNIT))

    assert isinstance(outcome, Confirmed)
    assert len(node.unwatched) == 1


async def test_close_reports_connection_lost() -> None:
    node = DevNode()
    engine = ConfirmationEngine(node, default_timeout=1.0)
    task = asyncio.create_task(engine.execute(calls.operation(calls.transfer_keep_alive(BOB, UNIT), ALICE_KEY), ALICE_KEY))
    await asyncio.sleep(0)
    await node.close()

    outcome = await task
    assert isinstance(outcome, Rejected)
    assert outcome.error_kind == ErrorKind.TRANSPORT_FAILURE


async def test_producer_drives_blocks(running_node: DevNode) -> None:
    engine = ConfirmationEngine(running_node, default_timeout=2.0)
    outcomes = await asyncio.gather(
        *(
            engine.execute(calls.operation(calls.transfer_keep_alive(BOB, UNIT), ALICE_KEY, label=f"t{i}"), ALICE_KEY)
            for i in range(5)
        )
    )

    assert all(isinstance(o, Confirmed) for o in outcomes)
    free, _ = await storage.read_account(running_node, BOB)
    assert free == GENESIS_BALANCE + 5 * UNIT
