"""Confirmation engine: outcome classification, event filtering, timeouts and concurrency."""

from __future__ import annotations

import asyncio

import pytest

from chainprobe import calls
from chainprobe.dev_accounts import ALICE_KEY, BOB, BOB_KEY
from chainprobe.engine import ConfirmationEngine, describe
from chainprobe.errors import ErrorKind, HarnessError, ModuleError, protocol_violation, transport_error
from chainprobe.types import (
    Broadcast,
    Confirmed,
    ConnectionLost,
    DispatchOutcome,
    Dropped,
    EmittedEvent,
    Included,
    Operation,
    OtherFailure,
    Rejected,
    TimedOut,
)

BLOCK = "0x" + "ab" * 32

WITHDRAW = EmittedEvent("balances", "Withdraw")
FEE_PAID = EmittedEvent("transactionPayment", "TransactionFeePaid")
SUCCESS = EmittedEvent("system", "ExtrinsicSuccess")
SUBMITTED = EmittedEvent("x402Settlement", "PaymentIntentSubmitted")
VERIFIED = EmittedEvent("x402Settlement", "PaymentIntentVerified")


def _op(signer=ALICE_KEY, label: str = "transfer") -> Operation:
    return calls.operation(calls.transfer_keep_alive(BOB, 1), signer, label=label)


def _included(*events: EmittedEvent, failure=None) -> Included:
    return Included(BLOCK, DispatchOutcome(events=events, failure=failure))


# --- Classification ---


async def test_confirmed_filters_infrastructure_events_in_order(remote, engine) -> None:
    remote.script(
        Broadcast("ready"),
        Broadcast("broadcast"),
        _included(WITHDRAW, SUBMITTED, VERIFIED, FEE_PAID, SUCCESS),
    )
    outcome = await engine.execute(_op(), ALICE_KEY)

    assert outcome == Confirmed(block=BLOCK, events=(SUBMITTED, VERIFIED))
    assert outcome.has_event("x402Settlement", "PaymentIntentVerified")


async def test_confirmed_with_only_infrastructure_events(remote, engine) -> None:
    remote.script(_included(WITHDRAW, FEE_PAID, SUCCESS))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome == Confirmed(block=BLOCK, events=())


async def test_custom_excluded_namespaces(remote) -> None:
    engine = ConfirmationEngine(remote, excluded_namespaces={"system"}, default_timeout=1.0)
    remote.script(_included(WITHDRAW, SUBMITTED, SUCCESS))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome.events == (WITHDRAW, SUBMITTED)


async def test_module_error_is_business_rejection(remote, engine) -> None:
    error = ModuleError("x402Settlement", "InvalidNonce")
    remote.script(_included(WITHDRAW, FEE_PAID, failure=error))
    outcome = await engine.execute(_op(), ALICE_KEY)

    assert isinstance(outcome, Rejected)
    assert outcome.error_kind == ErrorKind.BUSINESS_REJECTION
    assert outcome.module_error == error
    assert outcome.is_module_error("x402Settlement", "InvalidNonce")
    assert outcome.error_detail == "x402Settlement.InvalidNonce"


async def test_unstructured_failure_is_opaque(remote, engine) -> None:
    remote.script(_included(failure=OtherFailure("BadOrigin")))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome == Rejected(ErrorKind.OPAQUE_REJECTION, "BadOrigin")


async def test_dropped_is_opaque(remote, engine) -> None:
    remote.script(Broadcast("ready"), Dropped("usurped"))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome == Rejected(ErrorKind.OPAQUE_REJECTION, "usurped")


async def test_connection_lost_is_transport_failure(remote, engine) -> None:
    remote.script(Broadcast("ready"), ConnectionLost("socket closed"))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome == Rejected(ErrorKind.TRANSPORT_FAILURE, "socket closed")


async def test_transport_error_while_watching(remote, engine) -> None:
    remote.script(transport_error("reset by peer"))
    outcome = await engine.execute(_op(), ALICE_KEY)
    assert outcome == Rejected(ErrorKind.TRANSPORT_FAILURE, "reset by peer")


async def test_synchronous_submit_rejection(remote, engine) -> None:
    remote.script(submit_error=transport_error("1010: Invalid Transaction: bad signature"))
    outcome = await engine.execute(_op(), ALICE_KEY)

    assert isinstance(outcome, Rejected)
    assert outcome.error_kind == ErrorKind.TRANSPORT_FAILURE
    assert outcome.error_detail.startswith("1010")
    assert remote.streams == {}


async def test_protocol_violation_propagates(remote, engine) -> None:
    remote.script(Broadcast("ready"), protocol_violation("inBlock without events"))
    with pytest.raises(HarnessError) as exc:
        await engine.execute(_op(), ALICE_KEY)
    assert exc.value.kind == ErrorKind.PROTOCOL_VIOLATION
    assert remote.released == ["op-1"]


async def test_protocol_violation_on_submit_propagates(remote, engine) -> None:
    remote.script(submit_error=protocol_violation("invalid subscription id"))
    with pytest.raises(HarnessError) as exc:
        await engine.execute(_op(), ALICE_KEY)
    assert exc.value.kind == ErrorKind.PROTOCOL_VIOLATION


# --- Exactly one outcome ---


async def test_duplicate_inclusion_resolves_once(remote, engine) -> None:
    remote.script(_included(SUBMITTED), _included(VERIFIED))
    outcome = await engine.execute(_op(), ALICE_KEY)

    assert outcome.events == (SUBMITTED,)
    assert remote.released == ["op-1"]
    assert remote.streams["op-1"].closed
    assert not remote.streams["op-1"].push(_included(VERIFIED))


async def test_timeout_resolves_timed_out_and_releases(remote, engine) -> None:
    remote.script(Broadcast("ready"))
    outcome = await engine.execute(_op(), ALICE_KEY, timeout=0.05)

    assert outcome == TimedOut()
    assert remote.released == ["op-1"]
    assert describe(outcome) == "timed out"


async def test_late_inclusion_after_timeout_is_ignored(remote, engine) -> None:
    remote.script(_included(SUBMITTED), delay=0.2)
    outcome = await engine.execute(_op(), ALICE_KEY, timeout=0.05)
    await asyncio.sleep(0.25)

    assert outcome == TimedOut()
    assert remote.released == ["op-1"]


# --- Argument checks ---


async def test_timeout_must_be_positive(engine) -> None:
    with pytest.raises(ValueError):
        await engine.execute(_op(), ALICE_KEY, timeout=0)
    with pytest.raises(ValueError):
        await engine.execute(_op(), ALICE_KEY, timeout=-1.0)


async def test_signer_must_match_operation(remote, engine) -> None:
    with pytest.raises(ValueError):
        await engine.execute(_op(signer=ALICE_KEY), BOB_KEY)
    assert remote.submitted == []


def test_operation_requires_payload() -> None:
    with pytest.raises(ValueError):
        Operation(payload=b"", signer=ALICE_KEY.public_key)


# --- Concurrency ---


async def test_concurrent_operations_resolve_independently(remote, engine) -> None:
    """Each operation gets the outcome of its own stream regardless of completion order."""
    count = 8
    for i in range(count):
        event = EmittedEvent("test", f"Op{i}")
        # later submissions finish first
        remote.script(Broadcast("ready"), _included(event), delay=0.01 * (count - i))

    outcomes = await asyncio.gather(
        *(engine.execute(_op(label=f"op{i}"), ALICE_KEY) for i in range(count))
    )

    assert [o.events for o in outcomes] == [(EmittedEvent("test", f"Op{i}"),) for i in range(count)]
    assert sorted(remote.released) == sorted(remote.streams)


def test_describe_outcomes() -> None:
    assert describe(Confirmed(BLOCK, (SUBMITTED,))).endswith("events: x402Settlement.PaymentIntentSubmitted")
    assert describe(Rejected(ErrorKind.OPAQUE_REJECTION, "dropped")) == "rejected (OpaqueRejection): dropped"
