"""Confirmation engine: submit one operation, resolve exactly one outcome."""

from __future__ import annotations

import asyncio
import logging
from typing import AbstractSet, Optional

from .config import DEFAULT_TIMEOUT_SECS, INFRASTRUCTURE_NAMESPACES
from .crypto import Keypair
from .errors import (
    ErrorKind,
    HarnessError,
    ModuleError,
    is_transport_error,
    protocol_violation,
)
from .remote import RemoteSystem, StatusStream
from .types import (
    Broadcast,
    Confirmed,
    ConnectionLost,
    Dropped,
    Included,
    Operation,
    OtherFailure,
    Outcome,
    Rejected,
    TimedOut,
)

logger = logging.getLogger(__name__)


class _Resolution:
    """One-shot completion guard for a single operation."""

    __slots__ = ("label", "outcome")

    def __init__(self, label: str):
        self.label = label
        self.outcome: Optional[Outcome] = None

    def settle(self, outcome: Outcome) -> Outcome:
        if self.outcome is not None:
            raise protocol_violation(
                f"{self.label}: second resolution {outcome!r} after {self.outcome!r}"
            )
        self.outcome = outcome
        return outcome


class ConfirmationEngine:
    """Resolves operations against a shared remote connection.

    Each `execute` call owns its status stream and its timer; nothing else is
    shared between concurrent calls.
    """

    def __init__(
        self,
        remote: RemoteSystem,
        excluded_namespaces: AbstractSet[str] = INFRASTRUCTURE_NAMESPACES,
        default_timeout: float = DEFAULT_TIMEOUT_SECS,
    ):
        self.remote = remote
        self.excluded_namespaces = frozenset(excluded_namespaces)
        self.default_timeout = default_timeout

    async def execute(
        self,
        operation: Operation,
        signer: Keypair,
        timeout: Optional[float] = None,
    ) -> Outcome:
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if operation.signer != signer.public_key:
            raise ValueError(f"{operation.label}: signer does not match operation signer")

        label = operation.label or "operation"
        resolution = _Resolution(label)

        try:
            handle = await self.remote.submit(operation.payload, signer)
        except HarnessError as e:
            if not is_transport_error(e):
                raise
            logger.warning("%s: submission failed: %s", label, e.message)
            return resolution.settle(Rejected(ErrorKind.TRANSPORT_FAILURE, e.message))

        stream = self.remote.subscribe_status(handle)
        try:
            outcome = await asyncio.wait_for(self._await_authoritative(stream, label), timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: no inclusion within %.1fs", label, timeout)
            outcome = TimedOut()
        finally:
            await stream.close()

        resolution.settle(outcome)
        logger.info("%s: %s", label, describe(outcome))
        return outcome

    async def _await_authoritative(self, stream: StatusStream, label: str) -> Outcome:
        try:
            async for event in stream:
                if isinstance(event, Broadcast):
                    logger.debug("%s: %s", label, event.stage)
                    continue
                if isinstance(event, Included):
                    return self._classify(event)
                if isinstance(event, Dropped):
                    return Rejected(ErrorKind.OPAQUE_REJECTION, event.detail)
                if isinstance(event, ConnectionLost):
                    logger.warning("%s: connection lost: %s", label, event.detail)
                    return Rejected(ErrorKind.TRANSPORT_FAILURE, event.detail)
                raise protocol_violation(f"{label}: unexpected status event {event!r}")
        except HarnessError as e:
            if not is_transport_error(e):
                raise
            logger.warning("%s: transport failure while watching: %s", label, e.message)
            return Rejected(ErrorKind.TRANSPORT_FAILURE, e.message)
        return Rejected(ErrorKind.TRANSPORT_FAILURE, "status stream ended before inclusion")

    def _classify(self, event: Included) -> Outcome:
        failure = event.result.failure
        if failure is None:
            events = tuple(
                e for e in event.result.events if e.namespace not in self.excluded_namespaces
            )
            return Confirmed(block=event.block, events=events)
        if isinstance(failure, ModuleError):
            return Rejected(ErrorKind.BUSINESS_REJECTION, str(failure), module_error=failure)
        if isinstance(failure, OtherFailure):
            return Rejected(ErrorKind.OPAQUE_REJECTION, failure.message)
        raise protocol_violation(f"unknown dispatch failure {failure!r}")


def describe(outcome: Outcome) -> str:
    if isinstance(outcome, Confirmed):
        events = ", ".join(str(e) for e in outcome.events)
        short = outcome.block[:10]
        return f"confirmed in {short}..." + (f" events: {events}" if events else "")
    if isinstance(outcome, Rejected):
        return f"rejected ({outcome.error_kind.value}): {outcome.error_detail}"
    return "timed out"
