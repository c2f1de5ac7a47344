"""Shared fixtures: a scripted remote for engine tests and dev ledger nodes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from chainprobe.crypto import Keypair
from chainprobe.engine import ConfirmationEngine
from chainprobe.errors import HarnessError
from chainprobe.ledger.node import DevNode
from chainprobe.remote import StatusStream


@dataclass
class Script:
    events: tuple[Any, ...] = ()
    delay: float = 0.0
    submit_error: Optional[HarnessError] = None


@dataclass
class ScriptedRemote:
    """RemoteSystem whose status events are scripted per submission, in order."""

    scripts: list[Script] = field(default_factory=list)
    streams: dict[str, StatusStream] = field(default_factory=dict)
    released: list[str] = field(default_factory=list)
    submitted: list[bytes] = field(default_factory=list)
    storage: dict[bytes, bytes] = field(default_factory=dict)
    height: int = 0
    _feeders: list[asyncio.Task] = field(default_factory=list)

    def script(self, *events: Any, delay: float = 0.0, submit_error: Optional[HarnessError] = None) -> None:
        self.scripts.append(Script(events=events, delay=delay, submit_error=submit_error))

    async def submit(self, payload: bytes, signer: Keypair) -> str:
        self.submitted.append(payload)
        step = self.scripts.pop(0) if self.scripts else Script()
        if step.submit_error is not None:
            raise step.submit_error
        handle = f"op-{len(self.submitted)}"
        stream = StatusStream(handle, on_close=self._release)
        self.streams[handle] = stream
        if step.delay:
            self._feeders.append(asyncio.create_task(self._feed(stream, step)))
        else:
            for event in step.events:
                stream.push(event)
        return handle

    async def _feed(self, stream: StatusStream, step: Script) -> None:
        await asyncio.sleep(step.delay)
        for event in step.events:
            stream.push(event)

    def subscribe_status(self, handle: str) -> StatusStream:
        return self.streams[handle]

    async def _release(self, handle: str) -> None:
        self.released.append(handle)

    async def query(self, key: bytes) -> Optional[bytes]:
        return self.storage.get(key)

    async def current_height(self) -> int:
        return self.height


@pytest.fixture
def remote() -> ScriptedRemote:
    return ScriptedRemote()


@pytest.fixture
def engine(remote: ScriptedRemote) -> ConfirmationEngine:
    return ConfirmationEngine(remote, default_timeout=1.0)


@pytest.fixture
def dev_node() -> DevNode:
    """Dev node without a producer; tests call `produce_block` explicitly."""
    return DevNode(block_time=0.01)


@pytest.fixture
async def running_node():
    """Dev node producing a block every 20ms."""
    node = DevNode(block_time=0.02, settlement_delay=3)
    await node.start()
    yield node
    await node.close()
