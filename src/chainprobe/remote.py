"""Remote system protocol: the network boundary the core depends on.

Concrete implementations:
    - rpc.JsonRpcRemote (WebSocket JSON-RPC node gateway)
    - ledger.node.DevNode (in-process dev ledger)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from .crypto import Keypair
from .errors import HarnessError
from .types import StatusEvent

logger = logging.getLogger(__name__)

CloseCallback = Callable[[str], Awaitable[None]]


class StatusStream:
    """Per-operation status events, in arrival order.

    Events pushed before anyone iterates are buffered. A pushed error is
    raised to the consumer in place of an event. `close` is idempotent and
    runs the release callback exactly once; pushes after close are dropped.
    """

    def __init__(self, handle: str, on_close: Optional[CloseCallback] = None):
        self.handle = handle
        self._queue: asyncio.Queue[Union[StatusEvent, HarnessError]] = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: Union[StatusEvent, HarnessError]) -> bool:
        if self._closed:
            logger.debug("dropping %r for closed stream %s", event, self.handle)
            return False
        self._queue.put_nowait(event)
        return True

    def __aiter__(self) -> "StatusStream":
        return self

    async def __anext__(self) -> StatusEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, HarnessError):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        callback, self._on_close = self._on_close, None
        if callback is not None:
            await callback(self.handle)


@runtime_checkable
class RemoteSystem(Protocol):
    """Interface for ledger operations.

    Implementations attach the status stream atomically with submission and
    must tolerate concurrent submit/subscribe calls without caller locking.
    """

    async def submit(self, payload: bytes, signer: Keypair) -> str:
        """Sign and submit `payload`; return a handle for `subscribe_status`.

        Raises HarnessError(TRANSPORT_FAILURE) when the submission is rejected
        synchronously or the connection fails.
        """
        ...

    def subscribe_status(self, handle: str) -> StatusStream:
        ...

    async def query(self, key: bytes) -> Optional[bytes]:
        ...

    async def current_height(self) -> int:
        ...
