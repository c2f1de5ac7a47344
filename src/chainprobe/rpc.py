"""JSON-RPC 2.0 over WebSocket client for a node gateway.

One reader task owns the socket's receive side and routes responses to
waiting requests and status notifications to their streams. Notifications
that arrive before their stream is registered are buffered by subscription id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Union

import aiohttp

from .config import DEFAULT_TIMEOUT_SECS
from .crypto import Keypair
from .encoding import encode_signed_operation, operation_signing_bytes
from .errors import HarnessError, ModuleError, protocol_violation, transport_error
from .remote import StatusStream
from .types import (
    Broadcast,
    ConnectionLost,
    DispatchOutcome,
    Dropped,
    EmittedEvent,
    Included,
    OtherFailure,
    StatusEvent,
)

logger = logging.getLogger(__name__)

_BROADCAST_STAGES = frozenset({
    "ready",
    "future",
    "broadcast",
    "retracted",
    "finalized",
    "finalityTimeout",
})
_DROPPED_STAGES = frozenset({"invalid", "dropped", "usurped"})

# subscriptions with buffered notifications and no registered stream
MAX_ORPHANED_SUBSCRIPTIONS = 64

StreamItem = Union[StatusEvent, HarnessError]


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _unhex(value: str) -> bytes:
    v = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(v)
    except ValueError:
        raise protocol_violation(f"invalid hex string {value!r}") from None


def _parse_in_block(body: Any) -> Included:
    if not isinstance(body, dict):
        raise protocol_violation(
            "inBlock status carries only a block hash; events and dispatch result are required"
        )
    try:
        block = body["hash"]
        events = tuple(
            EmittedEvent(e["section"], e["method"]) for e in body.get("events") or ()
        )
        err = body.get("dispatchError")
        if err is None:
            failure = None
        elif "module" in err:
            failure = ModuleError(err["module"]["section"], err["module"]["name"])
        else:
            failure = OtherFailure(str(err.get("other", err)))
    except (KeyError, TypeError, AttributeError) as e:
        raise protocol_violation(f"malformed inBlock status: {e!r}") from None
    if not isinstance(block, str):
        raise protocol_violation(f"block hash must be a string, got {block!r}")
    return Included(block=block, result=DispatchOutcome(events=events, failure=failure))


def parse_status(result: Any) -> StatusEvent:
    """Map an `author_extrinsicUpdate` result onto a status event."""
    if isinstance(result, str):
        if result in _BROADCAST_STAGES:
            return Broadcast(result)
        if result in _DROPPED_STAGES:
            return Dropped(result)
        raise protocol_violation(f"unknown operation status {result!r}")
    if isinstance(result, dict) and len(result) == 1:
        ((stage, body),) = result.items()
        if stage == "inBlock":
            return _parse_in_block(body)
        if stage in _BROADCAST_STAGES:
            return Broadcast(stage)
        if stage in _DROPPED_STAGES:
            return Dropped(f"{stage}: {body}")
    raise protocol_violation(f"unknown operation status {result!r}")


def _rpc_error_message(error: Any) -> str:
    if not isinstance(error, dict):
        return str(error)
    text = f"{error.get('code')}: {error.get('message')}"
    if error.get("data"):
        text += f": {error['data']}"
    return text


class JsonRpcRemote:
    """`RemoteSystem` backed by a WebSocket JSON-RPC endpoint."""

    def __init__(
        self,
        endpoint: str,
        request_timeout: float = DEFAULT_TIMEOUT_SECS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._streams: dict[str, StatusStream] = {}
        self._orphans: dict[str, list[StreamItem]] = {}
        self._signers: dict[str, bytes] = {}
        self._send_lock = asyncio.Lock()
        self._nonce_locks: dict[bytes, asyncio.Lock] = {}
        self._nonces: dict[bytes, int] = {}
        self._lost: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.endpoint)
        except (aiohttp.ClientError, OSError) as e:
            raise transport_error(f"cannot connect to {self.endpoint}: {e}") from e
        self._lost = None
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("connected to %s", self.endpoint)

    async def close(self) -> None:
        reader, self._reader = self._reader, None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_all("connection closed")

    async def __aenter__(self) -> "JsonRpcRemote":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- Requests ---

    async def _send(self, req_id: int, method: str, params: list) -> None:
        if not self.connected:
            raise transport_error(f"{method}: not connected")
        try:
            async with self._send_lock:
                await self._ws.send_json(
                    {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
                )
        except (aiohttp.ClientError, ConnectionError) as e:
            raise transport_error(f"{method}: {e}") from e

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def _request(self, method: str, params: list) -> Any:
        if not self.connected:
            raise transport_error(f"{method}: not connected")
        req_id = self._new_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._send(req_id, method, params)
            return await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError:
            raise transport_error(f"{method}: no response within {self.request_timeout}s") from None
        finally:
            self._pending.pop(req_id, None)

    # --- Reader ---

    async def _read_loop(self) -> None:
        ws = self._ws
        reason = "connection closed by remote"
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"websocket error: {ws.exception()}"
                    break
        except Exception as e:
            logger.exception("reader stopped")
            reason = f"reader failed: {e!r}"
        finally:
            self._fail_all(reason)
            # the client reports disconnected once nothing reads the socket
            if not ws.closed:
                await ws.close()

    def _handle_frame(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.warning("ignoring non-JSON frame: %.80s", raw)
            return
        if not isinstance(msg, dict):
            logger.warning("ignoring unexpected frame: %.80s", raw)
            return

        if "id" in msg and msg.get("method") is None:
            req_id = msg["id"]
            future = self._pending.get(req_id) if isinstance(req_id, int) else None
            if future is None or future.done():
                logger.debug("response for unknown request id %r", req_id)
                return
            if msg.get("error") is not None:
                future.set_exception(transport_error(_rpc_error_message(msg["error"])))
            else:
                future.set_result(msg.get("result"))
            return

        if msg.get("method") == "author_extrinsicUpdate":
            params = msg.get("params")
            if not isinstance(params, dict) or "subscription" not in params:
                logger.warning("ignoring malformed status notification: %.80s", raw)
                return
            try:
                item: StreamItem = parse_status(params.get("result"))
            except HarnessError as e:
                item = e
            self._route(str(params["subscription"]), item)
            return
        logger.debug("ignoring notification %s", msg.get("method"))

    def _route(self, sub: str, item: StreamItem) -> None:
        stream = self._streams.get(sub)
        if stream is not None:
            self._deliver(sub, stream, item)
            return
        if sub not in self._orphans and len(self._orphans) >= MAX_ORPHANED_SUBSCRIPTIONS:
            oldest = next(iter(self._orphans))
            logger.debug("discarding unclaimed status for subscription %s", oldest)
            del self._orphans[oldest]
        self._orphans.setdefault(sub, []).append(item)

    def _deliver(self, sub: str, stream: StatusStream, item: StreamItem) -> None:
        if isinstance(item, Dropped):
            # the node did not consume the nonce this operation was signed with
            who = self._signers.get(sub)
            if who is not None:
                self._nonces.pop(who, None)
        stream.push(item)

    def _fail_all(self, reason: str) -> None:
        self._lost = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(transport_error(reason))
        for stream in list(self._streams.values()):
            stream.push(ConnectionLost(reason))
        self._nonces.clear()

    # --- RemoteSystem ---

    async def _next_nonce(self, who: bytes) -> int:
        cached = self._nonces.get(who)
        if cached is not None:
            return cached
        result = await self._request("system_accountNextIndex", [_hex(who)])
        try:
            return int(result)
        except (TypeError, ValueError):
            raise protocol_violation(f"invalid account index {result!r}") from None

    async def submit(self, payload: bytes, signer: Keypair) -> str:
        who = signer.public_key
        lock = self._nonce_locks.setdefault(who, asyncio.Lock())
        async with lock:
            nonce = await self._next_nonce(who)
            signature = signer.sign(operation_signing_bytes(nonce, payload))
            envelope = encode_signed_operation(who, nonce, signature, payload)
            try:
                sub = await self._request("author_submitAndWatchExtrinsic", [_hex(envelope)])
            except HarnessError:
                self._nonces.pop(who, None)
                raise
            self._nonces[who] = nonce + 1

        if not isinstance(sub, (str, int)):
            raise protocol_violation(f"invalid subscription id {sub!r}")
        handle = str(sub)
        stream = StatusStream(handle, on_close=self._unwatch)
        self._streams[handle] = stream
        self._signers[handle] = who
        for item in self._orphans.pop(handle, ()):
            self._deliver(handle, stream, item)
        # the socket may have closed between the response and this registration
        if self._lost is not None:
            stream.push(ConnectionLost(self._lost))
        return handle

    def subscribe_status(self, handle: str) -> StatusStream:
        stream = self._streams.get(handle)
        if stream is None:
            raise protocol_violation(f"no status stream for {handle}")
        return stream

    async def _unwatch(self, handle: str) -> None:
        self._streams.pop(handle, None)
        self._orphans.pop(handle, None)
        self._signers.pop(handle, None)
        if not self.connected:
            return
        # the reply is not awaited; the reader logs and drops it
        try:
            await self._send(self._new_id(), "author_unwatchExtrinsic", [handle])
        except HarnessError as e:
            logger.debug("unwatch %s failed: %s", handle, e.message)

    async def query(self, key: bytes) -> Optional[bytes]:
        result = await self._request("state_getStorage", [_hex(key)])
        if result is None:
            return None
        if not isinstance(result, str):
            raise protocol_violation(f"storage value must be hex, got {result!r}")
        return _unhex(result)

    async def current_height(self) -> int:
        header = await self._request("chain_getHeader", [])
        try:
            number = header["number"]
            return int(number, 16) if isinstance(number, str) else int(number)
        except (KeyError, TypeError, ValueError):
            raise protocol_violation(f"malformed header {header!r}") from None
