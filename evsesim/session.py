"""OCPP 1.6-J session over a single WebSocket connection.

The session frames CALL / CALLRESULT / CALLERROR messages and correlates
results with the calls this side sent.  It never waits for a result:
outbound calls are fire-and-forget, and whatever comes back is handed to
the ``on_result`` / ``on_error`` hooks together with the originating
action (``None`` when the message id is unknown).

Nothing here retries.  A send while the socket is not open is logged and
dropped, a pending call whose answer never arrives stays pending, and a
closed connection is reported through ``on_close`` for the caller to act
on.
"""
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from ocpp.charge_point import remove_nones, serialize_as_dict, snake_to_camel_case
from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, unpack
from ocpp.v16 import call

from ._hooks import invoke

MIN_HEARTBEAT_SEC = 1.0

CallHook = Callable[[str, str, Dict[str, Any]], Optional[Awaitable[None]]]
ResultHook = Callable[[Optional[str], str, Dict[str, Any]], Optional[Awaitable[None]]]
ErrorHook = Callable[[Optional[str], str, str, str, Any], Optional[Awaitable[None]]]


class SessionState:
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    OPEN = "Open"
    CLOSED = "Closed"


class OCPPSession:
    def __init__(
        self,
        *,
        on_call: Optional[CallHook] = None,
        on_result: Optional[ResultHook] = None,
        on_error: Optional[ErrorHook] = None,
        on_open: Optional[Callable[[], Any]] = None,
        on_close: Optional[Callable[[], Any]] = None,
        subprotocol: str = "ocpp1.6",
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ) -> None:
        self.on_call = on_call
        self.on_result = on_result
        self.on_error = on_error
        self.on_open = on_open
        self.on_close = on_close
        self.subprotocol = subprotocol
        self._connect = connect

        self.state = SessionState.DISCONNECTED
        self.url: Optional[str] = None
        # message id -> action of the calls we sent and still wait on
        self.pending: Dict[str, str] = {}
        self.heartbeat_interval: Optional[float] = None
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN and self._ws is not None

    async def __aenter__(self) -> "OCPPSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    # ------------------------------------------------------------ connection
    async def connect(self, url: str, identity: str) -> bool:
        full = url + identity if url.endswith("/") else f"{url}/{identity}"
        self.url = full
        self.state = SessionState.CONNECTING
        logging.info(f"→ Connecting to CSMS: {full}")
        try:
            ws = await self._connect(full, subprotocols=[self.subprotocol])
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logging.error(f"OCPP connection error: {e}")
            await self._mark_closed()
            return False

        self._ws = ws
        self.state = SessionState.OPEN
        logging.info(
            f"← Connected to {full} (subprotocol={getattr(ws, 'subprotocol', None) or self.subprotocol})"
        )
        self._reader = asyncio.create_task(self._read_loop(ws))
        await invoke(self.on_open)
        return True

    async def disconnect(self) -> None:
        self.stop_heartbeat()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.wait({reader})
        self.pending.clear()
        await self._mark_closed()

    async def wait_closed(self) -> None:
        """Block until the reader stops, i.e. the connection went away."""
        if self._reader is not None:
            await asyncio.wait({self._reader})

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    await self.handle_frame(raw)
                except Exception:
                    logging.exception(f"Failed to handle frame: {raw!r}")
        except websockets.exceptions.ConnectionClosed as e:
            logging.warning(f"← WS closed: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
            self.stop_heartbeat()
            await self._mark_closed()

    async def _mark_closed(self) -> None:
        if self.state in (SessionState.CLOSED, SessionState.DISCONNECTED):
            return
        self.state = SessionState.CLOSED
        logging.info(f"Session closed: {self.url}")
        await invoke(self.on_close)

    # --------------------------------------------------------------- inbound
    async def handle_frame(self, raw) -> None:
        """Decode one inbound frame and hand it to the matching hook."""
        logging.debug(f"← Received: {raw}")
        try:
            msg = unpack(raw)
        except OCPPError as e:
            logging.warning(f"Dropped malformed frame ({e.description}): {raw!r}")
            return
        if not isinstance(msg.unique_id, str) or (isinstance(msg, Call) and not isinstance(msg.action, str)):
            logging.warning(f"Dropped malformed frame (bad message id or action): {raw!r}")
            return

        if isinstance(msg, Call):
            logging.info(f"← {msg.action} (msgId={msg.unique_id})")
            await invoke(self.on_call, msg.action, msg.unique_id, msg.payload)
        elif isinstance(msg, CallResult):
            action = self.pending.pop(msg.unique_id, None)
            if action is None:
                logging.warning(f"← CALLRESULT for unknown msgId={msg.unique_id}")
            else:
                logging.info(f"← {action}.conf (msgId={msg.unique_id})")
            await invoke(self.on_result, action, msg.unique_id, msg.payload)
        elif isinstance(msg, CallError):
            action = self.pending.pop(msg.unique_id, None)
            logging.warning(
                f"← CALLERROR for {action or 'unknown call'} (msgId={msg.unique_id}): "
                f"{msg.error_code} {msg.error_description}"
            )
            await invoke(
                self.on_error, action, msg.unique_id, msg.error_code, msg.error_description,
                msg.error_details,
            )

    # -------------------------------------------------------------- outbound
    def _new_message_id(self) -> str:
        message_id = str(uuid.uuid4())
        while message_id in self.pending:
            message_id = str(uuid.uuid4())
        return message_id

    async def _send(self, raw: str) -> bool:
        try:
            await self._ws.send(raw)
        except websockets.exceptions.ConnectionClosed as e:
            logging.error(f"Send failed, connection closed: {e}")
            return False
        logging.debug(f"→ {raw}")
        return True

    async def send_call(self, action: str, payload: Dict[str, Any]) -> Optional[str]:
        """Send a CALL and return its message id, or ``None`` if it was dropped."""
        if not self.is_open:
            logging.error(f"WS not connected, dropping {action}")
            return None
        message_id = self._new_message_id()
        self.pending[message_id] = action
        if not await self._send(Call(message_id, action, payload).to_json()):
            self.pending.pop(message_id, None)
            return None
        logging.info(f"→ Sent {action} (msgId={message_id})")
        return message_id

    async def call(self, req) -> Optional[str]:
        """Send an ``ocpp.v16.call`` payload; the action is its class name."""
        payload = snake_to_camel_case(remove_nones(serialize_as_dict(req)))
        return await self.send_call(type(req).__name__, payload)

    async def send_call_result(self, message_id: str, payload: Optional[Dict[str, Any]]) -> None:
        if not self.is_open:
            logging.error(f"WS not connected, dropping result for msgId={message_id}")
            return
        if await self._send(CallResult(message_id, payload or {}).to_json()):
            logging.info(f"→ Response sent (msgId={message_id})")

    async def send_call_error(
        self, message_id: str, code: str, description: str, details: Any = None
    ) -> None:
        if not self.is_open:
            logging.error(f"WS not connected, dropping error for msgId={message_id}")
            return
        frame = CallError(message_id, code, description, details or {})
        if await self._send(frame.to_json()):
            logging.info(f"→ Error sent (msgId={message_id}) {code} {description}")

    # ------------------------------------------------------------- heartbeat
    def start_heartbeat(self, interval_sec: float) -> None:
        self.stop_heartbeat()
        self.heartbeat_interval = max(MIN_HEARTBEAT_SEC, float(interval_sec))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self.heartbeat_interval))
        logging.info(f"Heartbeat every {self.heartbeat_interval:g}s")

    def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.call(call.Heartbeat())
