import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from client.api.endpoints import EngineApi
from client.api.request_client import RequestClient
from client.api.websocket_schemas import (
    CORE_MESSAGE_TYPES,
    StatusMessage,
    StatusPayload,
    UnknownServerMessage,
    decode_binary_frame,
    parse_server_message,
)
from client.session_manager import SessionIdentity
from core.event_bus import EventBus
from core.types_registry import ConnectionState, EventName, ProtocolError

logger = logging.getLogger(__name__)


class Transport:
    """Owns the live channel to the engine.

    Frames are decoded and republished on the event bus in arrival order.
    A dropped channel is retried forever after a constant delay. If the very
    first attempt fails before the channel ever opened, queue status is
    polled over HTTP until a later attempt succeeds.
    """

    def __init__(
        self,
        request_client: RequestClient,
        event_bus: EventBus,
        identity: SessionIdentity,
        reconnect_delay: float = 0.3,
        poll_interval: float = 1.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.request_client = request_client
        self.event_bus = event_bus
        self.identity = identity
        self.reconnect_delay = reconnect_delay
        self.poll_interval = poll_interval
        self._connect = connect
        self._api = EngineApi(request_client)

        self._state = ConnectionState.DISCONNECTED
        self._run_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._ws: Any = None
        self._closed = False
        # Unknown text message types already reported for this session
        self._reported_unknown_types: set[str] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self) -> None:
        """Start the connection loop on the running event loop. Idempotent."""
        if self._run_task is not None and not self._run_task.done():
            return
        self._closed = False
        self._run_task = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        self._stop_polling()
        if self._ws is not None:
            await self._ws.close()
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None
        self._set_state(ConnectionState.DISCONNECTED)

    # ============================================================================
    # Connection lifecycle
    # ============================================================================

    async def _run(self) -> None:
        is_reconnect = False
        while not self._closed:
            opened = await self._connect_once(is_reconnect)

            if self._closed:
                break

            if opened:
                self._set_state(ConnectionState.RECONNECTING)
                self.event_bus.emit(EventName.STATUS, None)
                self.event_bus.emit(EventName.RECONNECTING)
            elif not is_reconnect:
                self._start_polling()
                self._set_state(ConnectionState.POLLING)
            else:
                self._set_state(
                    ConnectionState.POLLING if self.polling else ConnectionState.RECONNECTING
                )

            is_reconnect = True
            await asyncio.sleep(self.reconnect_delay)

    async def _connect_once(self, is_reconnect: bool) -> bool:
        """Run one connection attempt to completion. Returns whether it opened."""
        opened = False
        url = self.request_client.ws_url(self.identity.reconnect_id)
        self._set_state(ConnectionState.CONNECTING)
        try:
            async with self._connect(url, max_size=None) as ws:
                opened = True
                self._ws = ws
                self._stop_polling()
                self._set_state(ConnectionState.OPEN)
                if is_reconnect:
                    logger.info("Live channel re-established")
                    self.event_bus.emit(EventName.RECONNECTED)

                async for message in ws:
                    self.handle_message(message)
        except ConnectionClosed as e:
            logger.warning(f"Live channel closed: {e}")
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            if opened:
                logger.warning(f"Live channel error: {e}")
            else:
                logger.warning(f"Could not open live channel at {url}: {e}")
        finally:
            self._ws = None
        return opened

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Connection state {self._state.value} -> {state.value}")
        self._state = state
        self.event_bus.emit(EventName.CONNECTION_STATE, state)

    # ============================================================================
    # Polling fallback
    # ============================================================================

    def _start_polling(self) -> None:
        if self.polling:
            return
        logger.warning("Live channel unavailable, polling queue status instead")
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                status: StatusPayload | None = await self._api.get_prompt_status()
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Status poll failed: {e}")
                status = None
            self.event_bus.emit(EventName.STATUS, status)

    # ============================================================================
    # Demultiplexing
    # ============================================================================

    def handle_message(self, message: str | bytes) -> None:
        """Decode one frame and publish it. Never raises."""
        try:
            if isinstance(message, (bytes, bytearray, memoryview)):
                self._handle_binary(bytes(message))
            else:
                self._handle_text(message)
        except ProtocolError as e:
            logger.error(f"Protocol error on live channel: {e}")
            self.event_bus.emit(EventName.PROTOCOL_ERROR, e)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Unhandled message: {message!r:.200} ({e})")

    def _adopt(self, sid: str) -> None:
        try:
            self.identity.adopt(sid)
        except OSError as e:
            # the id is in use for this session even if it could not be saved
            logger.warning(f"Could not persist session id {sid}: {e}")

    def _handle_binary(self, frame: bytes) -> None:
        preview = decode_binary_frame(frame)
        self.event_bus.emit(EventName.B_PREVIEW, preview)

    def _handle_text(self, text: str) -> None:
        parsed = parse_server_message(json.loads(text))

        if isinstance(parsed, UnknownServerMessage) or parsed.type not in CORE_MESSAGE_TYPES:
            if self.event_bus.has_listeners(parsed.type):
                self.event_bus.emit(parsed.type, parsed.data)
            elif parsed.type not in self._reported_unknown_types:
                self._reported_unknown_types.add(parsed.type)
                raise ValueError(f"Unknown message type {parsed.type}")
            return

        if isinstance(parsed, StatusMessage):
            if parsed.data.sid:
                self._adopt(parsed.data.sid)
            self.event_bus.emit(EventName.STATUS, parsed.data.status)
            return

        self.event_bus.emit(parsed.type, parsed.data)
