from __future__ import annotations

import asyncio
import enum
import logging
import urllib.parse
from collections import deque
from typing import Deque, Optional

import aiohttp
from aiohttp import WSMsgType

from . import codec
from .codec import Envelope, MessageType
from .config import NORMAL_CLOSURE, ChatConfig
from .errors import DecodeError
from .models import Identity

logger = logging.getLogger(__name__)

_UNQUEUEABLE = frozenset({MessageType.PING.value, MessageType.CONNECT.value})


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"


class ConnectionHandler:
    """Receives transport events. Every hook defaults to a no-op."""

    def on_open(self) -> None:
        pass

    def on_envelope(self, frame: Envelope) -> None:
        pass

    def on_error(self, reason: str) -> None:
        pass

    def on_close(self, code: Optional[int]) -> None:
        pass

    def on_state_change(self, state: ConnectionState) -> None:
        pass


def build_socket_url(server_url: str, api_key: str) -> str:
    """Append ``apiKey`` to the query string, keeping any existing parameters."""

    parts = urllib.parse.urlsplit(server_url)
    query = [(k, v) for k, v in urllib.parse.parse_qsl(parts.query, keep_blank_values=True) if k != "apiKey"]
    query.append(("apiKey", api_key))
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class ConnectionManager:
    """Owns the chat socket, the heartbeat and the reconnect schedule."""

    def __init__(
        self,
        config: ChatConfig,
        handler: ConnectionHandler,
        *,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._handler = handler
        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._identity: Optional[Identity] = None
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._closing = False
        self._lock = asyncio.Lock()
        self._offline_queue: Deque[Envelope] = deque(maxlen=max(config.offline_queue_size, 1))

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN and self._ws is not None and not self._ws.closed

    @property
    def queued(self) -> int:
        return len(self._offline_queue) if self._config.offline_queue_size > 0 else 0

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        try:
            self._handler.on_state_change(state)
        except Exception:
            logger.exception("state change handler failed")

    def _session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    async def connect(self, identity: Identity) -> None:
        """Open a connection for ``identity``; a no-op if already open for it."""

        async with self._lock:
            if self._state is ConnectionState.OPEN and identity == self._identity:
                return
            await self._teardown()
            self._identity = identity
            self._set_state(ConnectionState.CONNECTING)
            self._run_task = asyncio.create_task(self._run(identity))

    async def reconnect(self) -> None:
        """Force a fresh connection with the current identity."""

        if self._identity is None:
            raise RuntimeError("reconnect() called before connect()")
        async with self._lock:
            await self._teardown()
            self._set_state(ConnectionState.CONNECTING)
            self._run_task = asyncio.create_task(self._run(self._identity))

    async def disconnect(self) -> None:
        """Cancel timers and close with normal closure so no reconnect follows."""

        self._cancel_timers()
        async with self._lock:
            await self._teardown()
            self._offline_queue.clear()
            self._reconnect_attempts = 0
            self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def send(self, frame: Envelope) -> bool:
        """Send ``frame`` if open.

        Offline frames are dropped unless ``offline_queue_size`` is set, in
        which case they wait for the next successful open.
        """

        if self.is_open:
            return await self._send_now(frame)
        if self._config.offline_queue_size > 0 and frame.type not in _UNQUEUEABLE:
            self._offline_queue.append(frame)
            logger.debug("queued %s frame while %s", frame.type, self._state.value)
            return True
        logger.debug("dropped %s frame while %s", frame.type, self._state.value)
        return False

    async def _send_now(self, frame: Envelope) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_str(codec.encode(frame))
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
            logger.warning("failed to send %s frame: %s", frame.type, exc)
            return False
        return True

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reconnect_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        if self._reconnect_task is not current:
            self._reconnect_task = None

    async def _teardown(self) -> None:
        self._cancel_timers()
        run_task = self._run_task
        self._run_task = None
        if run_task is None or run_task is asyncio.current_task():
            return
        if run_task.done():
            await asyncio.gather(run_task, return_exceptions=True)
            return
        self._closing = True
        self._set_state(ConnectionState.CLOSING)
        try:
            ws = self._ws
            if ws is not None and not ws.closed:
                await ws.close(code=NORMAL_CLOSURE, message=b"Manual disconnect")
            elif not run_task.done():
                run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)
        finally:
            self._closing = False
            self._ws = None

    async def _run(self, identity: Identity) -> None:
        url = build_socket_url(self._config.server_url, identity.api_key)
        try:
            ws = await self._session().ws_connect(url, autoping=True)
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("failed to connect to %s: %s", self._config.server_url, exc)
            self._emit_error("Connection error")
            self._emit_error("Failed to connect")
            self._after_close(None)
            return

        self._ws = ws
        self._reconnect_attempts = 0
        logger.info("chat socket open for user %s in room %s", identity.user_id, identity.room_id)
        self._set_state(ConnectionState.OPEN)
        try:
            self._handler.on_open()
        except Exception:
            logger.exception("open handler failed")
        await self._send_now(codec.envelope(MessageType.CONNECT, identity.connect_payload()))
        await self._flush_offline_queue()
        self._heartbeat_task = asyncio.create_task(self._heartbeat(ws))

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self._handle_frame(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("chat socket error: %s", ws.exception())
                    self._emit_error("Connection error")
        except asyncio.CancelledError:
            if not ws.closed:
                await ws.close(code=NORMAL_CLOSURE, message=b"Manual disconnect")
            self._stop_heartbeat()
            self._ws = None
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._stop_heartbeat()
        self._ws = None
        self._after_close(ws.close_code)

    def _handle_frame(self, data: str | bytes) -> None:
        try:
            frame = codec.decode(data)
        except DecodeError as exc:
            logger.warning("dropping undecodable frame: %s", exc.reason)
            return
        try:
            self._handler.on_envelope(frame)
        except Exception:
            logger.exception("envelope handler failed for %s", frame.type)

    def _emit_error(self, reason: str) -> None:
        try:
            self._handler.on_error(reason)
        except Exception:
            logger.exception("error handler failed")

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    def _after_close(self, code: Optional[int]) -> None:
        deliberate = self._closing or code == NORMAL_CLOSURE
        logger.info("chat socket closed (code=%s, deliberate=%s)", code, deliberate)
        self._set_state(ConnectionState.DISCONNECTED)
        try:
            self._handler.on_close(code)
        except Exception:
            logger.exception("close handler failed")
        if deliberate or self._identity is None:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        policy = self._config.reconnect
        attempt = self._reconnect_attempts + 1
        if not policy.allows(attempt):
            logger.warning("giving up after %d reconnect attempts", self._reconnect_attempts)
            self._emit_error("Reconnect attempts exhausted")
            return
        self._reconnect_attempts = attempt
        delay = policy.delay_for(attempt)
        logger.info("reconnecting in %.1fs (attempt %d)", delay, attempt)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        identity = self._identity
        if identity is None or self._state is not ConnectionState.RECONNECTING:
            return
        await self.connect(identity)

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        ping = codec.envelope(MessageType.PING)
        try:
            while True:
                await asyncio.sleep(self._config.heartbeat_interval_s)
                if ws.closed or self._state is not ConnectionState.OPEN:
                    return
                await self._send_now(ping)
        except asyncio.CancelledError:
            return

    async def _flush_offline_queue(self) -> None:
        if self._config.offline_queue_size <= 0:
            return
        while self._offline_queue and self.is_open:
            frame = self._offline_queue.popleft()
            if not await self._send_now(frame):
                self._offline_queue.appendleft(frame)
                return
