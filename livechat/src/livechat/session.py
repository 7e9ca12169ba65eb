"""Per-mount chat session: store, socket, timers and commands for one widget."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp

from .codec import Envelope
from .commands import ChatCommands
from .config import ChatConfig
from .connection import ConnectionHandler, ConnectionManager, ConnectionState
from .models import Identity, MediaItem, MediaResolver, Message
from .reducer import NotifyError, NotifyMessage, ReducerOptions, ScheduleTypingClear
from .store import SessionStore
from .typing_timers import TypingTimers
from .wallet import TipResult, WalletApi, WalletSession

logger = logging.getLogger(__name__)


class ChatListener:
    """UI-facing events. Override the hooks you care about."""

    def on_connect(self) -> None:
        pass

    def on_disconnect(self) -> None:
        pass

    def on_message(self, message: Message) -> None:
        pass

    def on_error(self, reason: str) -> None:
        pass

    def on_state_change(self, state: ConnectionState) -> None:
        pass


class ChatSession(ConnectionHandler):
    """Everything one mounted widget owns.

    Sessions share nothing: two widgets in the same process get two stores,
    two sockets and two sets of timers.
    """

    def __init__(
        self,
        identity: Identity,
        *,
        config: ChatConfig | None = None,
        listener: ChatListener | None = None,
        wallet: WalletApi | None = None,
        media_resolver: MediaResolver | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.listener = listener or ChatListener()
        self._identity = self._with_room(identity)
        self._wallet_api = wallet
        self.store = SessionStore(
            ReducerOptions(
                typing_expiry_s=self.config.typing_expiry_s,
                typing_grace_s=self.config.typing_grace_s,
                resolve_media=media_resolver,
            )
        )
        self.typing_timers = TypingTimers(self.store.clear_typing)
        self.connection = ConnectionManager(self.config, self, http_session=http_session)
        self._tearing_down = False
        self.commands = ChatCommands(
            self.connection,
            self.store,
            lambda: self._identity,
            wallet=self._build_wallet(),
            typing_idle_s=self.config.typing_expiry_s,
        )

    def _with_room(self, identity: Identity) -> Identity:
        if identity.room_id:
            return identity
        return dataclasses.replace(identity, room_id=self.config.default_room_id)

    def _build_wallet(self) -> Optional[WalletSession]:
        if self._wallet_api is None:
            return None
        return WalletSession(
            self._wallet_api,
            user_id=self._identity.user_id,
            room_id=self._identity.room_id,
            username=self._identity.username,
        )

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def wallet(self) -> Optional[WalletSession]:
        return self.commands.wallet

    # Lifecycle

    async def start(self) -> None:
        await self.connection.connect(self._identity)

    async def close(self) -> None:
        """Unmount: drop every timer, then close with normal closure."""

        self._tearing_down = True
        try:
            self.typing_timers.cancel_all()
            self.commands.cancel_typing()
            await self.connection.close()
        finally:
            self._tearing_down = False
        self.typing_timers.cancel_all()

    async def reconnect(self) -> None:
        await self.connection.reconnect()

    async def update_identity(self, identity: Identity) -> bool:
        """Switch identity; returns False when nothing changed."""

        identity = self._with_room(identity)
        if identity == self._identity:
            return False
        logger.info("identity changed for user %s, reconnecting", identity.user_id)
        self._tearing_down = True
        try:
            self.typing_timers.cancel_all()
            self.commands.cancel_typing()
            await self.connection.disconnect()
        finally:
            self._tearing_down = False
        self.typing_timers.cancel_all()
        self._identity = identity
        self.commands.wallet = self._build_wallet()
        self.store.reset()
        await self.connection.connect(identity)
        return True

    # ConnectionHandler

    def on_open(self) -> None:
        self.store.set_connected(True)
        self._notify("on_connect")

    def on_close(self, code: Optional[int]) -> None:
        self.store.set_connected(False)
        self._notify("on_disconnect")

    def on_error(self, reason: str) -> None:
        self._notify("on_error", reason)

    def on_state_change(self, state: ConnectionState) -> None:
        self._notify("on_state_change", state)

    def on_envelope(self, frame: Envelope) -> None:
        if self._tearing_down:
            logger.debug("dropping %s frame during teardown", frame.type)
            return
        for effect in self.store.dispatch(frame):
            if isinstance(effect, NotifyMessage):
                self._notify("on_message", effect.message)
            elif isinstance(effect, NotifyError):
                logger.warning("server error: %s", effect.reason)
                self._notify("on_error", effect.reason)
            elif isinstance(effect, ScheduleTypingClear):
                self.typing_timers.schedule(effect.user_id, effect.delay_s)

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self.listener, hook)(*args)
        except Exception:
            logger.exception("listener %s failed", hook)

    # Reads

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.store.messages

    def default_tip_recipient(self) -> Tuple[Optional[str], str]:
        return self.commands.default_tip_recipient()

    # Commands

    async def send_message(
        self,
        content: str,
        media: Optional[Iterable[MediaItem | Dict[str, Any]]] = None,
        images: Optional[List[str]] = None,
    ) -> bool:
        return await self.commands.send_message(content, media=media, images=images)

    async def send_typing(self, is_typing: bool) -> bool:
        return await self.commands.send_typing(is_typing)

    def notify_input_activity(self) -> None:
        self.commands.notify_input_activity()

    def stop_typing(self) -> None:
        self.commands.stop_typing()

    async def send_reaction(self, action: str, message_id: str, emoji: str) -> bool:
        return await self.commands.send_reaction(action, message_id, emoji)

    async def report_message(self, message_id: str, reason: str) -> bool:
        return await self.commands.report_message(message_id, reason)

    async def delete_message(self, message_id: str) -> bool:
        return await self.commands.delete_message(message_id)

    async def ban_user(self, user_id: str, room_id: Optional[str] = None) -> bool:
        return await self.commands.ban_user(user_id, room_id)

    async def send_tip(
        self,
        amount: float,
        recipient_id: Optional[str] = None,
        recipient_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> TipResult:
        return await self.commands.send_tip(amount, recipient_id, recipient_name, message)
