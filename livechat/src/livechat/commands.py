from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .codec import MessageType, envelope
from .connection import ConnectionManager
from .models import Identity, MediaItem
from .store import SessionStore
from .typing_timers import TypingDebouncer
from .wallet import TipResult, WalletSession

logger = logging.getLogger(__name__)

DEFAULT_RECIPIENT_NAME = "Streamer"
REACTION_ACTIONS = {"add": MessageType.REACTION_ADD, "remove": MessageType.REACTION_REMOVE}


class ChatCommands:
    """Typed outbound operations for one session."""

    def __init__(
        self,
        connection: ConnectionManager,
        store: SessionStore,
        identity: Callable[[], Identity],
        *,
        wallet: WalletSession | None = None,
        typing_idle_s: float = 3.0,
    ) -> None:
        self._connection = connection
        self._store = store
        self._identity = identity
        self.wallet = wallet
        self._debouncer = TypingDebouncer(self._send_typing_later, idle_s=typing_idle_s)
        self._background_tasks: Set[asyncio.Task] = set()

    async def _send(self, message_type: MessageType, payload: Optional[Dict[str, Any]] = None) -> bool:
        return await self._connection.send(envelope(message_type, payload))

    async def send_message(
        self,
        content: str,
        media: Optional[Iterable[MediaItem | Dict[str, Any]]] = None,
        images: Optional[List[str]] = None,
    ) -> bool:
        media_items = [item.to_wire() if isinstance(item, MediaItem) else dict(item) for item in media or ()]
        if not content.strip() and not media_items and not images:
            return False
        payload: Dict[str, Any] = {"content": content}
        if images:
            payload["images"] = list(images)
        if media_items:
            payload["media"] = media_items
        self._debouncer.cancel()
        return await self._send(MessageType.MESSAGE, payload)

    async def send_typing(self, is_typing: bool) -> bool:
        return await self._send(MessageType.TYPING, {"isTyping": bool(is_typing)})

    def _send_typing_later(self, is_typing: bool) -> bool:
        task = asyncio.get_running_loop().create_task(self.send_typing(is_typing))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return True

    def notify_input_activity(self) -> None:
        """Record a keystroke: TYPING true once per burst, false after the idle window."""

        self._debouncer.activity()

    def stop_typing(self) -> None:
        self._debouncer.stop()

    def cancel_typing(self) -> None:
        self._debouncer.cancel()

    async def send_reaction(self, action: str, message_id: str, emoji: str) -> bool:
        message_type = REACTION_ACTIONS.get(action)
        if message_type is None:
            raise ValueError(f"unsupported reaction action: {action!r}")
        return await self._send(message_type, {"messageId": message_id, "emoji": emoji})

    async def report_message(self, message_id: str, reason: str) -> bool:
        return await self._send(MessageType.MESSAGE_REPORT, {"messageId": message_id, "reason": reason})

    async def delete_message(self, message_id: str) -> bool:
        return await self._send(MessageType.MESSAGE_DELETE, {"messageId": message_id})

    async def ban_user(self, user_id: str, room_id: Optional[str] = None) -> bool:
        room = room_id or self._identity().room_id
        return await self._send(MessageType.USER_BAN, {"userIdToBan": user_id, "roomId": room})

    def default_tip_recipient(self) -> Tuple[Optional[str], str]:
        users = self._store.users
        if users:
            return users[0].user_id, users[0].username or DEFAULT_RECIPIENT_NAME
        return None, DEFAULT_RECIPIENT_NAME

    async def send_tip(
        self,
        amount: float,
        recipient_id: Optional[str] = None,
        recipient_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> TipResult:
        """Tip ``recipient_id``.

        With a wallet configured the gateway must confirm the payment before
        the TIP frame is broadcast; without one the frame is sent directly.
        The recipient defaults to the first user in the room.
        """

        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            return TipResult(ok=False, reason="amount must be a positive number")
        if recipient_id is None:
            recipient_id, default_name = self.default_tip_recipient()
            recipient_name = recipient_name or default_name
        if not recipient_id:
            logger.warning("cannot send tip without a recipient")
            return TipResult(ok=False, reason="no recipient")
        recipient_name = recipient_name or DEFAULT_RECIPIENT_NAME

        response = None
        if self.wallet is not None:
            confirmed = await self.wallet.send_tip(amount, recipient_id, recipient_name)
            if not confirmed.ok:
                logger.warning("tip of %s to %s not confirmed: %s", amount, recipient_id, confirmed.reason)
                return confirmed
            response = confirmed.response

        payload = {
            "amount": amount,
            "recipientId": recipient_id,
            "recipientName": recipient_name,
            "message": message or f"Tip of {amount} tokens",
        }
        if not await self._send(MessageType.TIP, payload):
            # The payment already went through; only the broadcast was lost.
            return TipResult(ok=self.wallet is not None, reason="chat offline", response=response)
        return TipResult(ok=True, response=response)
