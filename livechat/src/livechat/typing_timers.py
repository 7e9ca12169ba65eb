"""Timer bookkeeping for typing indicators."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional


class TypingTimers:
    """One pending expiry per remote user.

    Scheduling a user again cancels the previous handle, so a user never has
    two clears in flight.
    """

    def __init__(self, on_expire: Callable[[str], None], *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._on_expire = on_expire
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, user_id: str, delay_s: float) -> None:
        self.cancel(user_id)
        self._handles[user_id] = self._event_loop().call_later(delay_s, self._fire, user_id)

    def cancel(self, user_id: str) -> None:
        handle = self._handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.cancel()

    def pending(self) -> list[str]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def _fire(self, user_id: str) -> None:
        self._handles.pop(user_id, None)
        self._on_expire(user_id)


class TypingDebouncer:
    """Turns keystrokes into at most one TYPING true/false pair per burst."""

    def __init__(
        self,
        send_typing: Callable[[bool], bool],
        *,
        idle_s: float = 3.0,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._send_typing = send_typing
        self._idle_s = idle_s
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def activity(self) -> None:
        if not self._active:
            self._active = True
            self._send_typing(True)
        if self._handle is not None:
            self._handle.cancel()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._handle = self._loop.call_later(self._idle_s, self.stop)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._active:
            self._active = False
            self._send_typing(False)

    def cancel(self) -> None:
        """Forget the burst without sending anything."""

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._active = False
