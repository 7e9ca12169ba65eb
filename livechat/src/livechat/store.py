from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from . import reducer
from .codec import Envelope
from .models import Message, User
from .reducer import ChatState, Effect, ReducerOptions

logger = logging.getLogger(__name__)

Listener = Callable[[ChatState], None]


@dataclass
class StoreSubscription:
    callback: Listener

    def deliver(self, state: ChatState) -> None:
        self.callback(state)


class SessionStore:
    """Canonical chat state for one mounted widget.

    The only writers are the reducer entry points below; the UI and the
    command layer read through the properties.
    """

    def __init__(self, options: ReducerOptions | None = None, state: ChatState | None = None) -> None:
        self._options = options or ReducerOptions()
        self._state = state or ChatState()
        self._subscriptions: List[StoreSubscription] = []

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._state.messages

    @property
    def users(self) -> Tuple[User, ...]:
        return self._state.users

    @property
    def typing(self) -> Dict[str, bool]:
        return dict(self._state.typing)

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    def find_message(self, message_id: str) -> Optional[Message]:
        return self._state.find_message(message_id)

    def typing_users(self) -> List[str]:
        return [user_id for user_id, active in self._state.typing.items() if active]

    def subscribe(self, callback: Listener) -> StoreSubscription:
        subscription = StoreSubscription(callback=callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: StoreSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    def dispatch(self, frame: Envelope) -> Tuple[Effect, ...]:
        """Run ``frame`` through the reducer and return the effects to execute."""

        result = reducer.reduce(self._state, frame, self._options)
        self._commit(result.state)
        return result.effects

    def clear_typing(self, user_id: str) -> None:
        self._commit(reducer.clear_typing(self._state, user_id))

    def set_connected(self, connected: bool) -> None:
        self._commit(reducer.set_connected(self._state, connected))

    def reset(self) -> None:
        self._commit(ChatState())

    def _commit(self, state: ChatState) -> None:
        if state is self._state:
            return
        self._state = state
        for subscription in list(self._subscriptions):
            try:
                subscription.deliver(state)
            except Exception:
                logger.exception("store subscriber failed")
