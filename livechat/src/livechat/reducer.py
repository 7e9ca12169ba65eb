"""Pure event reducer.

``reduce(state, envelope) -> ReduceResult(state, effects)``

The reducer never touches sockets, timers or callbacks. Anything that has to
happen outside the state (notify the UI, arm a typing timer) comes back as an
effect for the session to execute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .codec import Envelope, MessageType
from .models import (
    MediaResolver,
    Message,
    Reaction,
    User,
    normalize_message,
    normalize_user,
    parse_reports,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def _empty_typing() -> Mapping[str, bool]:
    return MappingProxyType({})


@dataclass(frozen=True)
class ChatState:
    messages: Tuple[Message, ...] = ()
    users: Tuple[User, ...] = ()
    typing: Mapping[str, bool] = field(default_factory=_empty_typing)
    is_connected: bool = False

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.matches(message_id):
                return message
        return None


@dataclass(frozen=True)
class NotifyMessage:
    message: Message


@dataclass(frozen=True)
class NotifyError:
    reason: str


@dataclass(frozen=True)
class ScheduleTypingClear:
    user_id: str
    delay_s: float


Effect = Union[NotifyMessage, NotifyError, ScheduleTypingClear]


@dataclass(frozen=True)
class ReduceResult:
    state: ChatState
    effects: Tuple[Effect, ...] = ()
    applied: bool = True


@dataclass(frozen=True)
class ReducerOptions:
    typing_expiry_s: float = 3.0
    typing_grace_s: float = 0.5
    resolve_media: Optional[MediaResolver] = None


def _media_kwargs(options: ReducerOptions) -> Dict[str, Any]:
    if options.resolve_media is None:
        return {}
    return {"resolve_media": options.resolve_media}


def _ignored(state: ChatState, reason: str, frame: Envelope) -> ReduceResult:
    logger.debug("ignoring %s frame: %s", frame.type, reason)
    return ReduceResult(state=state, applied=False)


def _payload(frame: Envelope) -> Dict[str, Any]:
    return frame.payload if isinstance(frame.payload, dict) else {}


def _replace_message(
    state: ChatState, message_id: str, update: Callable[[Message], Message]
) -> Optional[ChatState]:
    for index, message in enumerate(state.messages):
        if message.matches(message_id):
            messages = list(state.messages)
            messages[index] = update(message)
            return replace(state, messages=tuple(messages))
    return None


def _index_of(messages: Tuple[Message, ...] | List[Message], message: Message) -> Optional[int]:
    keys = message.aliases or (message.id,)
    for index, existing in enumerate(messages):
        if any(existing.matches(key) for key in keys):
            return index
    return None


def _merge_repeat(existing: Message, incoming: Message) -> Message:
    # A repeated id never revives a message that was already deleted.
    if existing.is_deleted and not incoming.is_deleted:
        incoming = replace(
            incoming, is_deleted=True, deleted_by=existing.deleted_by, deleted_at=existing.deleted_at
        )
    return incoming


def _append_message(state: ChatState, message: Message) -> ReduceResult:
    index = _index_of(state.messages, message)
    if index is None:
        return ReduceResult(
            state=replace(state, messages=state.messages + (message,)),
            effects=(NotifyMessage(message),),
        )
    logger.debug("message %s already present, updating in place", message.id)
    messages = list(state.messages)
    messages[index] = _merge_repeat(messages[index], message)
    return ReduceResult(state=replace(state, messages=tuple(messages)))


def _reduce_history(state: ChatState, frame: Envelope, options: ReducerOptions) -> ReduceResult:
    payload = _payload(frame)
    raw_messages = payload.get("messages")
    messages: List[Message] = []
    for raw in raw_messages if isinstance(raw_messages, list) else []:
        if not isinstance(raw, dict):
            continue
        message = normalize_message(raw, **_media_kwargs(options))
        index = _index_of(messages, message)
        if index is None:
            messages.append(message)
        else:
            messages[index] = message
    next_state = replace(state, messages=tuple(messages))
    raw_users = payload.get("users")
    if isinstance(raw_users, list):
        users: Dict[str, User] = {}
        for raw in raw_users:
            user = normalize_user(raw) if isinstance(raw, dict) else None
            if user is not None:
                users.pop(user.user_id, None)
                users[user.user_id] = user
        next_state = replace(next_state, users=tuple(users.values()))
    return ReduceResult(state=next_state)


def _reduce_message(state: ChatState, frame: Envelope, options: ReducerOptions) -> ReduceResult:
    payload = _payload(frame)
    raw = payload.get("message")
    if not isinstance(raw, dict):
        return _ignored(state, "missing message object", frame)
    tip = raw.get("tip") if raw.get("tip") is not None else payload.get("tip")
    message = normalize_message(raw, tip=tip, **_media_kwargs(options))
    return _append_message(state, message)


def _reduce_tip(state: ChatState, frame: Envelope, options: ReducerOptions) -> ReduceResult:
    payload = _payload(frame)
    raw = payload.get("message") if isinstance(payload.get("message"), dict) else payload
    tip = payload.get("tip") if payload.get("tip") is not None else raw.get("tip")
    if tip is None and raw is payload and "amount" in payload:
        tip = payload
    message = normalize_message(raw, tip=tip, force_tip=True, fallback_prefix="tip", **_media_kwargs(options))
    return _append_message(state, message)


def _reduce_user_joined(state: ChatState, frame: Envelope) -> ReduceResult:
    raw = _payload(frame).get("user")
    user = normalize_user(raw) if isinstance(raw, dict) else None
    if user is None:
        return _ignored(state, "missing user", frame)
    for index, existing in enumerate(state.users):
        if existing.user_id == user.user_id:
            users = list(state.users)
            users[index] = user
            return ReduceResult(state=replace(state, users=tuple(users)))
    return ReduceResult(state=replace(state, users=state.users + (user,)))


def _reduce_user_left(state: ChatState, frame: Envelope) -> ReduceResult:
    payload = _payload(frame)
    raw = payload.get("user")
    user_id = raw.get("userId") if isinstance(raw, dict) else payload.get("userId")
    if not isinstance(user_id, str):
        return _ignored(state, "missing userId", frame)
    users = tuple(user for user in state.users if user.user_id != user_id)
    if len(users) == len(state.users):
        return ReduceResult(state=state, applied=False)
    return ReduceResult(state=replace(state, users=users))


def _reduce_typing(state: ChatState, frame: Envelope, options: ReducerOptions) -> ReduceResult:
    payload = _payload(frame)
    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id:
        return _ignored(state, "missing userId", frame)
    if payload.get("isTyping"):
        typing = dict(state.typing)
        typing[user_id] = True
        return ReduceResult(
            state=replace(state, typing=MappingProxyType(typing)),
            effects=(ScheduleTypingClear(user_id, options.typing_expiry_s),),
        )
    # The entry lingers for the grace period instead of flickering off.
    return ReduceResult(state=state, effects=(ScheduleTypingClear(user_id, options.typing_grace_s),))


def _reduce_reported(state: ChatState, frame: Envelope) -> ReduceResult:
    payload = _payload(frame)
    message_id = payload.get("messageId")
    if not isinstance(message_id, str):
        return _ignored(state, "missing messageId", frame)
    reports = parse_reports(payload.get("reports"))
    next_state = _replace_message(state, message_id, lambda m: replace(m, reports=reports))
    if next_state is None:
        return _ignored(state, f"unknown message {message_id}", frame)
    return ReduceResult(state=next_state)


def _reduce_delete(state: ChatState, frame: Envelope) -> ReduceResult:
    payload = _payload(frame)
    message_id = payload.get("messageId")
    if not isinstance(message_id, str):
        return _ignored(state, "missing messageId", frame)
    deleted_by = payload.get("deletedBy") if isinstance(payload.get("deletedBy"), str) else None
    deleted_at: datetime = parse_timestamp(payload.get("deletedAt"))
    next_state = _replace_message(
        state,
        message_id,
        lambda m: replace(m, is_deleted=True, deleted_by=deleted_by, deleted_at=deleted_at),
    )
    if next_state is None:
        return _ignored(state, f"unknown message {message_id}", frame)
    return ReduceResult(state=next_state)


def apply_reaction(reactions: Tuple[Reaction, ...], emoji: str, user_id: str, action: str) -> Tuple[Reaction, ...]:
    """Add or remove ``user_id`` on ``emoji``.

    Emptied reactions stay in place with a zero count.
    """

    updated: List[Reaction] = []
    found = False
    for reaction in reactions:
        if reaction.emoji == emoji:
            found = True
            reaction = reaction.with_user(user_id) if action == "add" else reaction.without_user(user_id)
        updated.append(reaction)
    if not found and action == "add":
        updated.append(Reaction(emoji=emoji, users=(user_id,)))
    return tuple(updated)


def _reduce_reaction(state: ChatState, frame: Envelope) -> ReduceResult:
    payload = _payload(frame)
    message_id = payload.get("messageId")
    emoji = payload.get("emoji")
    user_id = payload.get("userId")
    action = payload.get("action")
    if not all(isinstance(value, str) and value for value in (message_id, emoji, user_id)):
        return _ignored(state, "messageId, emoji and userId required", frame)
    if action not in {"add", "remove"}:
        return _ignored(state, f"unsupported action {action!r}", frame)
    next_state = _replace_message(
        state,
        message_id,
        lambda m: replace(m, reactions=apply_reaction(m.reactions, emoji, user_id, action)),
    )
    if next_state is None:
        return _ignored(state, f"unknown message {message_id}", frame)
    return ReduceResult(state=next_state)


def _reduce_error(state: ChatState, frame: Envelope) -> ReduceResult:
    payload = _payload(frame)
    reason = payload.get("error") or payload.get("message") or "Unknown server error"
    return ReduceResult(state=state, effects=(NotifyError(str(reason)),), applied=False)


def reduce(state: ChatState, frame: Envelope, options: ReducerOptions | None = None) -> ReduceResult:
    """Apply one inbound envelope to ``state``. The input state is never modified."""

    options = options or ReducerOptions()
    frame_type = frame.type
    if frame_type == MessageType.HISTORY.value:
        return _reduce_history(state, frame, options)
    if frame_type == MessageType.MESSAGE.value:
        return _reduce_message(state, frame, options)
    if frame_type == MessageType.TIP.value:
        return _reduce_tip(state, frame, options)
    if frame_type == MessageType.USER_JOINED.value:
        return _reduce_user_joined(state, frame)
    if frame_type == MessageType.USER_LEFT.value:
        return _reduce_user_left(state, frame)
    if frame_type == MessageType.TYPING.value:
        return _reduce_typing(state, frame, options)
    if frame_type == MessageType.MESSAGE_REPORTED.value:
        return _reduce_reported(state, frame)
    if frame_type == MessageType.MESSAGE_DELETE.value:
        return _reduce_delete(state, frame)
    if frame_type == MessageType.REACTION.value:
        return _reduce_reaction(state, frame)
    if frame_type == MessageType.ERROR.value:
        return _reduce_error(state, frame)
    if frame_type == MessageType.PONG.value:
        return ReduceResult(state=state, applied=False)
    return _ignored(state, "unhandled frame type", frame)


def clear_typing(state: ChatState, user_id: str) -> ChatState:
    if user_id not in state.typing:
        return state
    typing = dict(state.typing)
    typing.pop(user_id, None)
    return replace(state, typing=MappingProxyType(typing))


def set_connected(state: ChatState, connected: bool) -> ChatState:
    if state.is_connected == connected:
        return state
    return replace(state, is_connected=connected)
