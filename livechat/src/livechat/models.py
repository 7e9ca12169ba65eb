"""Chat data model and the ingestion-boundary normalizers.

Every message that enters the store, from HISTORY snapshots and from live
MESSAGE/TIP frames alike, goes through ``normalize_message`` so that id,
timestamp and tip handling are decided in exactly one place.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

MESSAGE_TYPES = frozenset({"text", "image", "video", "gif", "system", "tip"})
MEDIA_TYPES = frozenset({"image", "video", "gif"})
ROLES = frozenset({"user", "moderator", "admin"})

MediaResolver = Callable[[str], str]


def _identity_resolver(url: str) -> str:
    return url


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any, default: datetime | None = None) -> datetime:
    """Parse ISO-8601 strings, epoch milliseconds or datetimes into aware UTC."""

    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default or _now()
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return default or _now()
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return default or _now()


def generate_id(prefix: str = "msg") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Identity:
    """Who this widget connects as. Sent once, in the CONNECT payload."""

    api_key: str
    user_id: str
    username: str
    room_id: str = "default"
    role: str = "user"
    avatar: Optional[str] = None

    def connect_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "username": self.username,
            "roomId": self.room_id or "default",
            "role": self.role,
        }
        if self.avatar:
            payload["avatar"] = self.avatar
        return payload


@dataclass(frozen=True)
class MediaItem:
    url: str
    type: str = "image"
    thumbnail: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "type": self.type}
        for key, value in (
            ("thumbnail", self.thumbnail),
            ("width", self.width),
            ("height", self.height),
            ("duration", self.duration),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class Report:
    user_id: str
    reason: str
    reported_at: datetime

    def to_wire(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "reason": self.reason, "reportedAt": _isoformat(self.reported_at)}


@dataclass(frozen=True)
class Tip:
    amount: float
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "recipientId": self.recipient_id,
            "recipientName": self.recipient_name,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Reaction:
    """An emoji reaction. ``count`` is always derived from ``users``."""

    emoji: str
    users: Tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.users)

    def with_user(self, user_id: str) -> "Reaction":
        if user_id in self.users:
            return self
        return Reaction(emoji=self.emoji, users=self.users + (user_id,))

    def without_user(self, user_id: str) -> "Reaction":
        if user_id not in self.users:
            return self
        return Reaction(emoji=self.emoji, users=tuple(u for u in self.users if u != user_id))

    def to_wire(self) -> Dict[str, Any]:
        return {"emoji": self.emoji, "users": list(self.users), "count": self.count}


@dataclass(frozen=True)
class Message:
    id: str
    user_id: str
    username: str
    type: str
    content: str
    timestamp: datetime
    media: Tuple[MediaItem, ...] = ()
    reactions: Tuple[Reaction, ...] = ()
    reports: Tuple[Report, ...] = ()
    tip: Optional[Tip] = None
    is_deleted: bool = False
    deleted_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    avatar: Optional[str] = None
    color: Optional[str] = None
    reply_to: Optional[str] = None
    mentions: Tuple[str, ...] = ()
    is_edited: bool = False
    # Every wire identifier the server used for this message.
    aliases: Tuple[str, ...] = field(default=(), compare=False)

    def matches(self, message_id: str) -> bool:
        return message_id == self.id or message_id in self.aliases

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "username": self.username,
            "type": self.type,
            "content": self.content,
            "timestamp": _isoformat(self.timestamp),
            "media": [item.to_wire() for item in self.media],
            "reactions": [reaction.to_wire() for reaction in self.reactions],
            "reports": [report.to_wire() for report in self.reports],
            "isDeleted": self.is_deleted,
        }
        if self.tip is not None:
            data["tip"] = self.tip.to_wire()
        if self.deleted_by is not None:
            data["deletedBy"] = self.deleted_by
        if self.deleted_at is not None:
            data["deletedAt"] = _isoformat(self.deleted_at)
        if self.avatar:
            data["avatar"] = self.avatar
        if self.color:
            data["color"] = self.color
        if self.reply_to:
            data["replyTo"] = self.reply_to
        if self.mentions:
            data["mentions"] = list(self.mentions)
        if self.is_edited:
            data["isEdited"] = True
        return data


@dataclass(frozen=True)
class User:
    user_id: str
    username: str
    joined_at: datetime
    role: str = "user"
    avatar: Optional[str] = None
    color: Optional[str] = None
    is_online: Optional[bool] = None
    last_seen: Optional[datetime] = None

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "userId": self.user_id,
            "username": self.username,
            "role": self.role,
            "joinedAt": _isoformat(self.joined_at),
        }
        if self.avatar:
            data["avatar"] = self.avatar
        if self.color:
            data["color"] = self.color
        if self.is_online is not None:
            data["isOnline"] = self.is_online
        if self.last_seen is not None:
            data["lastSeen"] = _isoformat(self.last_seen)
        return data


def parse_tip(raw: Any) -> Optional[Tip]:
    """Return a ``Tip`` only for a non-null object with a numeric amount."""

    if not isinstance(raw, dict) or not _is_number(raw.get("amount")):
        return None
    return Tip(
        amount=raw["amount"],
        recipient_id=_str_or_none(raw.get("recipientId")),
        recipient_name=_str_or_none(raw.get("recipientName")),
        sender_id=_str_or_none(raw.get("senderId")),
        sender_name=_str_or_none(raw.get("senderName")),
        timestamp=_str_or_none(raw.get("timestamp")),
    )


def parse_reports(raw: Any) -> Tuple[Report, ...]:
    if not isinstance(raw, list):
        return ()
    reports: List[Report] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        user_id = _str_or_none(entry.get("userId"))
        if user_id is None:
            continue
        reports.append(
            Report(
                user_id=user_id,
                reason=str(entry.get("reason") or ""),
                reported_at=parse_timestamp(entry.get("reportedAt")),
            )
        )
    return tuple(reports)


def parse_reactions(raw: Any) -> Tuple[Reaction, ...]:
    if not isinstance(raw, list):
        return ()
    reactions: Dict[str, Reaction] = {}
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("emoji"), str):
            continue
        reaction = reactions.get(entry["emoji"], Reaction(emoji=entry["emoji"]))
        users = entry.get("users")
        for user_id in users if isinstance(users, list) else []:
            user_id = _str_or_none(user_id)
            if user_id is not None:
                reaction = reaction.with_user(user_id)
        reactions[reaction.emoji] = reaction
    return tuple(reactions.values())


def parse_media(raw: Dict[str, Any], resolve_media: MediaResolver = _identity_resolver) -> Tuple[MediaItem, ...]:
    items: List[MediaItem] = []
    media = raw.get("media")
    for entry in media if isinstance(media, list) else []:
        if not isinstance(entry, dict) or not isinstance(entry.get("url"), str):
            continue
        media_type = entry.get("type") if entry.get("type") in MEDIA_TYPES else "image"
        thumbnail = entry.get("thumbnail") if isinstance(entry.get("thumbnail"), str) else None
        items.append(
            MediaItem(
                url=resolve_media(entry["url"]),
                type=media_type,
                thumbnail=resolve_media(thumbnail) if thumbnail else None,
                width=entry.get("width") if _is_number(entry.get("width")) else None,
                height=entry.get("height") if _is_number(entry.get("height")) else None,
                duration=entry.get("duration") if _is_number(entry.get("duration")) else None,
            )
        )
    images = raw.get("images")
    for url in images if isinstance(images, list) else []:
        if isinstance(url, str) and url:
            items.append(MediaItem(url=resolve_media(url), type="image"))
    return tuple(items)


def canonical_message_id(raw: Dict[str, Any], fallback_prefix: str = "msg") -> Tuple[str, Tuple[str, ...]]:
    """Pick the canonical id (``messageId`` first) and collect every wire alias."""

    candidates = [_str_or_none(raw.get(key)) for key in ("messageId", "id", "_id")]
    aliases = tuple(dict.fromkeys(c for c in candidates if c is not None))
    if aliases:
        return aliases[0], aliases
    return generate_id(fallback_prefix), ()


def normalize_message(
    raw: Dict[str, Any],
    *,
    tip: Any = None,
    force_tip: bool = False,
    fallback_prefix: str = "msg",
    resolve_media: MediaResolver = _identity_resolver,
) -> Message:
    """Build a canonical ``Message`` from one wire object.

    ``tip`` overrides the tip object embedded in ``raw`` (TIP frames carry
    it beside the message). A valid tip always makes the message a tip;
    ``force_tip`` makes it one even without a valid tip object.
    """

    message_id, aliases = canonical_message_id(raw, fallback_prefix)
    parsed_tip = parse_tip(tip if tip is not None else raw.get("tip"))

    declared_type = raw.get("type")
    message_type = declared_type if declared_type in MESSAGE_TYPES else "text"
    if parsed_tip is not None or force_tip:
        message_type = "tip"

    timestamp_raw = raw.get("timestamp")
    if timestamp_raw is None:
        timestamp_raw = raw.get("createdAt")
    mentions = raw.get("mentions")

    return Message(
        id=message_id,
        aliases=aliases,
        user_id=_str_or_none(raw.get("userId")) or "",
        username=str(raw.get("username") or ""),
        type=message_type,
        content=str(raw.get("content") or ""),
        timestamp=parse_timestamp(timestamp_raw),
        media=parse_media(raw, resolve_media),
        reactions=parse_reactions(raw.get("reactions")),
        reports=parse_reports(raw.get("reports")),
        tip=parsed_tip,
        is_deleted=bool(raw.get("isDeleted", False)),
        deleted_by=_str_or_none(raw.get("deletedBy")),
        deleted_at=parse_timestamp(raw["deletedAt"]) if raw.get("deletedAt") is not None else None,
        avatar=_str_or_none(raw.get("avatar")),
        color=_str_or_none(raw.get("color")),
        reply_to=_str_or_none(raw.get("replyTo")),
        mentions=tuple(m for m in mentions if isinstance(m, str)) if isinstance(mentions, list) else (),
        is_edited=bool(raw.get("isEdited", False)),
    )


def normalize_user(raw: Dict[str, Any]) -> Optional[User]:
    user_id = _str_or_none(raw.get("userId")) or _str_or_none(raw.get("id"))
    if user_id is None:
        return None
    role = raw.get("role") if raw.get("role") in ROLES else "user"
    is_online = raw.get("isOnline")
    return User(
        user_id=user_id,
        username=str(raw.get("username") or ""),
        joined_at=parse_timestamp(raw.get("joinedAt")),
        role=role,
        avatar=_str_or_none(raw.get("avatar")),
        color=_str_or_none(raw.get("color")),
        is_online=is_online if isinstance(is_online, bool) else None,
        last_seen=parse_timestamp(raw["lastSeen"]) if raw.get("lastSeen") is not None else None,
    )
