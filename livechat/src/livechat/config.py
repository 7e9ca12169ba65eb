from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_SERVER_URL = "wss://prod.chat-service.1houseglobalservices.com"
DEFAULT_WALLET_BASE_URL = "https://api-gateway.dev.1houseglobalservices.com"
NORMAL_CLOSURE = 1000


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delay schedule for reconnect attempts.

    The defaults retry forever every 3 seconds. ``max_attempts`` caps the
    number of consecutive attempts and ``backoff_factor`` > 1 turns the
    constant delay into an exponential one bounded by ``max_delay_s``.
    """

    delay_s: float = 3.0
    max_attempts: Optional[int] = None
    backoff_factor: float = 1.0
    max_delay_s: float = 60.0

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt must be positive")
        delay = self.delay_s * (self.backoff_factor ** (attempt - 1))
        if self.backoff_factor > 1.0:
            delay = min(delay, self.max_delay_s)
        return delay

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts


@dataclass(frozen=True)
class ChatConfig:
    server_url: str = DEFAULT_SERVER_URL
    heartbeat_interval_s: float = 30.0
    typing_expiry_s: float = 3.0
    typing_grace_s: float = 0.5
    default_room_id: str = "default"
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    # 0 keeps the drop-while-offline behaviour.
    offline_queue_size: int = 0


@dataclass(frozen=True)
class WalletConfig:
    base_url: str = DEFAULT_WALLET_BASE_URL
    api_key: Optional[str] = None


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw


def load_chat_config_from_env() -> ChatConfig:
    max_attempts = _parse_non_negative_int("LIVECHAT_RECONNECT_MAX_ATTEMPTS", 0)
    reconnect = ReconnectPolicy(
        delay_s=_parse_non_negative_float("LIVECHAT_RECONNECT_DELAY_S", 3.0),
        max_attempts=max_attempts or None,
        backoff_factor=max(1.0, _parse_non_negative_float("LIVECHAT_RECONNECT_BACKOFF", 1.0)),
        max_delay_s=_parse_non_negative_float("LIVECHAT_RECONNECT_MAX_DELAY_S", 60.0),
    )
    return ChatConfig(
        server_url=_parse_str("LIVECHAT_SERVER_URL", DEFAULT_SERVER_URL) or DEFAULT_SERVER_URL,
        heartbeat_interval_s=max(1.0, _parse_non_negative_float("LIVECHAT_HEARTBEAT_INTERVAL_S", 30.0)),
        typing_expiry_s=_parse_non_negative_float("LIVECHAT_TYPING_EXPIRY_S", 3.0),
        typing_grace_s=_parse_non_negative_float("LIVECHAT_TYPING_GRACE_S", 0.5),
        default_room_id=_parse_str("LIVECHAT_DEFAULT_ROOM", "default") or "default",
        reconnect=reconnect,
        offline_queue_size=_parse_non_negative_int("LIVECHAT_OFFLINE_QUEUE_SIZE", 0),
    )


def load_wallet_config_from_env() -> Optional[WalletConfig]:
    """Return a wallet config when ``LIVECHAT_WALLET_URL`` is set, else ``None``."""

    base_url = _parse_str("LIVECHAT_WALLET_URL", None)
    if base_url is None:
        return None
    return WalletConfig(base_url=base_url, api_key=_parse_str("LIVECHAT_WALLET_API_KEY", None))
