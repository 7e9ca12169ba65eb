from __future__ import annotations


class ChatError(Exception):
    """Base class for failures raised by the chat session core."""


class DecodeError(ChatError):
    def __init__(self, reason: str, raw: str | bytes | None = None) -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(reason)


class WalletError(ChatError):
    def __init__(self, status: int, body: str = "", *, action: str = "request") -> None:
        self.status = status
        self.body = body
        self.action = action
        super().__init__(f"wallet {action} failed with HTTP {status}: {body[:200]}")


class WalletUnauthorized(WalletError):
    pass


class UserDetailsError(ChatError):
    def __init__(self, user_id: str, status: int, body: str = "") -> None:
        self.user_id = user_id
        self.status = status
        self.body = body
        super().__init__(f"user details for {user_id} failed with HTTP {status}: {body[:200]}")
