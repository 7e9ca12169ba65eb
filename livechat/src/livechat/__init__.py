"""Session synchronization core for the live chat and tipping widget."""

from .codec import Envelope, MessageType, decode, encode, envelope
from .config import ChatConfig, ReconnectPolicy, WalletConfig
from .connection import ConnectionManager, ConnectionState
from .errors import ChatError, DecodeError, UserDetailsError, WalletError, WalletUnauthorized
from .models import Identity, Message, Reaction, User, normalize_message, normalize_user
from .reducer import ChatState, reduce
from .session import ChatListener, ChatSession
from .store import SessionStore
from .user_details import UserDetailsClient
from .wallet import GatewayWalletApi, TipResult, WalletSession

__all__ = [
    "ChatConfig",
    "ChatError",
    "ChatListener",
    "ChatSession",
    "ChatState",
    "ConnectionManager",
    "ConnectionState",
    "DecodeError",
    "Envelope",
    "GatewayWalletApi",
    "Identity",
    "Message",
    "MessageType",
    "Reaction",
    "ReconnectPolicy",
    "SessionStore",
    "TipResult",
    "User",
    "UserDetailsClient",
    "UserDetailsError",
    "WalletConfig",
    "WalletError",
    "WalletSession",
    "WalletUnauthorized",
    "decode",
    "encode",
    "envelope",
    "normalize_message",
    "normalize_user",
    "reduce",
]
