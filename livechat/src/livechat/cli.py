from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, TextIO

from . import codec
from .config import load_chat_config_from_env, load_wallet_config_from_env
from .errors import DecodeError
from .models import Identity, Message
from .reducer import NotifyError
from .session import ChatListener, ChatSession
from .store import SessionStore
from .wallet import GatewayWalletApi

logger = logging.getLogger(__name__)


def snapshot(store: SessionStore) -> Dict[str, Any]:
    return {
        "isConnected": store.is_connected,
        "messages": [message.to_wire() for message in store.messages],
        "users": [user.to_wire() for user in store.users],
        "typing": store.typing,
    }


def simulate(frames: Iterable[Any], output: TextIO) -> SessionStore:
    """Replay inbound frames through a fresh store and write the final snapshot."""

    store = SessionStore()
    errors = []
    for raw in frames:
        try:
            frame = codec.from_dict(raw)
        except DecodeError as exc:
            logger.warning("skipping frame: %s", exc.reason)
            continue
        for effect in store.dispatch(frame):
            if isinstance(effect, NotifyError):
                errors.append(effect.reason)
    result = snapshot(store)
    if errors:
        result["errors"] = errors
    output.write(json.dumps(result, sort_keys=True) + "\n")
    return store


def _load_frames(handle: TextIO) -> Iterable[Any]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[Any] = []
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                frames.append(json.loads(line))
            except json.JSONDecodeError as exc:
                logger.warning("skipping line %d: %s", number, exc)
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


class _PrintingListener(ChatListener):
    def __init__(self, output: TextIO) -> None:
        self._output = output

    def _emit(self, record: Dict[str, Any]) -> None:
        self._output.write(json.dumps(record, sort_keys=True) + "\n")
        self._output.flush()

    def on_connect(self) -> None:
        self._emit({"event": "connect"})

    def on_disconnect(self) -> None:
        self._emit({"event": "disconnect"})

    def on_message(self, message: Message) -> None:
        self._emit({"event": "message", "message": message.to_wire()})

    def on_error(self, reason: str) -> None:
        self._emit({"event": "error", "reason": reason})


async def _connect_forever(identity: Identity, output: TextIO) -> None:
    wallet_config = load_wallet_config_from_env()
    wallet = GatewayWalletApi(wallet_config) if wallet_config is not None else None
    session = ChatSession(
        identity,
        config=load_chat_config_from_env(),
        listener=_PrintingListener(output),
        wallet=wallet,
    )
    try:
        await session.start()
        await asyncio.Event().wait()
    finally:
        await session.close()
        if wallet is not None:
            await wallet.close()


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_connect(args: argparse.Namespace, output: TextIO) -> int:
    identity = Identity(
        api_key=args.api_key,
        user_id=args.user_id,
        username=args.username,
        room_id=args.room,
        role=args.role,
    )
    try:
        asyncio.run(_connect_forever(identity, output))
    except KeyboardInterrupt:
        pass
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Live chat session CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level for stderr output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Reduce inbound frames and print the final state")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    connect_parser = subparsers.add_parser("connect", help="Join a room and print inbound events as NDJSON")
    connect_parser.add_argument("--api-key", required=True, help="Chat service API key")
    connect_parser.add_argument("--user-id", required=True, help="User id to connect as")
    connect_parser.add_argument("--username", required=True, help="Display name")
    connect_parser.add_argument("--room", default="default", help="Room to join")
    connect_parser.add_argument("--role", default="user", choices=["user", "moderator", "admin"])

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_connect(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
