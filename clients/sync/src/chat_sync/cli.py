"""Command line entry point: replay recorded events or dump remote history."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Iterable, TextIO

from .api import HttpMessageApi, InMemoryMessageApi
from .config import SyncConfig
from .engine import ReconciliationEngine
from .errors import ChatSyncError
from .models import Conversation, ConversationKind, Message, MessageType, message_to_payload
from .pagination import PaginationController
from .store import MessageStore
from .transport import CHECK_USER_ONLINE, LoopbackTransport

LOCAL_SEND = "local.send"
LOCAL_SWEEP = "local.sweep"


async def replay(
    frames: Iterable[dict],
    output: TextIO,
    *,
    user_id: str,
    conversation: Conversation,
    config: SyncConfig | None = None,
) -> list[Message]:
    """Feed ``{"event": ..., "payload": ...}`` frames through an engine and print its view.

    ``local.send`` frames stand for the local user sending a message and
    ``local.sweep`` runs the pending-message sweep once; every other frame is
    delivered as an inbound transport event.
    """

    transport = LoopbackTransport()
    transport.set_responder(CHECK_USER_ONLINE, lambda payload: False)
    api = InMemoryMessageApi(user_id)
    engine = ReconciliationEngine(conversation, user_id, transport, api, config=config)

    await engine.open()
    try:
        for frame in frames:
            if not isinstance(frame, dict):
                raise ValueError(f"frame must be an object: {frame!r}")
            event = frame.get("event")
            payload = frame.get("payload") or {}
            if event == LOCAL_SEND:
                message_type = MessageType.parse(payload.get("messageType")) or MessageType.TEXT
                await engine.send(payload.get("content"), message_type=message_type, media_url=payload.get("mediaUrl"))
            elif event == LOCAL_SWEEP:
                engine.sweep_pending()
            elif isinstance(event, str) and event:
                transport.deliver(event, payload)
            else:
                raise ValueError(f"unsupported frame: {frame!r}")
        messages = engine.messages()
    finally:
        engine.close()
        await engine.wait_closed()

    for message in messages:
        output.write(json.dumps(message_to_payload(message)) + "\n")
    return messages


async def history(
    api: HttpMessageApi,
    conversation_id: str,
    output: TextIO,
    *,
    pages: int = 1,
    page_size: int = 50,
) -> list[Message]:
    store = MessageStore()
    pager = PaginationController(api, store, conversation_id, page_size=page_size)
    for _ in range(max(pages, 1)):
        await pager.load_more()
        if not pager.has_more:
            break
    messages = list(store.ordered_view())
    for message in messages:
        output.write(json.dumps(message_to_payload(message)) + "\n")
    return messages


def _load_frames(handle: TextIO) -> list[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_replay(args: argparse.Namespace, output: TextIO) -> int:
    try:
        config = SyncConfig.from_env()
    except ValueError as exc:
        print(f"replay failed: {exc}", file=sys.stderr)
        return 1
    frames = _load_frames(args.file or sys.stdin)
    kind = ConversationKind(args.kind)
    conversation = Conversation(id=args.conversation, kind=kind, members=frozenset([args.user, *args.member]))
    asyncio.run(replay(frames, output, user_id=args.user, conversation=conversation, config=config))
    return 0


def _run_history(args: argparse.Namespace, output: TextIO) -> int:
    async def _fetch() -> None:
        async with HttpMessageApi(args.base_url, token=args.token) as api:
            await history(api, args.conversation, output, pages=args.pages, page_size=args.page_size)

    try:
        asyncio.run(_fetch())
    except ChatSyncError as exc:
        print(f"history failed: {exc}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-sync", description="Chat synchronization CLI")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    replay_parser = subparsers.add_parser("replay", help="Replay recorded transport events through an engine")
    replay_parser.add_argument("--user", required=True, help="Local user id")
    replay_parser.add_argument("--conversation", required=True, help="Conversation id")
    replay_parser.add_argument(
        "--kind",
        default=ConversationKind.DIRECT.value,
        choices=[kind.value for kind in ConversationKind],
        help="Conversation kind",
    )
    replay_parser.add_argument(
        "--member",
        action="append",
        default=[],
        help="Other member id; repeat for groups",
    )
    replay_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    history_parser = subparsers.add_parser("history", help="Print conversation history from the REST API")
    history_parser.add_argument("--base-url", required=True, help="API base URL")
    history_parser.add_argument("--conversation", required=True, help="Conversation id")
    history_parser.add_argument("--token", default=None, help="Bearer token")
    history_parser.add_argument("--pages", type=int, default=1, help="Pages to load")
    history_parser.add_argument("--page-size", type=int, default=50, help="Messages per page")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.command == "replay":
        return _run_replay(args, output or sys.stdout)
    return _run_history(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
