"""Command line front end for inspecting and driving the messaging sync engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence, TextIO

from .client import AuthExpiredError, MessagingClient, MessagingError
from .config import SyncConfig, configure_logging
from .engine import MessagingSync
from .hub import TOPIC_UNREAD, ChatEvent
from .models import Message, ThreadEntry, format_timestamp
from .scheduler import SyncScheduler
from .sending import STATE_CONFIRMED
from .tokens import FileTokenProvider, StaticTokenProvider, clear_session, save_session

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NO_TOKEN = 2
EXIT_AUTH_EXPIRED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-sync", description="Storefront messaging sync client")
    parser.add_argument("--base-url", help="messaging API base url (default: $CHAT_API_URL)")
    parser.add_argument("--token", help="bearer token; defaults to the stored session")
    parser.add_argument("--user", help="current user id; defaults to the stored session")
    parser.add_argument("--log-level", help="logging level (default: $CHAT_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    conversations = sub.add_parser("conversations", help="list conversations with previews and unread counts")
    conversations.add_argument("--query", default="", help="filter by seller, customer or product name")

    thread = sub.add_parser("thread", help="print one conversation thread")
    thread.add_argument("conversation_id")

    send = sub.add_parser("send", help="send a message to a conversation")
    send.add_argument("conversation_id")
    send.add_argument("text")

    watch = sub.add_parser("watch", help="poll and print change events")
    watch.add_argument("--conversation", help="conversation to keep open while watching")
    watch.add_argument("--ticks", type=int, default=0, help="stop after this many roster intervals (0 = forever)")

    login = sub.add_parser("login", help="store a session token")
    login.add_argument("session_token")

    sub.add_parser("logout", help="forget the stored session token")
    return parser


def _entry_line(entry: ThreadEntry, current_user_id: Optional[str]) -> str:
    who = "me" if entry.sender_id == current_user_id else entry.sender_id
    marker = "" if isinstance(entry, Message) else " (sending)"
    return f"[{format_timestamp(entry.created_at)}] {who}: {entry.content}{marker}"


def _event_line(engine: MessagingSync, event: ChatEvent) -> str:
    payload = {"t": event.topic, "conv_id": event.conversation_id}
    if event.scroll_to_end:
        payload["scroll_to_end"] = True
    if event.message:
        payload["message"] = event.message
    if event.topic == TOPIC_UNREAD:
        payload["total_unread"] = engine.total_unread
    return json.dumps(payload, sort_keys=True)


async def run_command(
    args: argparse.Namespace,
    client: MessagingClient,
    config: SyncConfig,
    out: TextIO,
    current_user_id: Optional[str] = None,
) -> int:
    if not await client.has_token():
        out.write("not logged in; run `chat-sync login TOKEN` first\n")
        return EXIT_NO_TOKEN
    engine = MessagingSync(client, current_user_id=current_user_id, config=config)

    if args.command == "conversations":
        try:
            await engine.refresh_roster()
        except AuthExpiredError:
            out.write("session expired; log in again\n")
            return EXIT_AUTH_EXPIRED
        except MessagingError as exc:
            out.write(f"failed to load conversations: {exc}\n")
            return EXIT_FAILED
        for conversation in engine.filtered(args.query):
            product = f" [{conversation.product_name}]" if conversation.product_name else ""
            preview = conversation.last_message.content if conversation.last_message else ""
            unread = engine.unread.counts.get(conversation.id, 0)
            out.write(
                f"{conversation.id}\t{conversation.seller_name} / {conversation.customer_name}{product}"
                f"\tunread={unread}\t{preview}\n"
            )
        out.write(f"total unread: {engine.total_unread}\n")
        return EXIT_OK

    if args.command in ("thread", "send"):
        await engine.select(args.conversation_id)
        if engine.auth_expired:
            out.write("session expired; log in again\n")
            return EXIT_AUTH_EXPIRED
        if engine.thread_error:
            out.write(f"failed to load conversation: {engine.thread_error}\n")
            return EXIT_FAILED
        if args.command == "thread":
            for entry in engine.thread.messages:
                out.write(_entry_line(entry, current_user_id) + "\n")
            return EXIT_OK
        if not current_user_id:
            out.write("--user is required to send\n")
            return EXIT_FAILED
        attempt = await engine.send(args.text)
        if attempt is None:
            out.write("nothing to send\n")
            return EXIT_FAILED
        if engine.auth_expired:
            out.write("session expired; log in again\n")
            return EXIT_AUTH_EXPIRED
        if attempt.state != STATE_CONFIRMED or attempt.message is None:
            out.write(f"send failed: {attempt.error}\n")
            return EXIT_FAILED
        out.write(f"sent {attempt.message.id}\n")
        return EXIT_OK

    if args.command == "watch":
        expired = asyncio.Event()
        engine.hub.subscribe_all("cli", lambda event: out.write(_event_line(engine, event) + "\n"))
        scheduler = SyncScheduler(engine, config, on_auth_expired=lambda _event: expired.set())
        if args.conversation:
            await engine.select(args.conversation)
        handle = scheduler.start("cli")
        try:
            if args.ticks > 0:
                try:
                    await asyncio.wait_for(expired.wait(), timeout=args.ticks * config.roster_poll_interval_s)
                except asyncio.TimeoutError:
                    pass
            else:
                await expired.wait()
        finally:
            await scheduler.stop(handle)
        return EXIT_AUTH_EXPIRED if expired.is_set() or engine.auth_expired else EXIT_OK

    raise ValueError(f"unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None, output: TextIO = sys.stdout) -> int:
    args = build_parser().parse_args(argv)
    config = SyncConfig.from_env()
    if args.base_url:
        config.base_url = args.base_url
    configure_logging(args.log_level or config.log_level)

    if args.command == "login":
        save_session(args.session_token, args.user, config.session_path)
        output.write("session stored\n")
        return EXIT_OK
    if args.command == "logout":
        cleared = clear_session(config.session_path)
        output.write("session cleared\n" if cleared else "no stored session\n")
        return EXIT_OK

    if args.token:
        tokens = StaticTokenProvider(args.token)
        user_id = args.user
    else:
        file_tokens = FileTokenProvider(config.session_path)
        tokens = file_tokens
        user_id = args.user or file_tokens.user_id()

    async def _run() -> int:
        async with MessagingClient(
            config.base_url,
            tokens,
            timeout_s=config.request_timeout_s,
            offline_token=config.offline_token,
        ) as client:
            return await run_command(args, client, config, output, user_id)

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return EXIT_OK
