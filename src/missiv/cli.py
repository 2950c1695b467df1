"""Summary: Command-line interface for Missiv.

Importance: Provides a local entry point for serving the API and driving desks by hand.
Alternatives: Use the HTTP API for every operation.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import replace

import uvicorn

from missiv.api import create_app
from missiv.app import build_services
from missiv.config import AppConfig
from missiv.errors import MissivError
from missiv.identity import format_desk_id
from missiv.models import BasketState


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="Missiv CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    register = subparsers.add_parser("register", help="Register an account")
    register.add_argument("username", type=str)
    register.add_argument("password", type=str)
    register.add_argument("--display-name", type=str, default="")
    register.add_argument("--email", type=str, default="")
    register.add_argument("--answer", action="append", default=[], dest="answers")

    create_desk = subparsers.add_parser("create-desk", help="Open another desk for an account")
    create_desk.add_argument("account_id", type=str)
    create_desk.add_argument("name", type=str)

    list_desks = subparsers.add_parser("list-desks", help="List an account's desks")
    list_desks.add_argument("account_id", type=str)

    send = subparsers.add_parser("send", help="Start a conversation")
    send.add_argument("from_desk", type=str)
    send.add_argument("to_desk", type=str)
    send.add_argument("subject", type=str)
    send.add_argument("body", type=str)

    reply = subparsers.add_parser("reply", help="Reply in a conversation")
    reply.add_argument("conversation_id", type=str)
    reply.add_argument("desk_id", type=str)
    reply.add_argument("body", type=str)
    reply.add_argument("--ack", action="store_true")

    conversations = subparsers.add_parser("conversations", help="List a desk's conversations")
    conversations.add_argument("desk_id", type=str)

    show = subparsers.add_parser("show", help="Show a conversation as a desk sees it")
    show.add_argument("conversation_id", type=str)
    show.add_argument("desk_id", type=str)

    basket = subparsers.add_parser("basket", help="List a desk's basket")
    basket.add_argument("desk_id", type=str)
    basket.add_argument(
        "basket", type=str.upper, choices=["IN", "PENDING", "SENT", "ARCHIVED"]
    )

    read = subparsers.add_parser("read", help="Mark a miv read")
    read.add_argument("miv_id", type=str)
    read.add_argument("desk_id", type=str)

    forget = subparsers.add_parser("forget", help="Forget a sent miv")
    forget.add_argument("miv_id", type=str)
    forget.add_argument("desk_id", type=str)

    archive = subparsers.add_parser("archive", help="Archive a conversation")
    archive.add_argument("conversation_id", type=str)

    unarchive = subparsers.add_parser("unarchive", help="Unarchive a conversation")
    unarchive.add_argument("conversation_id", type=str)

    notifications = subparsers.add_parser("notifications", help="List a desk's notifications")
    notifications.add_argument("desk_id", type=str)
    notifications.add_argument("--unread-only", action="store_true")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives local workflows without a separate client.
    Alternatives: Invoke services via an HTTP API.
    """

    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        uvicorn.run(
            create_app(config),
            host=args.host or config.api_host,
            port=args.port or config.api_port,
            log_level=config.log_level.lower(),
        )
        return 0

    services = build_services(_command_config(config))
    try:
        _dispatch(args, services)
    except MissivError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        return 1
    return 0


def _command_config(config: AppConfig) -> AppConfig:
    """Summary: Pick the storage backend for one-shot commands.

    Importance: Each command runs in a fresh process, so memory state would vanish on exit.
    Alternatives: Require MISSIV_STORAGE_BACKEND to be set before every command.

    An unset backend falls back to SQLite; an explicit memory backend is kept
    with a warning.
    """

    if config.storage_backend != "memory":
        return config
    if os.getenv("MISSIV_STORAGE_BACKEND"):
        logger.warning(
            "Memory backend selected; state is discarded when this command exits."
        )
        return config
    logger.info("Using SQLite store %s for this command.", config.db_path)
    return replace(config, storage_backend="sqlite")


def _dispatch(args: argparse.Namespace, services) -> None:
    if args.command == "register":
        account, desk = services.accounts.register(
            args.username, args.password, args.display_name, args.email, args.answers
        )
        print(f"Registered {account.username} ({account.id}) with desk {format_desk_id(desk.id)}.")
        return

    if args.command == "create-desk":
        desk = services.desks.create_desk(args.account_id, args.name)
        print(f"Created desk {format_desk_id(desk.id)} ({desk.name}).")
        return

    if args.command == "list-desks":
        for desk in services.desks.list_desks(args.account_id):
            print(f"{desk.id}: {desk.name} {format_desk_id(desk.id)}")
        return

    if args.command == "send":
        conversation, miv = services.conversations.create_conversation(
            args.from_desk, args.to_desk, args.subject, args.body
        )
        print(f"Created conversation {conversation.id} with miv {miv.id}.")
        return

    if args.command == "reply":
        miv = services.conversations.reply(
            args.conversation_id, args.desk_id, args.body, is_ack=args.ack
        )
        print(f"Replied with miv {miv.id} (#{miv.seq_no}).")
        return

    if args.command == "conversations":
        for summary in services.conversations.list_conversations(args.desk_id):
            conversation = summary.conversation
            flag = " [archived]" if conversation.is_archived else ""
            print(
                f"{conversation.id}: {conversation.subject} "
                f"({conversation.miv_count} mivs, {summary.unread_count} unread){flag}"
            )
        return

    if args.command == "show":
        view = services.conversations.get_conversation(args.conversation_id, args.desk_id)
        print(f"{view.conversation.subject}")
        for projected in view.mivs:
            miv = projected.miv
            state = projected.state.value or "-"
            print(f"#{miv.seq_no} {miv.from_desk} -> {miv.to_desk} [{state}] {miv.body}")
        return

    if args.command == "basket":
        view = services.conversations.list_basket(args.desk_id, BasketState(args.basket))
        for summary in view.conversations:
            print(f"{summary.conversation.id}: {summary.conversation.subject}")
        for projected in view.mivs:
            miv = projected.miv
            print(f"{miv.id}: {miv.subject} ({miv.from_desk} -> {miv.to_desk})")
        return

    if args.command == "read":
        miv = services.conversations.mark_read(args.miv_id, args.desk_id)
        print(f"Miv {miv.id} read at {miv.read_at}.")
        return

    if args.command == "forget":
        miv = services.conversations.forget(args.miv_id, args.desk_id)
        print(f"Forgot miv {miv.id}.")
        return

    if args.command == "archive":
        services.conversations.archive(args.conversation_id)
        print(f"Archived conversation {args.conversation_id}.")
        return

    if args.command == "unarchive":
        services.conversations.unarchive(args.conversation_id)
        print(f"Unarchived conversation {args.conversation_id}.")
        return

    if args.command == "notifications":
        for notification in services.notifications.list_notifications(
            args.desk_id, unread_only=args.unread_only
        ):
            marker = " " if notification.read else "*"
            print(f"{marker} {notification.id}: {notification.message}")
        return


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
