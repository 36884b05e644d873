"""Command-line handlers for write operations, served by the HEAD."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Callable

from razpravljalnica.client.cli_helpers import CommandError, parse_id, require_args
from razpravljalnica.client.shared import ClientSet, ControlPlaneUnreachable


def _write(clients: ClientSet, action: str, call: Callable[[], Any]) -> None:
    try:
        clients.retry_fetch(call)
    except ControlPlaneUnreachable:
        raise
    except Exception as exc:
        raise CommandError(f"failed to {action}: {exc}") from exc


def create_user(clients: ClientSet, args: Sequence[str]) -> None:
    """Create a user named by all arguments joined with spaces."""
    require_args(args, 1, "createuser <name>")
    name = " ".join(args)
    _write(clients, "create user", lambda: clients.writes.create_user(name=name))


def create_topic(clients: ClientSet, args: Sequence[str]) -> None:
    """Create a topic named by all arguments joined with spaces."""
    require_args(args, 1, "createtopic <name>")
    name = " ".join(args)
    _write(clients, "create topic", lambda: clients.writes.create_topic(name=name))


def post_message(clients: ClientSet, args: Sequence[str]) -> None:
    """Post ``<user_id> <topic_id> <content>``."""
    require_args(args, 3, "post <user_id> <topic_id> <content>")
    user_id = parse_id(args[0], "user_id")
    topic_id = parse_id(args[1], "topic_id")
    text = " ".join(args[2:])
    _write(
        clients,
        "post message",
        lambda: clients.writes.post_message(user_id=user_id, topic_id=topic_id, text=text),
    )


def update_message(clients: ClientSet, args: Sequence[str]) -> None:
    """Update ``<topic_id> <user_id> <msg_id> <text>``."""
    require_args(args, 4, "update <topic_id> <user_id> <msg_id> <text>")
    topic_id = parse_id(args[0], "topic_id")
    user_id = parse_id(args[1], "user_id")
    message_id = parse_id(args[2], "msg_id")
    text = " ".join(args[3:])
    _write(
        clients,
        "update message",
        lambda: clients.writes.update_message(
            topic_id=topic_id, user_id=user_id, message_id=message_id, text=text
        ),
    )


def delete_message(clients: ClientSet, args: Sequence[str]) -> None:
    """Delete ``<topic_id> <user_id> <msg_id>``."""
    require_args(args, 3, "delete <topic_id> <user_id> <msg_id>")
    topic_id = parse_id(args[0], "topic_id")
    user_id = parse_id(args[1], "user_id")
    message_id = parse_id(args[2], "msg_id")
    _write(
        clients,
        "delete message",
        lambda: clients.writes.delete_message(
            topic_id=topic_id, user_id=user_id, message_id=message_id
        ),
    )


def like_message(clients: ClientSet, args: Sequence[str]) -> None:
    """Like ``<topic_id> <msg_id> <user_id>``."""
    require_args(args, 3, "like <topic_id> <msg_id> <user_id>")
    topic_id = parse_id(args[0], "topic_id")
    message_id = parse_id(args[1], "msg_id")
    user_id = parse_id(args[2], "user_id")
    _write(
        clients,
        "like message",
        lambda: clients.writes.like_message(
            topic_id=topic_id, message_id=message_id, user_id=user_id
        ),
    )