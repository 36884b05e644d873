"""Command-line handlers for read operations, served by the TAIL."""

from __future__ import annotations

from collections.abc import Sequence

from razpravljalnica.client.cli_helpers import (
    CommandError,
    parse_id,
    parse_int32,
    require_args,
)
from razpravljalnica.client.shared import ClientSet


def list_topics(clients: ClientSet, args: Sequence[str]) -> None:
    """Print every topic as ``id name``."""
    try:
        topics = clients.retry_fetch(lambda: clients.reads.list_topics())
    except Exception as exc:
        raise CommandError(f"failed to list topics: {exc}") from exc

    if not topics:
        print("No topics yet.")
        return

    print("Topics:")
    for topic in topics:
        print(topic.id, topic.name)


def get_user(clients: ClientSet, args: Sequence[str]) -> None:
    """Print the user with the given id as ``id name``."""
    require_args(args, 1, "user <user_id>")
    user_id = parse_id(args[0], "user_id")

    try:
        user = clients.retry_fetch(lambda: clients.reads.get_user(user_id=user_id))
    except Exception as exc:
        raise CommandError(f"failed to get user: {exc}") from exc

    print(user.id, user.name)


def get_messages(clients: ClientSet, args: Sequence[str]) -> None:
    """Print messages of a topic as ``id user_id topic_id text``."""
    require_args(args, 3, "messages <topic_id> <from_id> <limit_id>")
    topic_id = parse_id(args[0], "topic_id")
    from_id = parse_id(args[1], "from_id")
    limit = parse_int32(args[2], "limit")

    try:
        messages = clients.retry_fetch(
            lambda: clients.reads.get_messages(
                topic_id=topic_id, from_message_id=from_id, limit=limit
            )
        )
    except Exception as exc:
        raise CommandError(f"failed to get messages: {exc}") from exc

    for message in messages:
        print(message.id, message.user_id, message.topic_id, message.text)