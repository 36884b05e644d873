"""Command-line handler that streams message events of subscribed topics."""

from __future__ import annotations

import contextlib
import queue
import signal
import threading
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from razpravljalnica.client.cli_helpers import parse_int64, require_args
from razpravljalnica.client.shared import ClientSet

_POLL_INTERVAL = 0.05


@contextlib.contextmanager
def _stop_on_signals(stop: threading.Event) -> Iterator[None]:
    """Set ``stop`` on SIGINT or SIGTERM instead of interrupting the program."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: Any) -> None:
        stop.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def subscribe_topics(clients: ClientSet, args: Sequence[str]) -> None:
    """Subscribe ``<user_id> <topic_id>...`` and print events until interrupted."""
    require_args(args, 2, "subscribe <user_id> <topic_id>...")
    user_id = parse_int64(args[0])
    topic_ids = [parse_int64(arg) for arg in args[1:]]

    grant = clients.try_control_plane_request(
        lambda client: client.get_subscription_node(user_id=user_id)
    )

    conn = clients._connect(grant.node.address)
    try:
        stream = conn.subscribe_topic(
            topic_ids=topic_ids,
            user_id=user_id,
            from_message_id=0,  # from the beginning
            subscribe_token=grant.subscribe_token,
        )
        stop = threading.Event()
        with _stop_on_signals(stop):
            handle_subscription_stream(stream, stop)
    finally:
        conn.close()


def handle_subscription_stream(stream: Iterable[Any], stop_event: threading.Event) -> None:
    """Print each event of ``stream`` until ``stop_event`` is set.

    A stream that fails or ends is reported and its error raised;
    the end of the stream raises EOFError.
    """
    print("Listening for message events... Press Ctrl+C to stop.")
    events: queue.Queue[tuple[Any, BaseException | None]] = queue.Queue()

    def reader() -> None:
        try:
            for event in stream:
                events.put((event, None))
            events.put((None, EOFError("EOF")))
        except Exception as exc:
            events.put((None, exc))

    threading.Thread(target=reader, name="subscription-reader", daemon=True).start()

    while True:
        if stop_event.is_set():
            print("\nSubscription interrupted by user.")
            return
        try:
            event, error = events.get(timeout=_POLL_INTERVAL)
        except queue.Empty:
            continue
        if error is not None:
            print(f"Stream error: {error}")
            raise error
        message = event.message
        if message is None:
            continue
        print(
            f"Received message event: Op={event.op}, TopicID={message.topic_id}, "
            f"MessageID={message.id}, UserID={message.user_id}, Content={message.text}"
        )