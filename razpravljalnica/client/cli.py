"""The interactive command-line client and its command router."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TextIO

from razpravljalnica.client.cli_helpers import CommandError, UsageError
from razpravljalnica.client.cli_reads import get_messages, get_user, list_topics
from razpravljalnica.client.cli_subscriptions import _stop_on_signals, subscribe_topics
from razpravljalnica.client.cli_writes import (
    create_topic,
    create_user,
    delete_message,
    like_message,
    post_message,
    update_message,
)
from razpravljalnica.client.shared import ClientSet, ControlPlaneUnreachable, new_client_set

HELP = """Available commands:
  help, h                                     - Show this help message
  exit, quit, q                               - Exit the client

Write operations:
  createuser <name>                           - Create a new user
  createtopic <name>                          - Create a new topic
  post <user_id> <topic_id> <content>         - Post a message to a topic
  update <topic_id> <user_id> <msg_id> <text> - Update a message
  delete <topic_id> <user_id> <msg_id>        - Delete a message
  like <topic_id> <msg_id> <user_id>          - Like a message

Read operations:
  topics                                      - List all topics
  user <user_id>                              - Get user information
  messages <topic_id> <from_id> <limit>       - Get messages from a topic

Subscription operations:
  subscribe <user_id> <topic_id>...           - Subscribe to topics (stream)
"""

_MAX_CONCURRENT = 100
_POLL_INTERVAL = 0.05
_SLOW_LOOP_PAUSE = 0.1


class ExitRequested(Exception):
    """The user asked the client to exit."""


def print_help() -> None:
    """Print the list of available commands."""
    print(HELP, end="")


def _help(clients: ClientSet, args: Sequence[str]) -> None:
    print_help()


def _exit(clients: ClientSet, args: Sequence[str]) -> None:
    raise ExitRequested("exit")


def route(clients: ClientSet, command: str, args: Sequence[str]) -> None:
    """Run ``command`` with ``args``; raises ExitRequested for exit commands."""
    handler = _COMMANDS.get(command)
    if handler is None:
        raise CommandError(f"unknown command: {command}\n")
    handler(clients, args)


class _Counters:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent = 0
        self.errors = 0

    def add_sent(self) -> None:
        with self._lock:
            self.sent += 1

    def add_error(self) -> None:
        with self._lock:
            self.errors += 1

    def read(self) -> tuple[int, int]:
        with self._lock:
            return self.sent, self.errors


def _report(counters: _Counters, stop: threading.Event) -> None:
    last = 0
    while not stop.wait(1.0):
        sent, errors = counters.read()
        print(f"\rSent: {sent} | Errors: {errors} | Rate: {sent - last}/s", end="", flush=True)
        last = sent


def loop_command(clients: ClientSet, args: Sequence[str]) -> None:
    """Repeat a command concurrently, at most 100 at a time, until interrupted."""
    if not args:
        raise UsageError("usage: loop <command> [args...]")
    inner, inner_args = args[0], list(args[1:])

    stop = threading.Event()
    slots = threading.BoundedSemaphore(_MAX_CONCURRENT)
    counters = _Counters()

    def work() -> None:
        try:
            route(clients, inner, inner_args)
        except ExitRequested:
            pass
        except Exception:
            counters.add_error()
        finally:
            slots.release()

    print("Looping. Press Ctrl+C to stop...")
    reporter = threading.Thread(target=_report, args=(counters, stop), daemon=True)
    with _stop_on_signals(stop), ThreadPoolExecutor(max_workers=_MAX_CONCURRENT) as pool:
        reporter.start()
        while not stop.is_set():
            if not slots.acquire(timeout=_POLL_INTERVAL):
                continue
            pool.submit(work)
            counters.add_sent()
        sent, errors = counters.read()
        print(f"\nLoop interrupted. Sent {sent} requests, {errors} errors.")
    reporter.join()


def loop_slow_command(clients: ClientSet, args: Sequence[str]) -> None:
    """Repeat a command one at a time, pausing between runs, until interrupted."""
    if not args:
        raise UsageError("usage: loop <command> [args...]")
    inner, inner_args = args[0], list(args[1:])

    stop = threading.Event()
    with _stop_on_signals(stop):
        print("Looping. Press Ctrl+C to stop...")
        while True:
            try:
                route(clients, inner, inner_args)
            except (ExitRequested, ControlPlaneUnreachable):
                raise
            except Exception as exc:
                print(f"Error: {exc}")

            time.sleep(_SLOW_LOOP_PAUSE)

            if stop.is_set():
                print("\nLoop interrupted by user.")
                return


_COMMANDS: dict[str, Callable[[ClientSet, Sequence[str]], Any]] = {
    "help": _help,
    "h": _help,
    "exit": _exit,
    "quit": _exit,
    "q": _exit,
    "createuser": create_user,
    "createtopic": create_topic,
    "post": post_message,
    "update": update_message,
    "delete": delete_message,
    "like": like_message,
    "topics": list_topics,
    "messages": get_messages,
    "user": get_user,
    "subscribe": subscribe_topics,
    "loop": loop_command,
    "loopslow": loop_slow_command,
}


def start_cli_client(clients: ClientSet, stdin: TextIO | None = None) -> None:
    """Read commands line by line and run them until exit or end of input."""
    if stdin is None:
        stdin = sys.stdin
    while True:
        print("> ", end="", flush=True)
        line = stdin.readline()
        if not line:
            break
        fields = line.split()
        if not fields:
            continue
        command, args = fields[0], fields[1:]
        try:
            route(clients, command, args)
        except ExitRequested:
            break
        except ControlPlaneUnreachable:
            raise
        except Exception as exc:
            print(f"Error: {exc}")


def run_client(
    control_plane_addrs: Sequence[str],
    client_type: str,
    connect: Callable[[str], Any],
) -> None:
    """Connect to the cluster and run the chosen client interface."""
    try:
        clients = new_client_set(list(control_plane_addrs), connect)
    except ControlPlaneUnreachable:
        raise
    except Exception as exc:
        print("Failed to create client:", exc)
        return

    with clients:
        print("Successfully connected to the server.")
        if client_type == "cli":
            start_cli_client(clients)
        else:
            print("Unknown client type:", client_type)