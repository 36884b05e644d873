"""Control plane statistics and their text rendering for the status view."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Protocol


@dataclass
class ChainNodeInfo:
    """A node in the chain together with its role."""

    node_id: str
    address: str
    role: str  # HEAD, MIDDLE, TAIL or SINGLE


@dataclass
class ControlStatsSnapshot:
    """A point-in-time view of the control plane."""

    node_id: str = ""
    grpc_addr: str = ""
    raft_addr: str = ""
    raft_state: str = ""
    raft_leader: str = ""
    chain_nodes: list[ChainNodeInfo] = field(default_factory=list)
    registered_cps: int = 0
    total_nodes: int = 0


class _StatsProvider(Protocol):
    def get_stats(self) -> ControlStatsSnapshot: ...


class Stats:
    """Start time of the control plane and the source of its statistics."""

    def __init__(self) -> None:
        self._started = time.monotonic()
        self.provider: _StatsProvider | None = None

    def set_provider(self, provider: _StatsProvider) -> None:
        """Set the object polled for snapshots."""
        self.provider = provider

    def uptime(self) -> timedelta:
        """Time since creation, truncated to whole seconds."""
        return timedelta(seconds=int(time.monotonic() - self._started))


_STATE_COLORS = {"Leader": "green", "Follower": "blue", "Candidate": "yellow"}

_ROLE_COLORS = {"HEAD": "green", "TAIL": "blue", "MIDDLE": "yellow", "SINGLE": "orange"}


def _format_duration(duration: timedelta) -> str:
    total = int(duration.total_seconds())
    if total == 0:
        return "0s"
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


def format_leader(leader: str) -> str:
    """Leader address, or a grey 'none' when there is no leader."""
    return leader if leader else "[gray]none[-]"


def state_color(state: str) -> str:
    """Display colour for a consensus state name."""
    return _STATE_COLORS.get(state, "gray")


def role_label(role: str) -> tuple[str, str]:
    """Colour and label for a chain role."""
    if role in _ROLE_COLORS:
        return _ROLE_COLORS[role], role
    return "darkgray", "UNKNOWN"


def chain_title(count: int) -> str:
    """Title of the chain pane for ``count`` nodes."""
    noun = "node" if count == 1 else "nodes"
    return f"Server chain ([yellow]{count}[-] {noun})"


def render_stats(snapshot: ControlStatsSnapshot, uptime: timedelta, thread_count: int) -> str:
    """Header text describing the node, its consensus state and uptime."""
    first = (
        f"[white]Control Plane:[-] [cyan]{snapshot.node_id:<10}[-] "
        f"[darkgray](gRPC: {snapshot.grpc_addr}, Raft: {snapshot.raft_addr})[-]"
    )
    second = (
        f"[white]Raft:[-] [{state_color(snapshot.raft_state)}]{snapshot.raft_state}[-] | "
        f"[white]Leader:[-] {format_leader(snapshot.raft_leader)} | "
        f"[white]Uptime:[-] [green]{_format_duration(uptime)}[-] | "
        f"[white]Threads:[-] [cyan]{thread_count}[-]"
    )
    return f"{first}\n{second}\n"


def render_initializing(uptime: timedelta) -> str:
    """Header text shown before a provider is set."""
    return (
        "[white]Control Plane:[-] [gray]INITIALIZING[-]\n"
        f"[white]Uptime:[-] [green]{_format_duration(uptime)}[-]\n"
        "[white]Chain:[-] [gray]waiting...[-]"
    )


def render_chain(nodes: list[ChainNodeInfo]) -> str:
    """One line showing the chain from HEAD to TAIL."""
    if not nodes:
        return "\n\n[yellow]No nodes in the chain[-]"
    parts = []
    for node in nodes:
        color, label = role_label(node.role)
        parts.append(f"[{color}]{label}[-] [darkgray]({node.address})[-]")
    return " ==> ".join(parts)


class StatsCollector:
    """Periodically renders the statistics and hands them to a display callback.

    The callback receives the header text and, once a provider is set,
    the chain title and chain text as well.
    """

    def __init__(
        self,
        stats: Stats,
        display: Callable[..., None],
        interval: float = 1.0,
    ) -> None:
        self.stats = stats
        self.display = display
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def update(self) -> None:
        """Render the current statistics once."""
        provider = self.stats.provider
        if provider is None:
            self.display(render_initializing(self.stats.uptime()))
            return
        snapshot = provider.get_stats()
        text = render_stats(snapshot, self.stats.uptime(), threading.active_count())
        nodes = snapshot.chain_nodes
        self.display(text, chain_title(len(nodes)), render_chain(nodes))

    def _run(self) -> None:
        self.update()
        while not self._stop.wait(self.interval):
            self.update()

    def start(self) -> None:
        """Begin updating in a background thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stats-collector", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop updating and wait for the background thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None