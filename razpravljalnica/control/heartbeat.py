"""Removal of chain nodes that stop sending heartbeats."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone

from razpravljalnica.control.plane import ControlPlane, NodeEntry, RaftState
from razpravljalnica.records import CommandType, RaftCommand
from razpravljalnica.status import Code, StatusError

log = logging.getLogger(__name__)


class HeartbeatMonitor:
    """Watches heartbeats on the leader and cuts silent nodes out of the chain."""

    def __init__(self, plane: ControlPlane, interval: float = 5.0, timeout: float = 7.0) -> None:
        self.plane = plane
        self.interval = interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def identify_dead_nodes(self, now: float | None = None) -> tuple[list[str], list[str]]:
        """Ids of nodes silent for longer than the timeout, and a copy of the chain.

        A node that has never sent a heartbeat gets ``now`` as its last one,
        so it is not removed straight away.
        """
        if now is None:
            now = time.monotonic()
        dead: list[str] = []
        with self.plane.lock:
            for node_id in self.plane.chain:
                entry = self.plane.nodes.get(node_id)
                if entry is None:
                    continue
                if entry.last_heartbeat is None:
                    entry.last_heartbeat = now
                    continue
                if now - entry.last_heartbeat > self.timeout:
                    log.info(
                        "Node considered dead due to missed heartbeats node_id=%s address=%s",
                        entry.info.node_id,
                        entry.info.address,
                    )
                    dead.append(node_id)
            return dead, list(self.plane.chain)

    def remove_nodes(self, node_ids: list[str]) -> None:
        """Remove ``node_ids`` from the chain through the replicated log."""
        consensus = self.plane.consensus
        if consensus is None:
            raise StatusError(Code.FAILED_PRECONDITION, "No consensus log configured")
        command = RaftCommand(
            CommandType.UPDATE_CHAIN,
            ids_to_remove=list(node_ids),
            created_at=datetime.now(timezone.utc),
        )
        result = consensus.apply(command.encode(), self.plane.raft_timeout)
        if isinstance(result, BaseException):
            raise result

    def reconnect_chain(
        self, old_chain: list[str], removed_ids: list[str]
    ) -> list[tuple[NodeEntry | None, NodeEntry | None]]:
        """Reconnect the nodes next to removed ones; returns the pairs dispatched."""
        removed = set(removed_ids)
        pairs: list[tuple[NodeEntry | None, NodeEntry | None]] = []

        with self.plane.lock:
            last_alive: NodeEntry | None = None
            gap = False
            for node_id in old_chain:
                entry = self.plane.nodes.get(node_id)
                if node_id in removed or entry is None:
                    gap = True
                    continue
                if gap and last_alive is not None:
                    pairs.append((last_alive, entry))
                    gap = False
                last_alive = entry

            # The old TAIL died.
            if gap and last_alive is not None:
                pairs.append((last_alive, None))

            # The old HEAD died.
            if old_chain and self.plane.chain and old_chain[0] in removed:
                pairs.append((None, self.plane.head()))

            if not self.plane.chain:
                pairs.append((None, None))

        for pred, succ in pairs:
            threading.Thread(
                target=self.plane.reconnect_neighbors, args=(pred, succ), daemon=True
            ).start()
        return pairs

    def check(self) -> list[str]:
        """Run one round of monitoring; returns the ids of the removed nodes."""
        consensus = self.plane.consensus
        if consensus is None or consensus.state is not RaftState.LEADER:
            return []

        dead, old_chain = self.identify_dead_nodes()
        if not dead:
            return []

        try:
            self.remove_nodes(dead)
        except Exception as exc:  # the chain is still reconnected around the dead nodes
            log.error("Error applying heartbeat removals via Raft error=%s", exc)

        self.reconnect_chain(old_chain, dead)
        return dead

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check()
            except Exception:
                log.exception("Heartbeat check failed")

    def start(self) -> None:
        """Begin checking heartbeats in a background thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop checking and wait for the background thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None