"""The control plane: chain membership kept consistent through a replicated log.

Every change to the chain goes through the consensus log and is applied by
:meth:`ControlPlane.apply`, the only place where the membership state changes.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple, Protocol

from razpravljalnica.control.stats import ChainNodeInfo, ControlStatsSnapshot
from razpravljalnica.records import CommandType, NodeInfo, RaftCommand, RaftSnapshot
from razpravljalnica.status import Code, StatusError

log = logging.getLogger(__name__)

_STATIC_CLUSTER_SIZE = 3


class RaftState(enum.Enum):
    """Role of a control plane replica in the consensus group."""

    FOLLOWER = "Follower"
    CANDIDATE = "Candidate"
    LEADER = "Leader"
    SHUTDOWN = "Shutdown"

    def __str__(self) -> str:
        return self.value


class _Consensus(Protocol):
    state: RaftState
    leader: str

    def bind(self, fsm: ControlPlane) -> None: ...

    def apply(self, data: bytes, timeout: float | None) -> Any: ...


@dataclass
class NodeEntry:
    """A registered chain node, the client used to reach it and its last heartbeat."""

    info: NodeInfo
    client: Any = None
    last_heartbeat: float | None = None  # time.monotonic() of the last heartbeat


@dataclass
class _RegisterResult:
    predecessor_id: str = ""
    successor_id: str = ""
    error: Exception | None = None


@dataclass
class _SubscriptionResult:
    node_id: str = ""
    error: Exception | None = None


class _Neighbors(NamedTuple):
    predecessor: NodeInfo | None
    successor: NodeInfo | None


class _ClusterState(NamedTuple):
    head: NodeInfo | None
    tail: NodeInfo | None


class _SubscriptionGrant(NamedTuple):
    node: NodeInfo
    subscribe_token: Any


class LocalConsensus:
    """A single-replica consensus log that applies every entry at once.

    It is always its own leader unless ``state`` is changed.
    """

    def __init__(self, node_id: str = "local") -> None:
        self.node_id = node_id
        self.state = RaftState.LEADER
        self.leader = node_id
        self.entries: list[bytes] = []
        self._fsm: ControlPlane | None = None
        self._lock = threading.Lock()

    def bind(self, fsm: ControlPlane) -> None:
        """Attach the state machine that log entries are applied to."""
        self._fsm = fsm

    def apply(self, data: bytes, timeout: float | None = None) -> Any:
        """Append ``data`` to the log and return the state machine's response."""
        if self._fsm is None:
            raise RuntimeError("no state machine bound to the log")
        if self.state is not RaftState.LEADER:
            raise RuntimeError("node is not the leader")
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            raise TimeoutError("timed out enqueuing operation")
        try:
            self.entries.append(data)
            return self._fsm.apply(data)
        finally:
            self._lock.release()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ControlPlane:
    """Keeps the ordered chain of nodes, HEAD first and TAIL last."""

    def __init__(
        self,
        consensus: _Consensus | None = None,
        client_factory: Callable[[str], Any] | None = None,
        raft_timeout: float = 5.0,
    ) -> None:
        self.lock = threading.RLock()
        self.nodes: dict[str, NodeEntry] = {}
        self.chain: list[str] = []
        self.last_control_index = 0
        self.raft_timeout = raft_timeout
        self.client_factory = client_factory
        self.node_id = ""
        self.grpc_addr = ""
        self.raft_addr = ""
        self.consensus: _Consensus | None = None
        if consensus is not None:
            self.set_consensus(consensus)

    def set_node_info(self, node_id: str, grpc_addr: str, raft_addr: str) -> None:
        """Record this replica's identity for the statistics view."""
        with self.lock:
            self.node_id = node_id
            self.grpc_addr = grpc_addr
            self.raft_addr = raft_addr

    def set_consensus(self, consensus: _Consensus) -> None:
        """Use ``consensus`` as the replicated log and bind this plane to it."""
        self.consensus = consensus
        consensus.bind(self)

    def get_stats(self) -> ControlStatsSnapshot:
        """A snapshot of the control plane for the statistics view."""
        with self.lock:
            if self.consensus is not None:
                raft_state = str(self.consensus.state)
                raft_leader = str(self.consensus.leader or "")
            else:
                raft_state = "Initializing"
                raft_leader = ""

            last = len(self.chain) - 1
            chain_nodes = []
            for position, node_id in enumerate(self.chain):
                entry = self.nodes.get(node_id)
                if entry is None:
                    continue
                if len(self.chain) == 1:
                    role = "SINGLE"
                elif position == 0:
                    role = "HEAD"
                elif position == last:
                    role = "TAIL"
                else:
                    role = "MIDDLE"
                chain_nodes.append(ChainNodeInfo(node_id, entry.info.address, role))

            return ControlStatsSnapshot(
                node_id=self.node_id,
                grpc_addr=self.grpc_addr,
                raft_addr=self.raft_addr,
                raft_state=raft_state,
                raft_leader=raft_leader,
                chain_nodes=chain_nodes,
                registered_cps=_STATIC_CLUSTER_SIZE,
                total_nodes=len(self.chain),
            )

    # Chain bookkeeping; callers hold the lock.

    def head(self) -> NodeEntry | None:
        """The first node of the chain, or None when it is empty."""
        return self.nodes.get(self.chain[0]) if self.chain else None

    def tail(self) -> NodeEntry | None:
        """The last node of the chain, or None when it is empty."""
        return self.nodes.get(self.chain[-1]) if self.chain else None

    def append_node(self, node: NodeEntry) -> None:
        """Add ``node`` at the end of the chain."""
        self.chain.append(node.info.node_id)
        self.nodes[node.info.node_id] = node

    def find_node_index(self, node_id: str) -> int:
        """Position of ``node_id`` in the chain, or -1 if absent."""
        try:
            return self.chain.index(node_id)
        except ValueError:
            return -1

    def remove_node(self, index: int) -> None:
        """Remove the node at ``index`` from the chain and the node map."""
        node_id = self.chain.pop(index)
        self.nodes.pop(node_id, None)

    # State machine.

    def apply(self, data: bytes) -> Any:
        """Apply one log entry; errors are returned, not raised."""
        try:
            command = RaftCommand.decode(data)
        except ValueError as exc:
            return exc

        with self.lock:
            if command.op is CommandType.REGISTER:
                return self._register(command.node or NodeInfo())
            if command.op is CommandType.UNREGISTER:
                return self._unregister(command.node or NodeInfo())
            if command.op is CommandType.UPDATE_CHAIN:
                return self._update_chain(command.ids_to_remove)
            if command.op is CommandType.SUBSCRIBE:
                return self._select_subscription_node()
        raise ValueError(f"unknown command op: {command.op}")

    def snapshot(self) -> bytes:
        """Serialised membership state for follower recovery."""
        with self.lock:
            state = RaftSnapshot(
                nodes={node_id: entry.info for node_id, entry in self.nodes.items()},
                chain=list(self.chain),
                last_control_index=self.last_control_index,
            )
        return state.encode()

    def restore(self, data: bytes) -> None:
        """Replace the membership state with one produced by :meth:`snapshot`."""
        state = RaftSnapshot.decode(data)
        with self.lock:
            self.chain = list(state.chain)
            self.last_control_index = state.last_control_index
            self.nodes = {}
            for node_id, info in state.nodes.items():
                try:
                    client = self._connect(info.address)
                except Exception:  # a missing connection is tolerated here
                    client = None
                self.nodes[node_id] = NodeEntry(info=info, client=client)

    def _connect(self, address: str) -> Any:
        return None if self.client_factory is None else self.client_factory(address)

    def _register(self, node_info: NodeInfo) -> _RegisterResult:
        if node_info.node_id in self.nodes:
            log.warning(
                "RegisterNode: Node already registered node_id=%s address=%s",
                node_info.node_id,
                node_info.address,
            )
            return _RegisterResult(
                error=StatusError(Code.ALREADY_EXISTS, "Node already registered")
            )

        if not node_info.node_id:
            log.warning("RegisterNode: Node ID cannot be empty address=%s", node_info.address)
            return _RegisterResult(
                error=StatusError(Code.INVALID_ARGUMENT, "Node ID cannot be empty")
            )

        try:
            client = self._connect(node_info.address)
        except Exception as exc:  # reported back to the caller
            return _RegisterResult(error=exc)

        entry = NodeEntry(info=node_info, client=client)
        self._log_node(logging.INFO, entry, "New node registered")

        old_tail = self.tail()
        self.append_node(entry)
        if old_tail is None:
            return _RegisterResult()
        return _RegisterResult(predecessor_id=old_tail.info.node_id)

    def _unregister(self, node_info: NodeInfo) -> _RegisterResult:
        index = self.find_node_index(node_info.node_id)
        if index == -1:
            log.error(
                "UnregisterNode: Node not found node_id=%s address=%s",
                node_info.node_id,
                node_info.address,
            )
            return _RegisterResult(error=StatusError(Code.NOT_FOUND, "Node not found"))

        self._log_node(logging.INFO, self.nodes[node_info.node_id], "Node unregistered successfully")

        predecessor_id = self.chain[index - 1] if index > 0 else ""
        successor_id = self.chain[index + 1] if index < len(self.chain) - 1 else ""
        self.remove_node(index)
        return _RegisterResult(predecessor_id, successor_id)

    def _update_chain(self, ids_to_remove: list[str]) -> None:
        doomed = set(ids_to_remove)
        for node_id in doomed.intersection(self.chain):
            self.nodes.pop(node_id, None)
        self.chain = [node_id for node_id in self.chain if node_id not in doomed]

    def _select_subscription_node(self) -> _SubscriptionResult:
        if not self.nodes or not self.chain:
            log.info("GetSubscriptionNode: No nodes available")
            return _SubscriptionResult(error=StatusError(Code.NOT_FOUND, "No nodes available"))
        # Round-robin over the chain.
        self.last_control_index = (self.last_control_index + 1) % len(self.chain)
        return _SubscriptionResult(node_id=self.chain[self.last_control_index])

    # Service methods.

    def ensure_leader(self) -> None:
        """Raise FAILED_PRECONDITION unless this replica leads the group."""
        if self.consensus is None or self.consensus.state is not RaftState.LEADER:
            raise StatusError(
                Code.FAILED_PRECONDITION, "Only the leader can process this request"
            )

    def _apply_command(self, command: RaftCommand) -> Any:
        if self.consensus is None:
            raise StatusError(Code.FAILED_PRECONDITION, "No consensus log configured")
        result = self.consensus.apply(command.encode(), self.raft_timeout)
        if isinstance(result, BaseException):
            raise result
        return result

    def get_cluster_state(self) -> _ClusterState:
        """HEAD and TAIL of the chain, both None when no node is registered."""
        self.ensure_leader()
        with self.lock:
            head = self.head()
            tail = self.tail()
            if head is None or tail is None:
                log.info("GetClusterState: No nodes registered")
                return _ClusterState(None, None)
            log.info("GetClusterState head=%s tail=%s", head.info, tail.info)
            return _ClusterState(head.info, tail.info)

    def register_node(self, node_info: NodeInfo) -> _Neighbors:
        """Append a node to the chain as the new TAIL and return its neighbours."""
        self.ensure_leader()
        result: _RegisterResult = self._apply_command(
            RaftCommand(CommandType.REGISTER, node=node_info, created_at=_now())
        )
        if result.error is not None:
            raise result.error

        with self.lock:
            predecessor = self.nodes.get(result.predecessor_id)
        if predecessor is None:
            return _Neighbors(None, None)

        # The old TAIL now forwards to the new node.
        self._call(
            predecessor,
            lambda client: client.set_successor(node_info),
            "Error informing old TAIL about its new successor",
        )
        return _Neighbors(predecessor.info, None)

    def unregister_node(self, node_info: NodeInfo) -> None:
        """Remove a node from the chain and reconnect its neighbours."""
        self.ensure_leader()
        result: _RegisterResult = self._apply_command(
            RaftCommand(CommandType.UNREGISTER, node=node_info, created_at=_now())
        )
        if result.error is not None:
            raise result.error

        pred: NodeEntry | None = None
        succ: NodeEntry | None = None
        valid = True
        with self.lock:
            if result.predecessor_id:
                pred = self.nodes.get(result.predecessor_id)
                valid = valid and pred is not None
            if result.successor_id:
                succ = self.nodes.get(result.successor_id)
                valid = valid and succ is not None

        if valid:
            threading.Thread(
                target=self.reconnect_neighbors, args=(pred, succ), daemon=True
            ).start()

    def get_subscription_node(self, request: Any) -> _SubscriptionGrant:
        """Pick a node round-robin and register the subscription request with it."""
        self.ensure_leader()
        result: _SubscriptionResult = self._apply_command(
            RaftCommand(CommandType.SUBSCRIBE, created_at=_now())
        )
        if result.error is not None:
            raise result.error

        with self.lock:
            selected = self.nodes.get(result.node_id)
        if selected is None:
            raise StatusError(Code.NOT_FOUND, "Selected subscription node not found")
        if selected.client is None:
            raise StatusError(Code.UNAVAILABLE, "No connection to the selected node")

        try:
            token = selected.client.add_subscription_request(request)
        except Exception as exc:
            self._log_node_error(selected, exc, "Failed to add subscription request to node")
            raise

        self._log_node(logging.INFO, selected, "GetSubscriptionNode: Subscription node selected")
        return _SubscriptionGrant(selected.info, token)

    def heartbeat(self, node_info: NodeInfo) -> None:
        """Record that a registered node is alive."""
        self.ensure_leader()
        with self.lock:
            entry = self.nodes.get(node_info.node_id)
            if entry is None:
                log.warning(
                    "Heartbeat: Node not registered node_id=%s address=%s",
                    node_info.node_id,
                    node_info.address,
                )
                raise StatusError(Code.NOT_FOUND, "node not registered")
            self._log_node(logging.DEBUG, entry, "Heartbeat received")
            entry.last_heartbeat = time.monotonic()

    def reconnect_neighbors(self, pred: NodeEntry | None, succ: NodeEntry | None) -> None:
        """Tell the nodes around a removed node about their new neighbours."""
        if pred is not None and succ is not None:
            # The successor learns its predecessor first so syncing starts correctly.
            self._call(
                succ,
                lambda client: client.set_predecessor(pred.info),
                "Error updating successor",
            )
            self._call(
                pred,
                lambda client: client.set_successor(succ.info),
                "Error updating predecessor",
            )
            log.info(
                "Reconnected predecessor and successor around dead node "
                "predecessor=%s successor=%s",
                pred.info.node_id,
                succ.info.node_id,
            )
        elif pred is not None:
            self._call(
                pred,
                lambda client: client.set_successor(None),
                "Error updating predecessor to become TAIL",
            )
            log.info("Updated predecessor to become new TAIL predecessor=%s", pred.info.node_id)
        elif succ is not None:
            self._call(
                succ,
                lambda client: client.set_predecessor(None),
                "Error updating successor to become HEAD",
            )
            log.info("Updated successor to become new HEAD successor=%s", succ.info.node_id)
        else:
            log.info("All nodes are down, cluster is now empty")

    def _call(self, entry: NodeEntry, action: Callable[[Any], Any], failure: str) -> None:
        if entry.client is None:
            return
        try:
            action(entry.client)
        except Exception as exc:  # a node that cannot be reached is only logged
            self._log_node_error(entry, exc, failure)

    @staticmethod
    def _log_node(level: int, entry: NodeEntry, msg: str) -> None:
        log.log(level, "%s node_id=%s address=%s", msg, entry.info.node_id, entry.info.address)

    @staticmethod
    def _log_node_error(entry: NodeEntry, err: BaseException, msg: str) -> None:
        log.error(
            "%s error=%s node_id=%s address=%s",
            msg,
            err,
            entry.info.node_id,
            entry.info.address,
        )