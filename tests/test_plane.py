import time

import pytest

from razpravljalnica.control.plane import (
    ControlPlane,
    LocalConsensus,
    NodeEntry,
    RaftState,
)
from razpravljalnica.records import CommandType, NodeInfo, RaftCommand
from razpravljalnica.status import Code, StatusError


class FakeNodeClient:
    def __init__(self, address, fail=False):
        self.address = address
        self.fail = fail
        self.calls = []

    def set_successor(self, node):
        self.calls.append(("set_successor", node))
        if self.fail:
            raise StatusError(Code.UNAVAILABLE, "down")

    def set_predecessor(self, node):
        self.calls.append(("set_predecessor", node))
        if self.fail:
            raise StatusError(Code.UNAVAILABLE, "down")

    def add_subscription_request(self, request):
        self.calls.append(("add_subscription_request", request))
        if self.fail:
            raise StatusError(Code.UNAVAILABLE, "down")
        return "token"


class FakeFactory:
    def __init__(self):
        self.clients = {}

    def __call__(self, address):
        client = FakeNodeClient(address)
        self.clients[address] = client
        return client


def new_plane(factory=None):
    return ControlPlane(LocalConsensus("node0"), factory)


def entry(node_id, client=None):
    return NodeEntry(info=NodeInfo(node_id=node_id, address=f"addr-{node_id}"), client=client)


NODE_IDS = ["node1", "node2", "node3"]


def register_all(plane, ids=NODE_IDS):
    for node_id in ids:
        plane.register_node(NodeInfo(node_id=node_id, address=f"addr-{node_id}"))


# Chain bookkeeping


def test_append_nodes_to_chain():
    plane = new_plane()
    for node_id in NODE_IDS:
        plane.append_node(entry(node_id))
    assert plane.chain == NODE_IDS


def test_append_node_adds_to_nodes_map():
    plane = new_plane()
    for node_id in NODE_IDS:
        plane.append_node(entry(node_id))
    assert sorted(plane.nodes) == NODE_IDS
    assert plane.nodes["node2"].info.node_id == "node2"


def test_tail_empty_chain():
    assert new_plane().tail() is None


def test_tail_single_node():
    plane = new_plane()
    plane.append_node(entry("node1"))
    assert plane.tail().info.node_id == "node1"


def test_tail_multiple_nodes():
    plane = new_plane()
    for node_id in NODE_IDS:
        plane.append_node(entry(node_id))
    assert plane.tail().info.node_id == "node3"


def test_head_empty_chain():
    assert new_plane().head() is None


def test_head_single_node():
    plane = new_plane()
    plane.append_node(entry("node1"))
    assert plane.head().info.node_id == "node1"


def test_head_multiple_nodes():
    plane = new_plane()
    for node_id in NODE_IDS:
        plane.append_node(entry(node_id))
    assert plane.head().info.node_id == "node1"


def test_head_and_tail_same_for_single_node():
    plane = new_plane()
    plane.append_node(entry("node1"))
    assert plane.head().info.node_id == plane.tail().info.node_id == "node1"


def test_find_node_index_empty_chain():
    assert new_plane().find_node_index("node1") == -1


@pytest.mark.parametrize("node_id,expected", [("node1", 0), ("node2", 1), ("node3", 2)])
def test_find_node_index_existing(node_id, expected):
    plane = new_plane()
    for nid in NODE_IDS:
        plane.append_node(entry(nid))
    assert plane.find_node_index(node_id) == expected


def test_find_node_index_non_existent():
    plane = new_plane()
    for nid in NODE_IDS:
        plane.append_node(entry(nid))
    assert plane.find_node_index("nonexistent") == -1


def _filled_plane():
    plane = new_plane()
    for nid in NODE_IDS:
        plane.append_node(entry(nid))
    return plane


def test_remove_head():
    plane = _filled_plane()
    plane.remove_node(0)
    assert plane.chain == ["node2", "node3"]
    assert "node1" not in plane.nodes
    assert plane.head().info.node_id == "node2"


def test_remove_middle():
    plane = _filled_plane()
    plane.remove_node(1)
    assert plane.chain == ["node1", "node3"]
    assert "node2" not in plane.nodes


def test_remove_tail():
    plane = _filled_plane()
    plane.remove_node(2)
    assert plane.chain == ["node1", "node2"]
    assert "node3" not in plane.nodes
    assert plane.tail().info.node_id == "node2"


def test_remove_only_node():
    plane = new_plane()
    plane.append_node(entry("node1"))
    plane.remove_node(0)
    assert plane.chain == []
    assert plane.nodes == {}
    assert plane.head() is None
    assert plane.tail() is None


# Registration


def test_register_first_node():
    plane = new_plane()
    neighbors = plane.register_node(NodeInfo(node_id="node1", address="localhost:5001"))
    assert plane.chain == ["node1"]
    assert neighbors.predecessor is None
    assert neighbors.successor is None


def test_register_duplicate_node():
    plane = new_plane()
    info = NodeInfo(node_id="node1", address="localhost:5001")
    plane.register_node(info)
    with pytest.raises(StatusError) as excinfo:
        plane.register_node(info)
    assert excinfo.value.code is Code.ALREADY_EXISTS
    assert plane.chain == ["node1"]


def test_register_empty_id():
    plane = new_plane()
    with pytest.raises(StatusError) as excinfo:
        plane.register_node(NodeInfo(node_id="", address="localhost:5001"))
    assert excinfo.value.code is Code.INVALID_ARGUMENT
    assert plane.chain == []


def test_first_node_becomes_head_and_tail():
    plane = new_plane()
    assert plane.chain == []
    plane.register_node(NodeInfo(node_id="node1", address="localhost:5001"))
    assert len(plane.chain) == 1
    assert plane.head().info.node_id == "node1"
    assert plane.tail().info.node_id == "node1"


def test_multiple_nodes_form_chain():
    plane = new_plane()
    for node_id in NODE_IDS:
        plane.register_node(NodeInfo(node_id=node_id))
    assert len(plane.chain) == 3
    assert plane.head().info.node_id == "node1"
    assert plane.tail().info.node_id == "node3"
    assert all(node_id in plane.nodes for node_id in NODE_IDS)


def test_register_informs_old_tail():
    factory = FakeFactory()
    plane = new_plane(factory)
    plane.register_node(NodeInfo(node_id="node1", address="addr-node1"))
    new_info = NodeInfo(node_id="node2", address="addr-node2")
    neighbors = plane.register_node(new_info)
    assert neighbors.predecessor == NodeInfo(node_id="node1", address="addr-node1")
    assert neighbors.successor is None
    assert factory.clients["addr-node1"].calls == [("set_successor", new_info)]


def test_register_rejected_by_follower():
    consensus = LocalConsensus("node0")
    plane = ControlPlane(consensus)
    consensus.state = RaftState.FOLLOWER
    with pytest.raises(StatusError) as excinfo:
        plane.register_node(NodeInfo(node_id="node1"))
    assert excinfo.value.code is Code.FAILED_PRECONDITION


def test_register_without_consensus_rejected():
    plane = ControlPlane()
    with pytest.raises(StatusError) as excinfo:
        plane.register_node(NodeInfo(node_id="node1"))
    assert excinfo.value.code is Code.FAILED_PRECONDITION


# Unregistration


def test_unregister_non_existent_node():
    plane = new_plane()
    register_all(plane, ["node1", "node2"])
    with pytest.raises(StatusError) as excinfo:
        plane.unregister_node(NodeInfo(node_id="nonexistent"))
    assert excinfo.value.code is Code.NOT_FOUND
    assert len(plane.chain) == 2


def test_unregister_only_node():
    plane = new_plane()
    plane.register_node(NodeInfo(node_id="node1"))
    plane.unregister_node(NodeInfo(node_id="node1"))
    assert plane.chain == []
    assert plane.nodes == {}
    assert plane.head() is None
    assert plane.tail() is None


def test_unregister_head_node():
    plane = new_plane()
    register_all(plane)
    plane.unregister_node(NodeInfo(node_id="node1"))
    assert len(plane.chain) == 2
    assert plane.head().info.node_id == "node2"
    assert plane.tail().info.node_id == "node3"
    assert "node1" not in plane.nodes


def test_unregister_tail_node():
    plane = new_plane()
    register_all(plane)
    plane.unregister_node(NodeInfo(node_id="node3"))
    assert len(plane.chain) == 2
    assert plane.head().info.node_id == "node1"
    assert plane.tail().info.node_id == "node2"
    assert "node3" not in plane.nodes


def test_unregister_middle_node():
    plane = new_plane()
    register_all(plane)
    plane.unregister_node(NodeInfo(node_id="node2"))
    assert plane.chain == ["node1", "node3"]
    assert plane.head().info.node_id == "node1"
    assert plane.tail().info.node_id == "node3"
    assert "node2" not in plane.nodes


def test_unregister_nodes_sequentially():
    plane = new_plane()
    register_all(plane)
    plane.unregister_node(NodeInfo(node_id="node1"))
    assert len(plane.chain) == 2
    plane.unregister_node(NodeInfo(node_id="node2"))
    assert len(plane.chain) == 1
    plane.unregister_node(NodeInfo(node_id="node3"))
    assert plane.chain == []
    assert plane.nodes == {}


def test_unregister_middle_reconnects_neighbors():
    factory = FakeFactory()
    plane = new_plane(factory)
    register_all(plane)
    succ_client = factory.clients["addr-node3"]
    plane.unregister_node(NodeInfo(node_id="node2"))
    deadline = time.monotonic() + 5
    while not succ_client.calls and time.monotonic() < deadline:
        time.sleep(0.01)
    assert succ_client.calls == [
        ("set_predecessor", NodeInfo(node_id="node1", address="addr-node1"))
    ]


# Cluster state, heartbeats, subscriptions


def test_get_cluster_state_empty():
    plane = new_plane()
    state = plane.get_cluster_state()
    assert state.head is None
    assert state.tail is None


def test_get_cluster_state_head_and_tail():
    plane = new_plane()
    register_all(plane)
    head, tail = plane.get_cluster_state()
    assert head == NodeInfo(node_id="node1", address="addr-node1")
    assert tail == NodeInfo(node_id="node3", address="addr-node3")


def test_get_cluster_state_follower():
    consensus = LocalConsensus("node0")
    plane = ControlPlane(consensus)
    consensus.state = RaftState.CANDIDATE
    with pytest.raises(StatusError) as excinfo:
        plane.get_cluster_state()
    assert excinfo.value.code is Code.FAILED_PRECONDITION


def test_heartbeat_unknown_node():
    plane = new_plane()
    with pytest.raises(StatusError) as excinfo:
        plane.heartbeat(NodeInfo(node_id="ghost"))
    assert excinfo.value.code is Code.NOT_FOUND


def test_heartbeat_records_time():
    plane = new_plane()
    plane.register_node(NodeInfo(node_id="node1"))
    assert plane.nodes["node1"].last_heartbeat is None
    before = time.monotonic()
    plane.heartbeat(NodeInfo(node_id="node1"))
    assert plane.nodes["node1"].last_heartbeat >= before


def test_subscription_round_robin():
    factory = FakeFactory()
    plane = new_plane(factory)
    register_all(plane)
    picked = [plane.get_subscription_node({"user_id": 1}).node.node_id for _ in range(4)]
    assert picked == ["node2", "node3", "node1", "node2"]
    assert plane.last_control_index == 1


def test_subscription_returns_token_and_forwards_request():
    factory = FakeFactory()
    plane = new_plane(factory)
    plane.register_node(NodeInfo(node_id="node1", address="addr-node1"))
    grant = plane.get_subscription_node({"user_id": 7})
    assert grant.subscribe_token == "token"
    assert factory.clients["addr-node1"].calls == [("add_subscription_request", {"user_id": 7})]


def test_subscription_no_nodes():
    plane = new_plane()
    with pytest.raises(StatusError) as excinfo:
        plane.get_subscription_node({"user_id": 1})
    assert excinfo.value.code is Code.NOT_FOUND


def test_subscription_client_error_propagates():
    plane = ControlPlane(LocalConsensus("node0"), lambda address: FakeNodeClient(address, fail=True))
    plane.register_node(NodeInfo(node_id="node1", address="addr-node1"))
    with pytest.raises(StatusError) as excinfo:
        plane.get_subscription_node({"user_id": 1})
    assert excinfo.value.code is Code.UNAVAILABLE


# State machine


def test_apply_update_chain_removes_ids():
    plane = new_plane()
    register_all(plane)
    command = RaftCommand(CommandType.UPDATE_CHAIN, ids_to_remove=["node2", "unknown"])
    plane.consensus.apply(command.encode(), 1.0)
    assert plane.chain == ["node1", "node3"]
    assert sorted(plane.nodes) == ["node1", "node3"]


def test_snapshot_restore_round_trip():
    factory = FakeFactory()
    plane = new_plane(factory)
    register_all(plane)
    plane.get_subscription_node({"user_id": 1})
    data = plane.snapshot()

    other = ControlPlane(LocalConsensus("node1"), FakeFactory())
    other.restore(data)
    assert other.chain == NODE_IDS
    assert other.last_control_index == 1
    assert other.nodes["node2"].info == NodeInfo(node_id="node2", address="addr-node2")
    assert other.nodes["node2"].client.address == "addr-node2"
    assert other.nodes["node2"].last_heartbeat is None


def test_restore_malformed():
    plane = new_plane()
    with pytest.raises(ValueError):
        plane.restore(b"{broken")


def test_local_consensus_records_entries():
    plane = new_plane()
    register_all(plane, ["node1", "node2"])
    decoded = [RaftCommand.decode(data).op for data in plane.consensus.entries]
    assert decoded == [CommandType.REGISTER, CommandType.REGISTER]


def test_local_consensus_requires_binding():
    with pytest.raises(RuntimeError):
        LocalConsensus("node0").apply(b"{}", 1.0)


def test_local_consensus_follower_refuses():
    consensus = LocalConsensus("node0")
    ControlPlane(consensus)
    consensus.state = RaftState.FOLLOWER
    with pytest.raises(RuntimeError):
        consensus.apply(RaftCommand(CommandType.SUBSCRIBE).encode(), 1.0)


# Stats


def test_get_stats_roles():
    plane = new_plane()
    plane.set_node_info("node0", "127.0.0.1:50051", "127.0.0.1:7000")
    register_all(plane)
    stats = plane.get_stats()
    assert [n.role for n in stats.chain_nodes] == ["HEAD", "MIDDLE", "TAIL"]
    assert [n.address for n in stats.chain_nodes] == ["addr-node1", "addr-node2", "addr-node3"]
    assert stats.raft_state == "Leader"
    assert stats.raft_leader == "node0"
    assert stats.node_id == "node0"
    assert stats.grpc_addr == "127.0.0.1:50051"
    assert stats.raft_addr == "127.0.0.1:7000"
    assert stats.registered_cps == 3
    assert stats.total_nodes == 3


def test_get_stats_single_node():
    plane = new_plane()
    plane.register_node(NodeInfo(node_id="node1"))
    assert [n.role for n in plane.get_stats().chain_nodes] == ["SINGLE"]


def test_get_stats_without_consensus():
    stats = ControlPlane().get_stats()
    assert stats.raft_state == "Initializing"
    assert stats.raft_leader == ""
    assert stats.total_nodes == 0


# Reconnection


def test_reconnect_middle():
    pred = entry("node1", FakeNodeClient("addr-node1"))
    succ = entry("node3", FakeNodeClient("addr-node3"))
    new_plane().reconnect_neighbors(pred, succ)
    assert succ.client.calls == [("set_predecessor", pred.info)]
    assert pred.client.calls == [("set_successor", succ.info)]


def test_reconnect_tail_died():
    pred = entry("node1", FakeNodeClient("addr-node1"))
    new_plane().reconnect_neighbors(pred, None)
    assert pred.client.calls == [("set_successor", None)]


def test_reconnect_head_died():
    succ = entry("node2", FakeNodeClient("addr-node2"))
    new_plane().reconnect_neighbors(None, succ)
    assert succ.client.calls == [("set_predecessor", None)]


def test_reconnect_continues_after_failure():
    pred = entry("node1", FakeNodeClient("addr-node1"))
    succ = entry("node3", FakeNodeClient("addr-node3", fail=True))
    new_plane().reconnect_neighbors(pred, succ)
    assert succ.client.calls == [("set_predecessor", pred.info)]
    assert pred.client.calls == [("set_successor", succ.info)]