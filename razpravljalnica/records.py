"""Records exchanged between clients, chain nodes and the control plane."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class NodeInfo:
    """Identity and address of a chain node."""

    node_id: str = ""
    address: str = ""


@dataclass
class User:
    """A registered user of the message board."""

    id: int
    name: str


@dataclass
class Topic:
    """A discussion topic."""

    id: int
    name: str


@dataclass
class Message:
    """A message posted to a topic."""

    id: int
    topic_id: int
    user_id: int
    text: str
    created_at: datetime | None = None
    likes: int = 0


class OpType(enum.Enum):
    """Kind of change a message event reports."""

    POST = 0
    UPDATE = 1
    DELETE = 2
    LIKE = 3

    def __str__(self) -> str:
        return f"OP_{self.name}"


@dataclass
class MessageEvent:
    """A change to a message delivered through a subscription."""

    op: OpType
    message: Message | None = None
    sequence_number: int = 0


class CommandType(enum.Enum):
    """Operations replicated through the control plane's consensus log."""

    REGISTER = 0
    UNREGISTER = 1
    UPDATE_CHAIN = 2
    SUBSCRIBE = 3


def _node_to_dict(node: NodeInfo | None) -> dict[str, str] | None:
    if node is None:
        return None
    return {"node_id": node.node_id, "address": node.address}


def _node_from_dict(payload: Any) -> NodeInfo | None:
    if payload is None:
        return None
    node_id = payload["node_id"]
    address = payload["address"]
    if not isinstance(node_id, str) or not isinstance(address, str):
        raise TypeError("node fields must be strings")
    return NodeInfo(node_id=node_id, address=address)


def _time_to_json(moment: datetime | None) -> str | None:
    return None if moment is None else moment.isoformat()


def _time_from_json(text: Any) -> datetime | None:
    if text is None:
        return None
    if not isinstance(text, str):
        raise TypeError("timestamp must be a string")
    return datetime.fromisoformat(text)


def _string_list(items: Any) -> list[str]:
    if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
        raise TypeError("expected a list of strings")
    return list(items)


@dataclass
class RaftCommand:
    """A command appended to the replicated log."""

    op: CommandType
    node: NodeInfo | None = None
    ids_to_remove: list[str] = field(default_factory=list)
    created_at: datetime | None = None

    def encode(self) -> bytes:
        """Serialise the command to bytes."""
        payload = {
            "op": self.op.name,
            "node": _node_to_dict(self.node),
            "ids_to_remove": list(self.ids_to_remove),
            "created_at": _time_to_json(self.created_at),
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> RaftCommand:
        """Parse bytes produced by :meth:`encode`; raise ValueError if malformed."""
        try:
            payload = json.loads(data)
            return cls(
                op=CommandType[payload["op"]],
                node=_node_from_dict(payload.get("node")),
                ids_to_remove=_string_list(payload.get("ids_to_remove", [])),
                created_at=_time_from_json(payload.get("created_at")),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"malformed raft command: {exc}") from exc


@dataclass
class RaftSnapshot:
    """The control plane state saved for follower recovery."""

    nodes: dict[str, NodeInfo] = field(default_factory=dict)
    chain: list[str] = field(default_factory=list)
    last_control_index: int = 0

    def encode(self) -> bytes:
        """Serialise the snapshot to bytes."""
        payload = {
            "nodes": {key: _node_to_dict(node) for key, node in self.nodes.items()},
            "chain": list(self.chain),
            "last_control_index": self.last_control_index,
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> RaftSnapshot:
        """Parse bytes produced by :meth:`encode`; raise ValueError if malformed."""
        try:
            payload = json.loads(data)
            raw_nodes = payload.get("nodes", {})
            if not isinstance(raw_nodes, dict):
                raise TypeError("nodes must be a mapping")
            nodes = {}
            for key, raw in raw_nodes.items():
                node = _node_from_dict(raw)
                if node is None:
                    raise TypeError(f"node {key!r} is empty")
                nodes[key] = node
            index = payload.get("last_control_index", 0)
            if not isinstance(index, int) or isinstance(index, bool) or index < 0:
                raise TypeError("last_control_index must be a non-negative integer")
            return cls(
                nodes=nodes,
                chain=_string_list(payload.get("chain", [])),
                last_control_index=index,
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"malformed raft snapshot: {exc}") from exc