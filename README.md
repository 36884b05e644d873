# razpravljalnica

Building blocks for a discussion board whose data lives on a chain of
servers. The control plane keeps the order of the chain. The HEAD takes
writes and the TAIL serves reads. When a server leaves or stops sending
heartbeats, the control plane stitches the chain back together. The client
asks the control plane where the HEAD and TAIL are. When a server goes away,
it looks them up again and retries.

The package has no dependencies outside the standard library.

## Modules

`razpravljalnica.status`

- `Code` holds the canonical status codes.
- `StatusError(code, message)` is the error raised between the parts.
- `status_code(err)` gives `Code.OK` for `None`, the error's code for a
  `StatusError`, and `Code.UNKNOWN` for any other exception.

`razpravljalnica.records`

- Dataclasses for `NodeInfo`, `User`, `Topic`, `Message` and `MessageEvent`,
  and the enum `OpType`.
- `RaftCommand` and `RaftSnapshot` form the control plane's replicated
  commands and its saved state. `encode()` writes them as compact JSON bytes.
  The `decode(data)` class method reads them back and raises `ValueError` on
  malformed input.

`razpravljalnica.control.plane`

- `ControlPlane(consensus, client_factory, raft_timeout)` is the state
  machine. It holds the chain order and the registered nodes as `NodeEntry`
  objects. Its service methods are:
  - `register_node` appends the node as the new TAIL and returns its
    `predecessor` and `successor`.
  - `unregister_node`
  - `heartbeat`
  - `get_cluster_state` returns `head` and `tail`, both `None` for an empty
    chain.
  - `get_subscription_node` picks a node in round-robin order and returns
    `node` and `subscribe_token`.

  Every change goes through the consensus log and is applied by
  `apply(data)`. `snapshot()` and `restore(data)` save and reload the whole
  state. `get_stats()` returns a `ControlStatsSnapshot`.
- `LocalConsensus(node_id)` is an in-process, single-replica log. It is the
  leader while its `state` is `RaftState.LEADER`, and it applies each entry to
  the bound plane at once.

`razpravljalnica.control.heartbeat`

- `HeartbeatMonitor(plane, interval, timeout)` works only on the leader.
- `check()` runs one round. It finds nodes that have been silent for longer
  than `timeout`, removes them through the log, and reconnects their
  neighbours.
- `start()` and `stop()` run `check()` in a background thread every
  `interval` seconds.

`razpravljalnica.control.stats`

- `Stats`, `StatsCollector`, `ControlStatsSnapshot` and `ChainNodeInfo`.
- Helpers that render the control plane's status and the chain as colour
  markup text:
  - `render_stats`
  - `render_initializing`
  - `render_chain`
  - `chain_title`
  - `format_leader`
  - `state_color`
  - `role_label`

`razpravljalnica.control.log_view`

- `MarkupLogHandler(sink, flush_interval, max_buffer_len)` is a
  `logging.Handler`. It formats records as coloured lines and hands them to
  `sink` in batches.

`razpravljalnica.control.raft_logging`

- `LoggerAdapter` and `LoggerWriter` route the output of a consensus library's
  logger into standard `logging` loggers.

`razpravljalnica.client.shared`

- `ClientSet(control_plane_addrs, connect)` holds the connections to the
  control plane, the HEAD (`writes`) and the TAIL (`reads`).
  - `try_control_plane_request(request)` tries the current control plane
    connection, then each address in turn. It raises
    `ControlPlaneUnreachable` when none can handle the request.
  - `retry_fetch(fetch)` looks up HEAD and TAIL again and retries once when a
    server reports `UNAVAILABLE`, `FAILED_PRECONDITION` or `INTERNAL`.
- `new_client_set(control_plane_addrs, connect)` builds a connected set.

`razpravljalnica.client.cli`

- `route(clients, command, args)` dispatches one command.
- `start_cli_client(clients, stdin)` reads commands line by line.
- `run_client(control_plane_addrs, client_type, connect)` connects and starts
  the shell when `client_type` is `"cli"`.

## Using the control plane in-process

```python
from razpravljalnica.control.plane import ControlPlane, LocalConsensus
from razpravljalnica.records import NodeInfo

consensus = LocalConsensus("node0")
plane = ControlPlane(consensus, client_factory, 5.0)  # binds itself to the log

plane.register_node(NodeInfo(node_id="server-a", address="127.0.0.1:6001"))
plane.register_node(NodeInfo(node_id="server-b", address="127.0.0.1:6002"))

state = plane.get_cluster_state()   # state.head is server-a, state.tail is server-b
```

`client_factory` takes a node's address and returns the object the plane
uses to reach that node. It may be `None`, in which case nodes are not
contacted. The plane calls three methods on that object:

- `set_predecessor(node)`
- `set_successor(node)`
- `add_subscription_request(request)`

The plane raises `StatusError` in these cases:

| Case | Code |
|---|---|
| Registering an id that is already registered | `Code.ALREADY_EXISTS` |
| Registering an empty id | `Code.INVALID_ARGUMENT` |
| Unregistering an unknown node | `Code.NOT_FOUND` |
| Sending a heartbeat for an unknown node | `Code.NOT_FOUND` |
| Any request on a replica that is not the leader | `Code.FAILED_PRECONDITION` |

The client treats `Code.FAILED_PRECONDITION` as a reason to try the next
control plane address.

## The client shell

`run_client` and `new_client_set` take a `connect(address)` callable. It
returns a connection object that has a `close()` method and serves the calls
made through it.

Control plane connections serve these calls:

- `get_cluster_state()`
- `get_subscription_node(user_id=...)`

HEAD connections serve these calls:

- `create_user`
- `create_topic`
- `post_message`
- `update_message`
- `delete_message`
- `like_message`

TAIL connections serve these calls:

- `list_topics`
- `get_user`
- `get_messages`

Subscription nodes serve `subscribe_topic`, which returns an iterable of
`MessageEvent`.

Commands:

```
help, h                                     show the help text
exit, quit, q                               leave the shell

createuser <name>                           create a user
createtopic <name>                          create a topic
post <user_id> <topic_id> <content>         post a message
update <topic_id> <user_id> <msg_id> <text> edit a message
delete <topic_id> <user_id> <msg_id>        delete a message
like <topic_id> <msg_id> <user_id>          like a message

topics                                      list topics
user <user_id>                              show a user
messages <topic_id> <from_id> <limit>       list messages in a topic

subscribe <user_id> <topic_id>...           stream events for topics
```

`loop <command> [args...]` and `loopslow <command> [args...]` repeat a
command until Ctrl+C, for load testing. `loop` runs up to 100 copies of the
command at once. `loopslow` runs one copy at a time.

## What this package does not do

- It has no network transport. There is no server that exposes the control
  plane, and no client stub that reaches one. The caller supplies the
  `connect` and `client_factory` callables.
- It has no multi-replica consensus. `LocalConsensus` is a single replica
  that is always its own leader, so no log is replicated between machines.
- It has no chain server. There is nothing that stores users, topics or
  messages, or that forwards writes along the chain.
- It installs no commands. Every entry point needs a `connect` callable, so
  the client is started from Python code.
- It has no graphical or full-screen interface. The statistics and log
  helpers produce markup text and hand it to callbacks you provide.

## Tests

```
pip install -e .[test]
pytest
```