"""Connections from a client to the control plane and to the chain's HEAD and TAIL."""

from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from razpravljalnica.status import Code, StatusError, status_code

T = TypeVar("T")

# Deadline, in seconds, that connections apply to every request.
TIMEOUT = 5.0

_SERVER_UNAVAILABLE = frozenset({Code.UNAVAILABLE, Code.FAILED_PRECONDITION, Code.INTERNAL})
_CONTROL_PLANE_RETRYABLE = frozenset(
    {Code.UNAVAILABLE, Code.FAILED_PRECONDITION, Code.UNKNOWN, Code.DEADLINE_EXCEEDED}
)


class ControlPlaneUnreachable(Exception):
    """No control plane server could handle a request."""


class _WrappedStatusError(StatusError):
    """A status error with context prepended; keeps the code of its cause."""

    def __init__(self, context: str, cause: BaseException) -> None:
        super().__init__(status_code(cause), f"{context}: {cause}")
        self.context = context
        self.cause = cause

    def __str__(self) -> str:
        return self.message


def is_server_unavailable_error(err: BaseException | None) -> bool:
    """True when ``err`` means the chain node should be looked up again."""
    return err is not None and status_code(err) in _SERVER_UNAVAILABLE


def is_retryable_control_plane_error(err: BaseException | None) -> bool:
    """True when another control plane server should be tried after ``err``."""
    if err is None:
        return False
    if not isinstance(err, StatusError):
        # Not a service error: assume the connection itself failed.
        return True
    return err.code in _CONTROL_PLANE_RETRYABLE


def _close_quietly(conn: Any) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except Exception:
        pass


class ClientSet:
    """Connections to the control plane, the HEAD (writes) and the TAIL (reads).

    ``connect`` opens a connection to an address; the returned object serves
    the calls made through it and has a ``close()`` method.
    """

    def __init__(self, control_plane_addrs: list[str], connect: Callable[[str], Any]) -> None:
        self.control_plane_addrs = list(control_plane_addrs)
        self._connect = connect
        self.control_conn: Any = None
        self.head_conn: Any = None
        self.tail_conn: Any = None
        self.reads: Any = None
        self.writes: Any = None
        self.subscriptions: Any = None
        self._lock = threading.Lock()
        self._control_lock = threading.Lock()

    def __enter__(self) -> ClientSet:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close every open connection."""
        for conn in (self.control_conn, self.head_conn, self.tail_conn):
            _close_quietly(conn)

    def _cluster_endpoints(self) -> tuple[str, str]:
        def request(client: Any) -> tuple[str, str]:
            state = client.get_cluster_state()
            if state.head is None or state.tail is None:
                raise StatusError(Code.NOT_FOUND, "no nodes available in the cluster")
            return state.head.address, state.tail.address

        return self.try_control_plane_request(request)

    def _install(self, head_conn: Any, tail_conn: Any) -> None:
        with self._lock:
            self.head_conn = head_conn
            self.tail_conn = tail_conn
            self.writes = head_conn
            self.reads = tail_conn

    def reset_clients(self) -> bool:
        """Look up HEAD and TAIL again and reconnect; False if that fails."""
        try:
            head_addr, tail_addr = self._cluster_endpoints()
        except ControlPlaneUnreachable:
            raise
        except Exception:
            return False

        try:
            head_conn = self._connect(head_addr)
        except Exception:
            return False
        try:
            tail_conn = self._connect(tail_addr)
        except Exception:
            _close_quietly(head_conn)
            return False

        self._install(head_conn, tail_conn)
        return True

    def try_control_plane_request(self, request: Callable[[Any], T]) -> T:
        """Run ``request`` against the control plane leader and return its result.

        The current connection is tried first; then every address in turn.
        Errors that do not call for another server are raised at once.
        Raises ControlPlaneUnreachable when no server could handle it.
        """
        with self._control_lock:
            current = self.control_conn

        if current is not None:
            try:
                return request(current)
            except Exception as exc:
                if not is_retryable_control_plane_error(exc):
                    raise

        last_error: BaseException | None = None
        for address in self.control_plane_addrs:
            try:
                conn = self._connect(address)
            except Exception as exc:
                last_error = exc
                continue

            try:
                result = request(conn)
            except Exception as exc:
                _close_quietly(conn)
                if not is_retryable_control_plane_error(exc):
                    raise
                last_error = exc
                continue

            with self._control_lock:
                _close_quietly(current)
                self.control_conn = conn
            return result

        raise ControlPlaneUnreachable(
            f"Control plane is unreachable: {last_error}"
        ) from last_error

    def retry_fetch(self, fetch: Callable[[], T]) -> T:
        """Call ``fetch``; if the node is unavailable, reconnect and call it once more."""
        try:
            return fetch()
        except Exception as exc:
            if not is_server_unavailable_error(exc):
                raise
            error = exc

        if not self.reset_clients():
            raise _WrappedStatusError("failed to reset clients", error) from error

        try:
            return fetch()
        except Exception as exc:
            raise _WrappedStatusError("retry failed after client reset", exc) from exc


def new_client_set(control_plane_addrs: list[str], connect: Callable[[str], Any]) -> ClientSet:
    """Find HEAD and TAIL through the control plane and connect to both."""
    clients = ClientSet(control_plane_addrs, connect)
    try:
        head_addr, tail_addr = clients._cluster_endpoints()
        clients.head_conn = connect(head_addr)
        clients.tail_conn = connect(tail_addr)
        clients.writes = clients.head_conn
        clients.reads = clients.tail_conn
    except BaseException:
        clients.close()
        raise
    return clients