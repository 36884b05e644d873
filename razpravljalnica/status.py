"""Status codes and the error type carried across service calls."""

from __future__ import annotations

import enum


class Code(enum.IntEnum):
    """Canonical status codes used by every service of the message board."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @property
    def label(self) -> str:
        """The camel-case name used in error texts, e.g. ``NotFound``."""
        if self is Code.OK:
            return "OK"
        return "".join(part.capitalize() for part in self.name.split("_"))


class StatusError(Exception):
    """An error that carries a status code and a description."""

    def __init__(self, code: Code, message: str) -> None:
        super().__init__(message)
        self.code = Code(code)
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.label} desc = {self.message}"

    def __repr__(self) -> str:
        return f"StatusError({self.code.name}, {self.message!r})"


def status_code(err: BaseException | None) -> Code:
    """Return the status code of ``err``.

    ``None`` means success; errors that carry no status count as ``UNKNOWN``.
    """
    if err is None:
        return Code.OK
    if isinstance(err, StatusError):
        return err.code
    return Code.UNKNOWN