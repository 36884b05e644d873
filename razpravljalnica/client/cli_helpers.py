"""Argument checking shared by the command-line handlers."""

from __future__ import annotations

import re
from collections.abc import Sequence

_INTEGER = re.compile(r"[+-]?[0-9]+")


class ValidationError(Exception):
    """An argument that could not be parsed."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(field, message)
        self.field = field
        self.message = message

    def __str__(self) -> str:
        return f"Validation error on field '{self.field}': {self.message}"


class UsageError(Exception):
    """A command was given too few arguments."""


class CommandError(Exception):
    """A command failed; the underlying error is chained as its cause."""


def _parse_int(arg: str, bits: int, field_name: str) -> int:
    if _INTEGER.fullmatch(arg):
        value = int(arg)
        bound = 1 << (bits - 1)
        if -bound <= value < bound:
            return value
    raise ValidationError(field_name, f"must be a valid integer, got '{arg}'")


def parse_id(arg: str, field_name: str) -> int:
    """Parse a signed 64-bit decimal id."""
    return _parse_int(arg, 64, field_name)


def require_args(args: Sequence[str], expected: int, usage: str) -> None:
    """Raise UsageError unless at least ``expected`` arguments are given."""
    if len(args) < expected:
        raise UsageError(f"usage: {usage}")


def parse_int32(arg: str, field_name: str) -> int:
    """Parse a signed 32-bit decimal integer."""
    return _parse_int(arg, 32, field_name)


def parse_int64(arg: str) -> int:
    """Parse a decimal integer in the 32-bit range; the field is named by the argument."""
    return _parse_int(arg, 32, arg)