"""Splitting multi-statement migrations into single statements."""

from __future__ import annotations

from typing import BinaryIO, Callable, Iterator

START_BUF_SIZE = 4096


def _to_bytes(value: bytes | bytearray | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def iter_statements(
    reader: BinaryIO, delimiter: bytes | str, max_migration_size: int
) -> Iterator[bytes]:
    """Yield the statements read from ``reader``, each with its delimiter.

    The last statement is yielded without a delimiter if the input does not
    end with one. A statement longer than ``max_migration_size`` raises
    ValueError.
    """
    delim = _to_bytes(delimiter)
    if not delim:
        raise ValueError("delimiter must not be empty")

    buffer = bytearray()
    at_eof = False
    while True:
        index = buffer.find(delim)
        if index >= 0:
            end = index + len(delim)
            statement = bytes(buffer[:end])
            del buffer[:end]
            yield statement
            continue
        if at_eof:
            if buffer:
                yield bytes(buffer)
            return
        room = max_migration_size - len(buffer)
        if room <= 0:
            raise ValueError("token too long")
        chunk = reader.read(min(START_BUF_SIZE, room))
        if not chunk:
            at_eof = True
        else:
            buffer += _to_bytes(chunk)


def parse(
    reader: BinaryIO,
    delimiter: bytes | str,
    max_migration_size: int,
    handler: Callable[[bytes], bool],
) -> None:
    """Pass each statement to ``handler`` until it returns a false value."""
    for statement in iter_statements(reader, delimiter, max_migration_size):
        if not handler(statement):
            break