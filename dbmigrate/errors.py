"""Exceptions raised by migration drivers."""

from __future__ import annotations


class LockedError(Exception):
    """The migration lock is already held."""

    def __init__(self, message: str = "can't acquire lock") -> None:
        super().__init__(message)


class NotLockedError(Exception):
    """An unlock was requested while no lock was held."""

    def __init__(self, message: str = "can't unlock, as not currently locked") -> None:
        super().__init__(message)


class DatabaseError(Exception):
    """A query run against the database failed.

    ``orig_err`` is the underlying exception, ``err`` an optional message for
    humans, ``query`` an excerpt of the failing query and ``line`` an
    optional line number.
    """

    def __init__(
        self,
        orig_err: BaseException | None = None,
        *,
        err: str = "",
        query: bytes | str = b"",
        line: int = 0,
    ) -> None:
        self.orig_err = orig_err
        self.err = err
        self.query = query
        self.line = line
        super().__init__(err or str(orig_err))

    @property
    def query_text(self) -> str:
        """The query excerpt as text."""
        if isinstance(self.query, (bytes, bytearray)):
            return bytes(self.query).decode("utf-8", errors="replace")
        return str(self.query)

    def __str__(self) -> str:
        if not self.err:
            return f"{self.orig_err} in line {self.line}: {self.query_text}"
        return (
            f"{self.err} in line {self.line}: {self.query_text} "
            f"(details: {self.orig_err})"
        )