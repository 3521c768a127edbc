"""Cassandra migration driver over a CQL session.

The session provides ``execute(query, parameters=None)`` returning an
iterable of rows, an ``is_shutdown`` flag and ``shutdown()``.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO
from urllib.parse import parse_qs, urlsplit

from .driver import NIL_VERSION, Driver
from .errors import DatabaseError, LockedError, NotLockedError
from .multistmt import iter_statements

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"
DEFAULT_MULTI_STATEMENT_MAX_SIZE = 10 << 20

_MULTI_STMT_DELIMITER = b";"
_INT = re.compile(r"[+-]?[0-9]+")
# Errors reported by the server (as opposed to the client) mean no version yet.
_SERVER_ERROR_NAMES = frozenset({"RequestExecutionException", "RequestValidationException"})


@dataclass
class Config:
    migrations_table: str = ""
    keyspace_name: str = ""
    multi_statement_enabled: bool = False
    multi_statement_max_size: int = 0


def config_from_url(url: str) -> Config:
    """Build a Config from a Cassandra URL whose path names the keyspace."""
    parts = urlsplit(url)
    if not parts.path:
        raise ValueError("no keyspace provided")
    query = parse_qs(parts.query, keep_blank_values=True)

    def get(key: str) -> str:
        return query.get(key, [""])[0]

    max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE
    if raw := get("x-multi-statement-max-size"):
        if not _INT.fullmatch(raw):
            raise ValueError(f"invalid integer: {raw!r}")
        max_size = int(raw)

    return Config(
        keyspace_name=parts.path.removeprefix("/"),
        migrations_table=get("x-migrations-table"),
        multi_statement_enabled=get("x-multi-statement") == "true",
        multi_statement_max_size=max_size,
    )


def _read_all(migration: BinaryIO) -> bytes:
    data = migration.read()
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def _is_server_error(exc: BaseException) -> bool:
    return any(cls.__name__ in _SERVER_ERROR_NAMES for cls in type(exc).__mro__)


class Cassandra(Driver):
    """Driver storing the version in a Cassandra table; locking is local only."""

    def __init__(self, session: Any, config: Config) -> None:
        self._session = session
        self.config = config
        self._guard = threading.Lock()
        self._locked = False

    def close(self) -> None:
        self._session.shutdown()

    def lock(self) -> None:
        with self._guard:
            if self._locked:
                raise LockedError()
            self._locked = True

    def unlock(self) -> None:
        with self._guard:
            if not self._locked:
                raise NotLockedError()
            self._locked = False

    def run(self, migration: BinaryIO) -> None:
        if self.config.multi_statement_enabled:
            for statement in iter_statements(
                migration, _MULTI_STMT_DELIMITER, self.config.multi_statement_max_size
            ):
                text = statement.decode("utf-8").strip()
                if not text:
                    continue
                try:
                    self._session.execute(text)
                except Exception as exc:
                    raise DatabaseError(exc, err="migration failed", query=statement) from exc
            return

        data = _read_all(migration)
        try:
            self._session.execute(data.decode("utf-8"))
        except Exception as exc:
            raise DatabaseError(exc, err="migration failed", query=data) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        # DELETE rather than TRUNCATE, which some Cassandra services lack.
        table = self.config.migrations_table
        squery = f'SELECT version FROM "{table}"'
        dquery = f'DELETE FROM "{table}" WHERE version = %s'
        try:
            previous = [row[0] for row in self._session.execute(squery)]
        except Exception as exc:
            raise DatabaseError(exc, query=squery) from exc
        for old in previous:
            try:
                self._session.execute(dquery, (old,))
            except Exception as exc:
                raise DatabaseError(exc, query=dquery) from exc

        # A dirty NIL_VERSION is kept so a failed first down migration is visible.
        if version >= 0 or (version == NIL_VERSION and dirty):
            query = f'INSERT INTO "{table}" (version, dirty) VALUES (%s, %s)'
            try:
                self._session.execute(query, (version, bool(dirty)))
            except Exception as exc:
                raise DatabaseError(exc, query=query) from exc

    def version(self) -> tuple[int, bool]:
        query = f'SELECT version, dirty FROM "{self.config.migrations_table}" LIMIT 1'
        try:
            row = next(iter(self._session.execute(query)), None)
        except Exception as exc:
            if _is_server_error(exc):
                return NIL_VERSION, False
            raise DatabaseError(exc, query=query) from exc
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), bool(row[1])

    def drop(self) -> None:
        query = (
            "SELECT table_name from system_schema.tables "
            f"WHERE keyspace_name='{self.config.keyspace_name}'"
        )
        for row in list(self._session.execute(query)):
            self._session.execute(f"DROP TABLE {row[0]}")

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            self._session.execute(
                f"CREATE TABLE IF NOT EXISTS {self.config.migrations_table} "
                "(version bigint, dirty boolean, PRIMARY KEY(version))"
            )
            self.version()
        finally:
            self.unlock()


def with_instance(session: Any, config: Config | None) -> Cassandra:
    """Create a Cassandra driver over an open session."""
    if config is None:
        raise ValueError("no config")
    if not config.keyspace_name:
        raise ValueError("no keyspace provided")
    if getattr(session, "is_shutdown", False):
        raise ValueError("session is closed")
    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE
    if config.multi_statement_max_size <= 0:
        config.multi_statement_max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE

    driver = Cassandra(session, config)
    driver._ensure_version_table()
    return driver