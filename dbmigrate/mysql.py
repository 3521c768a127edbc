"""MySQL migration driver built on pymysql."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator
from urllib.parse import parse_qsl, unquote_plus

import pymysql
from pymysql.constants import CLIENT

from .driver import NIL_VERSION, Driver, register
from .errors import DatabaseError, LockedError, NotLockedError

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass
class Config:
    migrations_table: str = ""
    database_name: str = ""
    no_lock: bool = False


def _parse_bool(value: str) -> bool:
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def read_bool(value: str) -> tuple[bool, bool]:
    """Return ``(value, valid)`` for the boolean words MySQL DSNs accept."""
    if value in ("1", "true", "TRUE", "True"):
        return True, True
    if value in ("0", "false", "FALSE", "False"):
        return False, True
    return False, False


def _read_all(migration: BinaryIO) -> bytes:
    data = migration.read()
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def _tls_params(params: dict[str, str]) -> dict[str, Any]:
    ctls = params.get("tls", "")
    if not ctls:
        return {}
    value, is_bool = read_bool(ctls)
    if is_bool:
        return {"ssl": {"check_hostname": True}} if value else {}
    if ctls.lower() == "skip-verify":
        return {"ssl": {"check_hostname": False}}

    ca_path = params.get("x-tls-ca", "")
    try:
        pem = Path(ca_path).read_text()
    except OSError as exc:
        raise ValueError(f"cannot read x-tls-ca {ca_path!r}: {exc}") from exc
    if "-----BEGIN CERTIFICATE-----" not in pem:
        raise ValueError("failed to append PEM")

    ssl: dict[str, Any] = {"ca": ca_path}
    cert, key = params.get("x-tls-cert", ""), params.get("x-tls-key", "")
    if cert or key:
        if not cert or not key:
            raise ValueError(
                "To use TLS client authentication, both x-tls-cert and x-tls-key must not be empty"
            )
        ssl["cert"] = cert
        ssl["key"] = key

    insecure = False
    if raw := params.get("x-tls-insecure-skip-verify", ""):
        insecure = _parse_bool(raw)
    ssl["check_hostname"] = not insecure
    if insecure:
        ssl["verify_mode"] = False
    return {"ssl": ssl}


def url_to_connect_params(url: str) -> tuple[dict[str, Any], dict[str, str]]:
    """Parse a MySQL DSN URL.

    Returns the keyword arguments for ``pymysql.connect`` and the custom
    ``x-`` parameters, which are kept away from the connection.
    """
    dsn = url[len("mysql://"):] if url.startswith("mysql://") else url
    slash = dsn.rfind("/")
    if slash < 0:
        raise ValueError("invalid DSN: missing the slash separating the database name")
    head, tail = dsn[:slash], dsn[slash + 1:]
    dbname, _, raw_params = tail.partition("?")

    user = password = ""
    at = head.rfind("@")
    if at >= 0:
        user, _, password = head[:at].partition(":")
        head = head[at + 1:]

    if "(" in head:
        if not head.endswith(")"):
            raise ValueError("invalid DSN: network address not terminated (missing closing brace)")
        net, addr = head[: head.index("(")], head[head.index("(") + 1:-1]
    else:
        net, addr = head, ""
    net = net or "tcp"

    params = dict(parse_qsl(raw_params, keep_blank_values=True))
    custom = {k: v for k, v in params.items() if k.startswith("x-")}

    kwargs: dict[str, Any] = {
        "user": unquote_plus(user),
        "password": unquote_plus(password),
        "database": dbname or None,
        "client_flag": CLIENT.MULTI_STATEMENTS,
    }
    if net == "unix":
        kwargs["unix_socket"] = addr or "/tmp/mysql.sock"
    else:
        host, sep, port = (addr or "127.0.0.1:3306").rpartition(":")
        if not sep:
            host, port = port, "3306"
        kwargs["host"] = host
        kwargs["port"] = int(port)
    if charset := params.get("charset"):
        kwargs["charset"] = charset.split(",")[0]
    kwargs.update(_tls_params(params))
    return kwargs, custom


class Mysql(Driver):
    """Driver storing the version in a MySQL table, locking with GET_LOCK."""

    def __init__(self, conn: Any = None, config: Config | None = None) -> None:
        self._conn = conn
        self.config = config if config is not None else Config()
        self._guard = threading.Lock()
        self._locked = False

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def _execute(self, query: str, params: tuple | None = None) -> None:
        with self._cursor() as cursor:
            cursor.execute(query, params)

    def _query_row(self, query: str, params: tuple | None = None) -> Any:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()

    def _query_all(self, query: str) -> list:
        with self._cursor() as cursor:
            cursor.execute(query)
            return list(cursor.fetchall())

    def open(self, url: str) -> "Mysql":
        kwargs, custom = url_to_connect_params(url)
        no_lock = False
        if raw := custom.get("x-no-lock", ""):
            try:
                no_lock = _parse_bool(raw)
            except ValueError as exc:
                raise ValueError(f"could not parse x-no-lock as bool: {exc}") from exc
        conn = pymysql.connect(**kwargs)
        return with_instance(
            conn,
            Config(
                database_name=kwargs.get("database") or "",
                migrations_table=custom.get("x-migrations-table", ""),
                no_lock=no_lock,
            ),
        )

    def close(self) -> None:
        self._conn.close()

    def _lock_name(self) -> str:
        return f"{self.config.database_name}:{self.config.migrations_table}"

    def _swap_lock(self, expected: bool, new: bool, error: Exception, action: Callable[[], None]) -> None:
        with self._guard:
            if self._locked != expected:
                raise error
            self._locked = new
        try:
            action()
        except BaseException:
            with self._guard:
                self._locked = expected
            raise

    def lock(self) -> None:
        def acquire() -> None:
            if self.config.no_lock:
                return
            query = "SELECT GET_LOCK(%s, 10)"
            try:
                row = self._query_row(query, (self._lock_name(),))
            except Exception as exc:
                raise DatabaseError(exc, err="try lock failed", query=query) from exc
            if row is None or not row[0]:
                raise LockedError()

        self._swap_lock(False, True, LockedError(), acquire)

    def unlock(self) -> None:
        def release() -> None:
            if self.config.no_lock:
                return
            query = "SELECT RELEASE_LOCK(%s)"
            try:
                self._execute(query, (self._lock_name(),))
            except Exception as exc:
                raise DatabaseError(exc, query=query) from exc

        self._swap_lock(True, False, NotLockedError(), release)

    def run(self, migration: BinaryIO) -> None:
        data = _read_all(migration)
        try:
            self._execute(data.decode("utf-8"))
        except Exception as exc:
            raise DatabaseError(exc, err="migration failed", query=data) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        table = self.config.migrations_table
        try:
            self._execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
            self._conn.begin()
        except Exception as exc:
            raise DatabaseError(exc, err="transaction start failed") from exc

        statements = [(f"DELETE FROM `{table}`", None)]
        # A dirty NIL_VERSION is kept so a failed first down migration is visible.
        if version >= 0 or (version == NIL_VERSION and dirty):
            statements.append(
                (f"INSERT INTO `{table}` (version, dirty) VALUES (%s, %s)", (version, bool(dirty)))
            )
        for query, params in statements:
            try:
                self._execute(query, params)
            except Exception as exc:
                try:
                    self._conn.rollback()
                except Exception:
                    pass
                raise DatabaseError(exc, query=query) from exc

        try:
            self._conn.commit()
        except Exception as exc:
            raise DatabaseError(exc, err="transaction commit failed") from exc

    def version(self) -> tuple[int, bool]:
        query = f"SELECT version, dirty FROM `{self.config.migrations_table}` LIMIT 1"
        try:
            row = self._query_row(query)
        except pymysql.MySQLError as exc:
            if exc.args[:1] == (0,):
                return NIL_VERSION, False
            raise DatabaseError(exc, query=query) from exc
        except Exception as exc:
            raise DatabaseError(exc, query=query) from exc
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), bool(row[1])

    def drop(self) -> None:
        query = "SHOW TABLES LIKE '%'"
        try:
            rows = self._query_all(query)
        except Exception as exc:
            raise DatabaseError(exc, query=query) from exc
        names = [row[0] for row in rows if row[0]]
        if not names:
            return

        query = "SET foreign_key_checks = 0"
        try:
            self._execute(query)
        except Exception as exc:
            raise DatabaseError(exc, query=query) from exc
        try:
            for name in names:
                query = f"DROP TABLE IF EXISTS `{name}`"
                try:
                    self._execute(query)
                except Exception as exc:
                    raise DatabaseError(exc, query=query) from exc
        finally:
            try:
                self._execute("SET foreign_key_checks = 1")
            except Exception:
                pass

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            table = self.config.migrations_table
            query = f"SHOW TABLES LIKE '{table}'"
            try:
                row = self._query_row(query)
            except Exception as exc:
                raise DatabaseError(exc, query=query) from exc
            if row is not None:
                return
            query = (
                f"CREATE TABLE `{table}` "
                "(version bigint not null primary key, dirty boolean not null)"
            )
            try:
                self._execute(query)
            except Exception as exc:
                raise DatabaseError(exc, query=query) from exc
        finally:
            self.unlock()


def with_instance(conn: Any, config: Config | None) -> Mysql:
    """Create a MySQL driver over an open connection allowing multi statements."""
    if config is None:
        raise ValueError("no config")
    if hasattr(conn, "ping"):
        conn.ping()
    driver = Mysql(conn, config)
    if not config.database_name:
        query = "SELECT DATABASE()"
        try:
            row = driver._query_row(query)
        except Exception as exc:
            raise DatabaseError(exc, query=query) from exc
        if row is None or not row[0]:
            raise ValueError("no database name")
        config.database_name = row[0]
    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE
    driver._ensure_version_table()
    return driver


register("mysql", Mysql())