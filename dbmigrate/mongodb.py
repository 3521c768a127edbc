"""MongoDB migration driver built on pymongo.

Migrations are JSON arrays of database commands in MongoDB extended JSON.
"""

from __future__ import annotations

import os
import re
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable
from urllib.parse import parse_qsl, unquote, urlencode

import backoff
import pymongo
from bson import json_util

from .driver import NIL_VERSION, Driver, register
from .errors import DatabaseError, LockedError, NotLockedError

DEFAULT_MIGRATIONS_COLLECTION = "schema_migrations"
DEFAULT_LOCKING_COLLECTION = "migrate_advisory_lock"
DEFAULT_LOCK_TIMEOUT = 15
DEFAULT_LOCK_TIMEOUT_INTERVAL = 10
DEFAULT_ADVISORY_LOCKING_FLAG = True
LOCK_INDEX_NAME = "lock_unique_key"

_LOCK_KEY_UNIQUE_VALUE = 0
_CONTEXT_WAIT_TIMEOUT = 5.0
_SCHEMES = ("mongodb://", "mongodb+srv://")
_INT = re.compile(r"[+-]?[0-9]+")

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass
class Locking:
    collection_name: str = ""
    timeout: int = 0
    enabled: bool = False
    interval: int = 0


@dataclass
class Config:
    database_name: str = ""
    migrations_collection: str = ""
    transaction_mode: bool = False
    locking: Locking = field(default_factory=Locking)


def parse_boolean(value: str, default: bool) -> bool:
    """Parse a URL parameter as a boolean, returning ``default`` when empty."""
    if not value:
        return default
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def parse_int(value: str, default: int) -> int:
    """Parse a URL parameter as an integer, returning ``default`` when empty."""
    if not value:
        return default
    if not _INT.fullmatch(value):
        raise ValueError(f"invalid integer: {value!r}")
    return int(value)


def _split_url(url: str) -> tuple[str, list[tuple[str, str]]]:
    if not url.startswith(_SCHEMES):
        raise ValueError('scheme must be "mongodb" or "mongodb+srv"')
    base, _, raw_query = url.partition("?")
    return base, parse_qsl(raw_query, keep_blank_values=True)


def config_from_url(url: str) -> Config:
    """Build a Config from a MongoDB connection string and its ``x-`` options."""
    base, pairs = _split_url(url)
    rest = base.split("://", 1)[1]
    hosts, _, database = rest.partition("/")
    if not hosts.rpartition("@")[2]:
        raise ValueError("must have at least 1 host")
    database = unquote(database)
    if not database:
        raise ValueError("no database name")

    options: dict[str, str] = {}
    for key, value in pairs:
        options.setdefault(key.lower(), value)

    def get(key: str) -> str:
        return options.get(key, "")

    transaction_mode = parse_boolean(get("x-transaction-mode"), False)
    locking_enabled = parse_boolean(get("x-advisory-locking"), DEFAULT_ADVISORY_LOCKING_FLAG)
    lock_timeout = parse_int(get("x-advisory-lock-timeout"), DEFAULT_LOCK_TIMEOUT)

    interval_value = get("x-advisory-lock-timeout-interval")
    # The misspelt name is still accepted, but not together with the correct one.
    interval_from_typo = get("x-advisory-lock-timout-interval")
    if interval_value and interval_from_typo:
        raise ValueError(
            "both x-advisory-lock-timeout-interval and "
            "x-advisory-lock-timout-interval were specified"
        )
    interval = parse_int(interval_value or interval_from_typo, DEFAULT_LOCK_TIMEOUT_INTERVAL)

    return Config(
        database_name=database,
        migrations_collection=get("x-migrations-collection"),
        transaction_mode=transaction_mode,
        locking=Locking(
            collection_name=get("x-advisory-lock-collection"),
            timeout=lock_timeout,
            enabled=locking_enabled,
            interval=interval,
        ),
    )


def _read_all(migration: BinaryIO) -> bytes:
    data = migration.read()
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


class Mongo(Driver):
    """Driver storing the version in a collection, with optional advisory locking."""

    def __init__(self, client: Any = None, config: Config | None = None) -> None:
        self._client = client
        self.config = config if config is not None else Config()
        self._db = client[self.config.database_name] if client is not None else None
        self._guard = threading.Lock()
        self._locked = False

    def open(self, url: str) -> "Mongo":
        config = config_from_url(url)
        base, pairs = _split_url(url)
        kept = [(key, value) for key, value in pairs if not key.lower().startswith("x-")]
        dsn = f"{base}?{urlencode(kept)}" if kept else base
        client = pymongo.MongoClient(dsn)
        client.admin.command("ping")
        return with_instance(client, config)

    def set_version(self, version: int, dirty: bool) -> None:
        collection = self._db[self.config.migrations_collection]
        try:
            collection.drop()
        except Exception as exc:
            raise DatabaseError(exc, err="drop migrations collection failed") from exc
        try:
            collection.insert_one({"version": version, "dirty": dirty})
        except Exception as exc:
            raise DatabaseError(exc, err="save version failed") from exc

    def version(self) -> tuple[int, bool]:
        try:
            info = self._db[self.config.migrations_collection].find_one({})
        except Exception as exc:
            raise DatabaseError(exc, err="failed to get migration version") from exc
        if info is None:
            return NIL_VERSION, False
        return int(info.get("version", 0)), bool(info.get("dirty", False))

    def run(self, migration: BinaryIO) -> None:
        data = _read_all(migration)
        try:
            commands = json_util.loads(data.decode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise ValueError(f"unmarshaling json error: {exc}") from exc
        if not isinstance(commands, list) or not all(isinstance(c, dict) for c in commands):
            raise ValueError("unmarshaling json error: expected an array of commands")
        if self.config.transaction_mode:
            self._execute_commands_with_transaction(commands)
        else:
            self._execute_commands(commands)

    def _execute_commands_with_transaction(self, commands: list[dict]) -> None:
        with self._client.start_session() as session:
            try:
                session.start_transaction()
            except Exception as exc:
                raise DatabaseError(exc, err="failed to start transaction") from exc
            # A failed command aborts the transaction when the session ends.
            self._execute_commands(commands, session)
            try:
                session.commit_transaction()
            except Exception as exc:
                raise DatabaseError(exc, err="failed to commit transaction") from exc

    def _execute_commands(self, commands: list[dict], session: Any = None) -> None:
        for command in commands:
            try:
                self._db.command(command, session=session)
            except Exception as exc:
                raise DatabaseError(exc, err=f"failed to execute command:{command}") from exc

    def close(self) -> None:
        self._client.close()

    def drop(self) -> None:
        self._client.drop_database(self.config.database_name)

    def _ensure_lock_table(self) -> None:
        self._db[self.config.locking.collection_name].create_index(
            [("locking_key", -1)], unique=True, name=LOCK_INDEX_NAME
        )

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            self.version()
        finally:
            self.unlock()

    def _swap_lock(
        self, expected: bool, new: bool, error: Exception, action: Callable[[], None]
    ) -> None:
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
            locking = self.config.locking
            if not locking.enabled:
                return
            try:
                hostname = socket.gethostname()
            except OSError as exc:
                hostname = f"Could not determine hostname. Error: {exc}"
            pid = os.getpid()
            created_at = datetime.now(timezone.utc)
            collection = self._db[locking.collection_name]

            def insert() -> None:
                with pymongo.timeout(_CONTEXT_WAIT_TIMEOUT):
                    collection.insert_one(
                        {
                            "locking_key": _LOCK_KEY_UNIQUE_VALUE,
                            "pid": pid,
                            "hostname": hostname,
                            "created_at": created_at,
                        }
                    )

            retrying = backoff.on_exception(
                backoff.expo,
                Exception,
                max_time=locking.timeout,
                logger=None,
                base=1.5,
                factor=0.5,
                max_value=locking.interval,
            )(insert)
            try:
                retrying()
            except Exception as exc:
                raise LockedError() from exc

        self._swap_lock(False, True, LockedError(), acquire)

    def unlock(self) -> None:
        def release() -> None:
            locking = self.config.locking
            if not locking.enabled:
                return
            with pymongo.timeout(_CONTEXT_WAIT_TIMEOUT):
                self._db[locking.collection_name].delete_many(
                    {"locking_key": _LOCK_KEY_UNIQUE_VALUE}
                )

        self._swap_lock(True, False, NotLockedError(), release)


def with_instance(client: Any, config: Config | None) -> Mongo:
    """Create a MongoDB driver over a connected client."""
    if config is None:
        raise ValueError("no config")
    if not config.database_name:
        raise ValueError("no database name")
    if not config.migrations_collection:
        config.migrations_collection = DEFAULT_MIGRATIONS_COLLECTION
    if not config.locking.collection_name:
        config.locking.collection_name = DEFAULT_LOCKING_COLLECTION
    if config.locking.timeout <= 0:
        config.locking.timeout = DEFAULT_LOCK_TIMEOUT
    if config.locking.interval <= 0:
        config.locking.interval = DEFAULT_LOCK_TIMEOUT_INTERVAL

    driver = Mongo(client, config)
    if config.locking.enabled:
        driver._ensure_lock_table()
    driver._ensure_version_table()
    return driver


register("mongodb", Mongo())
register("mongodb+srv", Mongo())