"""The driver interface and the global driver registry."""

from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO

NIL_VERSION = -1

_SCHEME = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*):")

_drivers_lock = threading.RLock()
_drivers: dict[str, "Driver"] = {}


class Driver(ABC):
    """Interface every database driver implements.

    ``version()`` returns ``(version, dirty)``; when no migration has been
    applied the version is ``NIL_VERSION``.
    """

    def open(self, url: str) -> "Driver":
        """Return a new driver instance configured from ``url``."""
        raise TypeError(f"{type(self).__name__} cannot be opened from a URL")

    @abstractmethod
    def close(self) -> None:
        """Close the underlying database instance."""

    @abstractmethod
    def lock(self) -> None:
        """Acquire the migration lock, raising LockedError if it is held."""

    @abstractmethod
    def unlock(self) -> None:
        """Release the migration lock."""

    @abstractmethod
    def run(self, migration: BinaryIO) -> None:
        """Apply a migration read from a file-like object."""

    @abstractmethod
    def set_version(self, version: int, dirty: bool) -> None:
        """Save the version and dirty state."""

    @abstractmethod
    def version(self) -> tuple[int, bool]:
        """Return the active version and whether the database is dirty."""

    @abstractmethod
    def drop(self) -> None:
        """Delete everything in the database."""

    def __enter__(self) -> "Driver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def scheme_from_url(url: str) -> str:
    """Return the scheme part of ``url``."""
    if not url:
        raise ValueError("URL cannot be empty")
    match = _SCHEME.match(url)
    if match is None:
        raise ValueError("no scheme")
    return match.group(1)


def register(name: str, driver: Driver) -> None:
    """Register ``driver`` globally under ``name``."""
    if driver is None:
        raise ValueError("Register driver is nil")
    with _drivers_lock:
        if name in _drivers:
            raise ValueError(f"Register called twice for driver {name}")
        _drivers[name] = driver


def open_driver(url: str) -> Driver:
    """Open a new driver instance chosen by the scheme of ``url``."""
    scheme = scheme_from_url(url)
    with _drivers_lock:
        driver = _drivers.get(scheme)
    if driver is None:
        raise ValueError(f"database driver: unknown driver {scheme} (forgotten import?)")
    return driver.open(url)


def list_drivers() -> list[str]:
    """Return the names of the registered drivers."""
    with _drivers_lock:
        return list(_drivers)