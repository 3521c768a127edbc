"""Database drivers for schema migrations on MySQL, MongoDB and Cassandra: version tracking, locking and multi-statement execution."""

__version__ = "0.1.0"

__all__ = [
    "cassandra",
    "driver",
    "errors",
    "mongodb",
    "multistmt",
    "mysql",
]