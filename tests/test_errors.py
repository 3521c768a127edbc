import pytest

from dbmigrate.errors import DatabaseError, LockedError, NotLockedError


def test_locked_error_message():
    assert str(LockedError()) == "can't acquire lock"


def test_not_locked_error_message():
    assert str(NotLockedError()) == "can't unlock, as not currently locked"


def test_database_error_with_details():
    orig = RuntimeError(
        "Dynamic SQL Error\nSQL error code = -104\nToken unknown - line 1, column 8\nTABLEE\n"
    )
    error = DatabaseError(
        orig,
        err="migration failed",
        query=b"CREATE TABLEE foo (foo varchar(40));",
    )
    assert str(error) == (
        "migration failed in line 0: CREATE TABLEE foo (foo varchar(40)); (details: Dynamic SQL Error\n"
        "SQL error code = -104\n"
        "Token unknown - line 1, column 8\n"
        "TABLEE\n"
        ")"
    )


def test_database_error_without_message_uses_original_error():
    error = DatabaseError(RuntimeError("boom"), query=b"SELECT 1", line=7)
    assert str(error) == "boom in line 7: SELECT 1"


def test_database_error_keeps_attributes():
    orig = ValueError("bad")
    error = DatabaseError(orig, err="failed", query="SELECT 2", line=3)
    assert error.orig_err is orig
    assert error.err == "failed"
    assert error.line == 3
    assert error.query_text == "SELECT 2"


def test_database_error_can_be_raised_and_caught():
    orig = RuntimeError("missing")
    error = DatabaseError(orig, err="lookup failed", query=b"SELECT k")
    with pytest.raises(DatabaseError) as info:
        raise error
    assert info.value.orig_err is orig
    assert str(info.value) == "lookup failed in line 0: SELECT k (details: missing)"