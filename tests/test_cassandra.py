import io

import pytest

from dbmigrate.cassandra import (
    DEFAULT_MIGRATIONS_TABLE,
    DEFAULT_MULTI_STATEMENT_MAX_SIZE,
    Config,
    config_from_url,
    with_instance,
)
from dbmigrate.driver import NIL_VERSION
from dbmigrate.errors import DatabaseError, LockedError, NotLockedError


class RequestValidationException(Exception):
    pass


class InvalidRequest(RequestValidationException):
    pass


class FakeSession:
    def __init__(self, tables=()):
        self.is_shutdown = False
        self.executed = []
        self.versions = {}
        self.tables = list(tables)
        self.fail_on = None
        self.version_error = None

    def execute(self, query, parameters=None):
        self.executed.append((query, parameters))
        if self.fail_on and self.fail_on in query:
            raise RuntimeError("boom")
        if query.startswith("SELECT version, dirty"):
            if self.version_error is not None:
                raise self.version_error
            return list(self.versions.items())[:1]
        if query.startswith("SELECT version FROM"):
            return [(v,) for v in self.versions]
        if query.startswith("DELETE FROM"):
            self.versions.pop(parameters[0], None)
            return []
        if query.startswith("INSERT INTO"):
            version, dirty = parameters
            self.versions[version] = dirty
            return []
        if query.startswith("SELECT table_name"):
            return [(t,) for t in self.tables]
        if query.startswith("DROP TABLE "):
            self.tables.remove(query[len("DROP TABLE "):])
            return []
        return []

    def shutdown(self):
        self.is_shutdown = True

    def queries(self):
        return [q for q, _ in self.executed]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def driver(session):
    return with_instance(session, Config(keyspace_name="testks"))


def test_config_from_url():
    config = config_from_url("cassandra://localhost:9042/testks")
    assert config.keyspace_name == "testks"
    assert config.migrations_table == ""
    assert config.multi_statement_enabled is False
    assert config.multi_statement_max_size == DEFAULT_MULTI_STATEMENT_MAX_SIZE


def test_config_from_url_custom_options():
    config = config_from_url(
        "cassandra://localhost:9042/testks?x-migrations-table=migs"
        "&x-multi-statement=true&x-multi-statement-max-size=100"
    )
    assert config.migrations_table == "migs"
    assert config.multi_statement_enabled is True
    assert config.multi_statement_max_size == 100


def test_config_from_url_errors():
    with pytest.raises(ValueError, match="no keyspace provided"):
        config_from_url("cassandra://localhost:9042")
    with pytest.raises(ValueError):
        config_from_url("cassandra://localhost:9042/testks?x-multi-statement-max-size=big")


def test_with_instance_validation(session):
    with pytest.raises(ValueError, match="no config"):
        with_instance(session, None)
    with pytest.raises(ValueError, match="no keyspace provided"):
        with_instance(session, Config())
    session.is_shutdown = True
    with pytest.raises(ValueError, match="session is closed"):
        with_instance(session, Config(keyspace_name="testks"))


def test_with_instance_defaults_and_version_table(driver, session):
    assert driver.config.migrations_table == DEFAULT_MIGRATIONS_TABLE
    assert driver.config.multi_statement_max_size == DEFAULT_MULTI_STATEMENT_MAX_SIZE
    assert session.queries()[0] == (
        "CREATE TABLE IF NOT EXISTS schema_migrations "
        "(version bigint, dirty boolean, PRIMARY KEY(version))"
    )
    # the lock taken while creating the table has been released
    driver.lock()
    driver.unlock()
    with pytest.raises(NotLockedError):
        driver.unlock()


def test_run_source_query(driver, session):
    driver.run(io.BytesIO(b"SELECT table_name from system_schema.tables"))
    assert session.queries()[-1] == "SELECT table_name from system_schema.tables"
    assert driver.version() == (NIL_VERSION, False)


def test_run_failure(driver, session):
    session.fail_on = "BAD"
    with pytest.raises(DatabaseError) as info:
        driver.run(io.BytesIO(b"BAD STATEMENT"))
    assert str(info.value) == "migration failed in line 0: BAD STATEMENT (details: boom)"


def test_run_multi_statement():
    session = FakeSession()
    driver = with_instance(
        session, Config(keyspace_name="testks", multi_statement_enabled=True)
    )
    driver.run(io.BytesIO(b"CREATE TABLE a (x int);  CREATE TABLE b (y int);\n"))
    assert session.queries()[-2:] == ["CREATE TABLE a (x int);", "CREATE TABLE b (y int);"]


def test_run_multi_statement_stops_on_failure():
    session = FakeSession()
    driver = with_instance(
        session, Config(keyspace_name="testks", multi_statement_enabled=True)
    )
    session.fail_on = "BAD"
    with pytest.raises(DatabaseError) as info:
        driver.run(io.BytesIO(b"BAD one; CREATE TABLE c (z int);"))
    assert info.value.err == "migration failed"
    assert info.value.query == b"BAD one;"
    assert not any("CREATE TABLE c" in q for q in session.queries())


def test_version_round_trip(driver):
    assert driver.version() == (NIL_VERSION, False)
    driver.set_version(1, False)
    assert driver.version() == (1, False)
    driver.set_version(2, True)
    assert driver.version() == (2, True)


def test_set_version_nil(driver, session):
    driver.set_version(1, False)
    driver.set_version(NIL_VERSION, False)
    assert driver.version() == (NIL_VERSION, False)
    assert session.versions == {}
    driver.set_version(NIL_VERSION, True)
    assert driver.version() == (NIL_VERSION, True)


def test_version_server_error_means_nil(driver, session):
    session.versions[5] = False
    session.version_error = InvalidRequest("unconfigured table")
    assert driver.version() == (NIL_VERSION, False)


def test_version_client_error_is_wrapped(driver, session):
    session.version_error = RuntimeError("connection lost")
    with pytest.raises(DatabaseError) as info:
        driver.version()
    assert isinstance(info.value.orig_err, RuntimeError)


def test_lock_and_unlock(driver):
    driver.lock()
    with pytest.raises(LockedError):
        driver.lock()
    driver.unlock()
    with pytest.raises(NotLockedError):
        driver.unlock()
    driver.lock()
    driver.unlock()
    driver.lock()
    with pytest.raises(LockedError):
        driver.lock()


def test_drop_removes_every_table():
    session = FakeSession(tables=["users", "schema_migrations"])
    driver = with_instance(session, Config(keyspace_name="testks"))
    driver.drop()
    assert session.tables == []
    assert "WHERE keyspace_name='testks'" in [q for q in session.queries() if q.startswith("SELECT table_name")][0]


def test_close_shuts_session_down(session):
    with with_instance(session, Config(keyspace_name="testks")) as driver:
        assert driver.config.keyspace_name == "testks"
        assert session.is_shutdown is False
    assert session.is_shutdown is True