import asyncio
from types import SimpleNamespace

import pytest

from app.core.sql_gate.errors import (
    ConnectionAcquisitionFailed,
    ConnectionReleaseFailed,
    QueryExecutionFailed,
    ReadOnlyNotEnforceable,
    StatementTimeoutExceeded,
    TransactionCommitFailed,
    TransactionRollbackFailed,
)
from app.core.sql_gate.executor import BoundedReadExecutor, is_statement_timeout
from app.core.sql_gate.validator import ApprovedQuery


QUERY = ApprovedQuery(
    sql="SELECT description, amount FROM entries WHERE user_id = ? LIMIT 200",
    params=("u42",),
)
ROWS = [
    {"description": "Salary", "amount": 3000},
    {"description": "Groceries", "amount": 42.5},
]


# =========================
# Stand-ins for the async engine
# =========================
class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def mappings(self):
        return SimpleNamespace(all=lambda: list(self._rows))


class FakeTransaction:
    def __init__(self, calls, commit_error=None, rollback_error=None):
        self.calls = calls
        self.commit_error = commit_error
        self.rollback_error = rollback_error

    async def commit(self):
        self.calls.append("commit")
        if self.commit_error:
            raise self.commit_error

    async def rollback(self):
        self.calls.append("rollback")
        if self.rollback_error:
            raise self.rollback_error


class FakeConnection:
    def __init__(
        self,
        dialect="postgresql",
        rows=None,
        execute_error=None,
        delay=0,
        commit_error=None,
        rollback_error=None,
        close_error=None,
        restore_error=None,
    ):
        self.dialect = SimpleNamespace(name=dialect)
        self.rows = ROWS if rows is None else rows
        self.execute_error = execute_error
        self.delay = delay
        self.close_error = close_error
        self.restore_error = restore_error
        self.calls = []
        self.statements = []
        self.transaction = FakeTransaction(self.calls, commit_error, rollback_error)

    async def begin(self):
        self.calls.append("begin")
        return self.transaction

    async def exec_driver_sql(self, sql, params=()):
        if sql.startswith(("SET ", "PRAGMA ")):
            self.statements.append(sql)
            if sql.endswith("OFF") and self.restore_error:
                raise self.restore_error
            return FakeResult([])
        self.statements.append((sql, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.execute_error:
            raise self.execute_error
        return FakeResult(self.rows)

    async def invalidate(self):
        self.calls.append("invalidate")

    async def close(self):
        self.calls.append("close")
        if self.close_error:
            raise self.close_error


class FakeEngine:
    def __init__(self, connection=None, connect_error=None, dialect="postgresql"):
        self.connection = connection
        self.connect_error = connect_error
        self.dialect = connection.dialect if connection else SimpleNamespace(name=dialect)
        self.connects = 0

    async def connect(self):
        self.connects += 1
        if self.connect_error:
            raise self.connect_error
        return self.connection


# =========================
# Success path
# =========================
@pytest.mark.asyncio
async def test_execute_returns_rows_and_releases_connection():
    connection = FakeConnection()
    executor = BoundedReadExecutor(FakeEngine(connection))

    rows = await executor.execute(QUERY)

    assert rows == ROWS
    assert connection.calls == ["begin", "commit", "close"]
    assert connection.statements == [
        "SET LOCAL statement_timeout = 3000",
        "SET TRANSACTION READ ONLY",
        (QUERY.sql, ("u42",)),
    ]


@pytest.mark.asyncio
async def test_read_write_mode_skips_read_only_statement():
    connection = FakeConnection()
    executor = BoundedReadExecutor(
        FakeEngine(connection), statement_timeout_ms=500, read_only=False
    )

    await executor.execute(QUERY)

    assert connection.statements[0] == "SET LOCAL statement_timeout = 500"
    assert "SET TRANSACTION READ ONLY" not in connection.statements


@pytest.mark.asyncio
async def test_sqlite_connection_is_query_only_while_the_query_runs():
    """SQLite is switched to query_only for the query and switched back before release"""
    connection = FakeConnection(dialect="sqlite")
    rows = await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert rows == ROWS
    assert connection.statements == [
        "PRAGMA query_only = ON",
        (QUERY.sql, ("u42",)),
        "PRAGMA query_only = OFF",
    ]
    assert connection.calls == ["begin", "commit", "close"]


@pytest.mark.asyncio
async def test_sqlite_query_only_is_reset_after_a_failure():
    connection = FakeConnection(dialect="sqlite", execute_error=RuntimeError("boom"))

    with pytest.raises(QueryExecutionFailed):
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert connection.statements[-1] == "PRAGMA query_only = OFF"
    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_sqlite_read_write_mode_skips_query_only():
    connection = FakeConnection(dialect="sqlite")
    await BoundedReadExecutor(FakeEngine(connection), read_only=False).execute(QUERY)

    assert connection.statements == [(QUERY.sql, ("u42",))]


@pytest.mark.asyncio
async def test_dialect_without_read_only_support_is_refused():
    connection = FakeConnection(dialect="mysql")
    engine = FakeEngine(connection)

    with pytest.raises(ReadOnlyNotEnforceable):
        await BoundedReadExecutor(engine).execute(QUERY)

    assert engine.connects == 0
    assert connection.calls == []


@pytest.mark.asyncio
async def test_empty_result_is_an_empty_list():
    connection = FakeConnection(rows=[])
    assert await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY) == []


@pytest.mark.asyncio
async def test_concurrent_executions_use_separate_connections():
    engine = FakeEngine()
    connections = [FakeConnection(), FakeConnection()]

    async def connect():
        engine.connects += 1
        return connections[engine.connects - 1]

    engine.connect = connect
    executor = BoundedReadExecutor(engine)

    results = await asyncio.gather(executor.execute(QUERY), executor.execute(QUERY))

    assert results == [ROWS, ROWS]
    for connection in connections:
        assert connection.calls == ["begin", "commit", "close"]


# =========================
# Failure paths
# =========================
@pytest.mark.asyncio
async def test_execution_error_rolls_back_and_wraps_original():
    original = RuntimeError('relation "missing" does not exist')
    connection = FakeConnection(execute_error=original)

    with pytest.raises(QueryExecutionFailed) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is original
    assert exc_info.value.__cause__ is original
    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_server_side_timeout_is_classified():
    timeout = Exception("canceling statement due to statement timeout")
    timeout.orig = SimpleNamespace(sqlstate="57014")
    connection = FakeConnection(execute_error=timeout)

    with pytest.raises(StatementTimeoutExceeded) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is timeout
    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_client_timer_times_out_slow_query():
    connection = FakeConnection(dialect="sqlite", delay=1)
    executor = BoundedReadExecutor(FakeEngine(connection), statement_timeout_ms=20)

    with pytest.raises(StatementTimeoutExceeded):
        await executor.execute(QUERY)

    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_rollback_failure_keeps_both_errors():
    original = RuntimeError("boom")
    rollback_error = RuntimeError("connection lost")
    connection = FakeConnection(execute_error=original, rollback_error=rollback_error)

    with pytest.raises(TransactionRollbackFailed) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is rollback_error
    assert exc_info.value.original is original
    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_commit_failure_rolls_back():
    commit_error = RuntimeError("commit refused")
    connection = FakeConnection(commit_error=commit_error)

    with pytest.raises(TransactionCommitFailed) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is commit_error
    assert connection.calls == ["begin", "commit", "rollback", "close"]


@pytest.mark.asyncio
async def test_close_failure_does_not_hide_the_query_failure():
    original = RuntimeError("boom")
    connection = FakeConnection(
        execute_error=original, close_error=RuntimeError("socket closed")
    )

    with pytest.raises(QueryExecutionFailed) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is original
    assert connection.calls == ["begin", "rollback", "close"]


@pytest.mark.asyncio
async def test_close_failure_after_success_is_reported():
    close_error = RuntimeError("socket closed")
    connection = FakeConnection(close_error=close_error)

    with pytest.raises(ConnectionReleaseFailed) as exc_info:
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert exc_info.value.underlying is close_error
    assert connection.calls == ["begin", "commit", "close"]


@pytest.mark.asyncio
async def test_connection_that_cannot_be_reset_is_invalidated():
    connection = FakeConnection(dialect="sqlite", restore_error=RuntimeError("locked"))

    with pytest.raises(ConnectionReleaseFailed):
        await BoundedReadExecutor(FakeEngine(connection)).execute(QUERY)

    assert connection.calls == ["begin", "commit", "invalidate", "close"]


@pytest.mark.asyncio
async def test_connection_failure():
    pool_error = RuntimeError("pool exhausted")
    engine = FakeEngine(connect_error=pool_error)

    with pytest.raises(ConnectionAcquisitionFailed) as exc_info:
        await BoundedReadExecutor(engine).execute(QUERY)

    assert exc_info.value.underlying is pool_error
    assert exc_info.value.to_dict()["code"] == "connection_acquisition_failed"


def test_timeout_must_be_positive():
    with pytest.raises(ValueError):
        BoundedReadExecutor(FakeEngine(), statement_timeout_ms=0)


def test_is_statement_timeout():
    assert is_statement_timeout(asyncio.TimeoutError())
    assert not is_statement_timeout(RuntimeError("other"))
