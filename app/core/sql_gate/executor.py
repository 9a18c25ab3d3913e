import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.core.sql_gate.errors import (
    ConnectionAcquisitionFailed,
    ConnectionReleaseFailed,
    QueryExecutionFailed,
    ReadOnlyNotEnforceable,
    StatementTimeoutExceeded,
    TransactionCommitFailed,
    TransactionRollbackFailed,
)
from app.core.sql_gate.validator import ApprovedQuery


# -----------------------------------------------------------------------------
# EXECUTOR MODULE
# Purpose: run one ApprovedQuery inside a short, read-only, timeout-bounded
# transaction and always roll back and release on failure
# Why: a slow or failing query must never hold a pooled connection
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# SQLSTATE raised by PostgreSQL when statement_timeout fires
QUERY_CANCELED_SQLSTATE = "57014"

# SQLite has no read-only transactions; query_only is per connection
SQLITE_QUERY_ONLY_ON = "PRAGMA query_only = ON"
SQLITE_QUERY_ONLY_OFF = "PRAGMA query_only = OFF"

READ_ONLY_DIALECTS = ("postgresql", "sqlite")


def is_statement_timeout(error: BaseException) -> bool:
    """True for a client-side timer expiry or an engine-side statement timeout."""
    if isinstance(error, asyncio.TimeoutError):
        return True
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == QUERY_CANCELED_SQLSTATE


class BoundedReadExecutor:
    """
    Executes validator output only. There is no validation here and no retry loop.

    Per call: Idle -> Connecting -> InTransaction -> Committing -> Done,
    or InTransaction -> Failed -> RollingBack -> Done.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        statement_timeout_ms: int = 3000,
        read_only: bool = True,
    ):
        if statement_timeout_ms <= 0:
            raise ValueError("statement_timeout_ms must be positive")
        self.engine = engine
        self.statement_timeout_ms = statement_timeout_ms
        self.read_only = read_only

    async def execute(self, query: ApprovedQuery) -> List[Dict[str, Any]]:
        """
        Run the approved query and return its rows in engine order.

        Raises:
            ReadOnlyNotEnforceable: read_only is set and the engine cannot honour it.
            ConnectionAcquisitionFailed: The pool could not hand out a connection.
            StatementTimeoutExceeded: The statement ran past the timeout.
            QueryExecutionFailed: The engine rejected or failed the statement.
            TransactionCommitFailed: Commit failed after a successful execute.
            TransactionRollbackFailed: Cleanup after a failure failed as well.
            ConnectionReleaseFailed: Everything else worked but the connection
                could not be handed back.
        """
        dialect = self.engine.dialect.name
        if self.read_only and dialect not in READ_ONLY_DIALECTS:
            raise ReadOnlyNotEnforceable(
                f"Cannot run a read-only transaction on '{dialect}'"
            )

        try:
            connection = await self.engine.connect()
        except Exception as error:
            logger.error(f"Could not acquire a database connection: {error}")
            raise ConnectionAcquisitionFailed(
                "Could not acquire a database connection", underlying=error
            ) from error

        restore = SQLITE_QUERY_ONLY_OFF if self._uses_query_only(connection) else None
        try:
            rows = await self._run_in_transaction(connection, query)
        except BaseException:
            # The failure in flight wins over any release error
            await self._release(connection, restore, failing=True)
            raise
        await self._release(connection, restore, failing=False)
        return rows

    async def _run_in_transaction(
        self, connection: AsyncConnection, query: ApprovedQuery
    ) -> List[Dict[str, Any]]:
        try:
            transaction = await connection.begin()
        except Exception as error:
            logger.error(f"Could not start a transaction: {error}")
            raise QueryExecutionFailed(
                "Could not start a transaction", underlying=error
            ) from error

        try:
            client_timer = await self._apply_session_limits(connection)
            rows = await self._fetch_rows(connection, query, client_timer)
        except Exception as error:
            await self._rollback(transaction, error)
            if is_statement_timeout(error):
                logger.warning(
                    f"Statement timed out after {self.statement_timeout_ms} ms"
                )
                raise StatementTimeoutExceeded(
                    f"Query exceeded the {self.statement_timeout_ms} ms timeout",
                    underlying=error,
                ) from error
            logger.error(f"Query execution failed: {error}")
            raise QueryExecutionFailed("Query execution failed", underlying=error) from error

        try:
            await transaction.commit()
        except Exception as error:
            logger.error(f"Commit failed: {error}")
            await self._rollback(transaction, error)
            raise TransactionCommitFailed(
                "Could not commit the read transaction", underlying=error
            ) from error

        logger.info(f"Read query returned {len(rows)} rows")
        return rows

    def _uses_query_only(self, connection: AsyncConnection) -> bool:
        return self.read_only and connection.dialect.name == "sqlite"

    async def _apply_session_limits(self, connection: AsyncConnection) -> bool:
        """
        Make the transaction read-only and bound it in time, before the query runs.

        Returns True when the engine has no server-side timeout and the caller
        has to race the query against a client timer instead.
        """
        if connection.dialect.name == "postgresql":
            await connection.exec_driver_sql(
                f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}"
            )
            if self.read_only:
                await connection.exec_driver_sql("SET TRANSACTION READ ONLY")
            return False

        if self._uses_query_only(connection):
            await connection.exec_driver_sql(SQLITE_QUERY_ONLY_ON)
        return True

    async def _fetch_rows(
        self, connection: AsyncConnection, query: ApprovedQuery, client_timer: bool
    ) -> List[Dict[str, Any]]:
        pending = connection.exec_driver_sql(query.sql, tuple(query.params))
        if client_timer:
            result = await asyncio.wait_for(
                pending, timeout=self.statement_timeout_ms / 1000
            )
        else:
            result = await pending
        return [dict(row) for row in result.mappings().all()]

    async def _rollback(self, transaction, cause: BaseException) -> None:
        try:
            await transaction.rollback()
        except Exception as error:
            logger.error(f"Rollback failed after '{cause}': {error}")
            raise TransactionRollbackFailed(
                "Could not roll back the read transaction",
                underlying=error,
                original=cause,
            ) from error

    async def _release(
        self, connection: AsyncConnection, restore: Optional[str], failing: bool
    ) -> None:
        """
        Undo per-connection settings and hand the connection back to the pool.

        A connection whose settings could not be undone is invalidated so the
        pool never reuses it. Errors here are only raised when no earlier
        failure is already propagating.
        """
        try:
            try:
                if restore:
                    await connection.exec_driver_sql(restore)
            except Exception:
                await connection.invalidate()
                raise
            finally:
                await connection.close()
        except Exception as error:
            logger.error(f"Could not release the database connection: {error}")
            if not failing:
                raise ConnectionReleaseFailed(
                    "Could not release the database connection", underlying=error
                ) from error
