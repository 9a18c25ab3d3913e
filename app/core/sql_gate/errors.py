from typing import Any, Dict, Optional


# =========================
# Base
# =========================
class SqlGateError(Exception):
    """Base error of the SQL gate. Every subclass has a machine-checkable code."""

    code: str = "sql_gate_error"

    def __init__(self, message: str, subreason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subreason = subreason

    def to_dict(self) -> Dict[str, Any]:
        detail = {"code": self.code, "message": self.message}
        if self.subreason:
            detail["subreason"] = self.subreason
        return detail


# =========================
# Validator rejections
# =========================
class QueryRejected(SqlGateError):
    """The statement was not accepted. Deterministic, never retried."""

    code = "query_rejected"


class RejectedStatementKind(QueryRejected):
    code = "statement_kind"


class RejectedForbiddenKeyword(QueryRejected):
    code = "forbidden_keyword"

    def __init__(self, message: str, keyword: str):
        super().__init__(message)
        self.keyword = keyword


class RejectedMultipleStatements(QueryRejected):
    code = "multiple_statements"


class RejectedMalformedSyntax(QueryRejected):
    code = "malformed_syntax"

    def __init__(self, subreason: str, message: str):
        super().__init__(message, subreason=subreason)


class RejectedTenantScope(QueryRejected):
    code = "tenant_scope"

    def __init__(self, subreason: str, message: str):
        super().__init__(message, subreason=subreason)


class RejectedLimitClause(QueryRejected):
    code = "limit_clause"

    def __init__(self, subreason: str, message: str):
        super().__init__(message, subreason=subreason)


# =========================
# Executor failures
# =========================
class ExecutionFailed(SqlGateError):
    """Raised after cleanup; `underlying` is the original error, untouched."""

    code = "execution_failed"

    def __init__(self, message: str, underlying: Optional[BaseException] = None):
        super().__init__(message)
        self.underlying = underlying


class ConnectionAcquisitionFailed(ExecutionFailed):
    code = "connection_acquisition_failed"


class StatementTimeoutExceeded(ExecutionFailed):
    code = "statement_timeout_exceeded"


class QueryExecutionFailed(ExecutionFailed):
    code = "query_execution_failed"


class TransactionCommitFailed(ExecutionFailed):
    code = "transaction_commit_failed"


class TransactionRollbackFailed(ExecutionFailed):
    code = "transaction_rollback_failed"

    def __init__(
        self,
        message: str,
        underlying: Optional[BaseException] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message, underlying)
        # The failure that made the rollback necessary
        self.original = original


class ConnectionReleaseFailed(ExecutionFailed):
    code = "connection_release_failed"


class ReadOnlyNotEnforceable(ExecutionFailed):
    """The engine offers no way to make the transaction read-only."""

    code = "read_only_not_enforceable"
