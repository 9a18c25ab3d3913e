"""Orchestration layer for the SQL agent.

Flow:
1. Validate SQL safety (QueryValidator -> ApprovedQuery)
2. Execute read-only query (BoundedReadExecutor -> rows)

Question parsing and SQL generation happen upstream; whatever they produce is
treated as untrusted text here.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import settings
from app.core.sql_gate.executor import BoundedReadExecutor
from app.core.sql_gate.validator import ApprovedQuery, GrammarConfig, QueryValidator

logger = logging.getLogger(__name__)


@dataclass
class SqlAnswer:
    query: ApprovedQuery
    rows: List[Dict[str, Any]] = field(default_factory=list)


def build_validator(paramstyle: str = "qmark") -> QueryValidator:
    """Validator wired to the configured grammar and the driver's marker style."""
    return QueryValidator(GrammarConfig.from_settings(settings, paramstyle=paramstyle))


def build_executor(engine: AsyncEngine) -> BoundedReadExecutor:
    return BoundedReadExecutor(
        engine, statement_timeout_ms=settings.SQL_STATEMENT_TIMEOUT_MS
    )


async def answer_query(raw_sql: str, tenant_id: str, engine: AsyncEngine) -> SqlAnswer:
    """
    Validate `raw_sql` for `tenant_id`, then run it.

    Rejections and execution failures propagate unchanged; nothing is retried.
    """
    validator = build_validator(engine.dialect.paramstyle)
    approved = validator.validate(raw_sql, tenant_id)
    logger.info(f"[User {tenant_id}] approved query: {approved.sql}")

    rows = await build_executor(engine).execute(approved)
    return SqlAnswer(query=approved, rows=rows)
