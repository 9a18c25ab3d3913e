import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

from app.core.sql_gate.errors import (
    QueryRejected,
    RejectedForbiddenKeyword,
    RejectedLimitClause,
    RejectedMalformedSyntax,
    RejectedMultipleStatements,
    RejectedStatementKind,
    RejectedTenantScope,
)
from app.core.sql_gate.lexer import (
    COMPARISON_CHARS,
    Token,
    TokenKind,
    UnterminatedLiteral,
    render,
    tokenize,
)


# -----------------------------------------------------------------------------
# VALIDATOR MODULE
# Purpose: turn an untrusted SELECT into a read-only, tenant-scoped, bounded
# ApprovedQuery, or reject it with a typed reason
# Why: the executor trusts its input, so every guarantee is made here
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


DEFAULT_FORBIDDEN_KEYWORDS = frozenset(
    {
        "insert", "update", "delete", "alter", "drop", "truncate", "grant",
        "create", "copy", "call", "execute", "function", "sequence", "trigger",
        "vacuum", "analyze", "show", "set", "do", "into",
    }
)

DEFAULT_TENANT_RELATIONS = frozenset({"entries", "categories", "forecasts", "users"})
# users is the tenant table itself: its own id is the tenant identity
DEFAULT_TENANT_COLUMN_OVERRIDES = {"users": "id"}

POSITIONAL_MARKERS = {
    "qmark": "?",
    "numeric": ":1",
    "numeric_dollar": "$1",
    "format": "%s",
    "pyformat": "%s",
}

# Canonicalised to upper case during normalisation
CLAUSE_KEYWORDS = frozenset(
    {
        "SELECT", "FROM", "WHERE", "GROUP", "ORDER", "BY", "HAVING", "LIMIT",
        "OFFSET", "WINDOW", "UNION", "INTERSECT", "EXCEPT", "FETCH",
    }
)
SET_OPERATORS = ("UNION", "INTERSECT", "EXCEPT")
# Clauses that may follow WHERE in a top-level SELECT
TRAILING_CLAUSES = ("GROUP", "HAVING", "WINDOW", "ORDER", "LIMIT", "OFFSET", "FETCH", "FOR")
WHERE_BOUNDARIES = TRAILING_CLAUSES + SET_OPERATORS

DUPLICATE_SENSITIVE = frozenset(
    {"SELECT", "FROM", "WHERE", "GROUP", "ORDER", "BY", "HAVING", "LIMIT", "AND", "OR"}
)
ALLOWED_OPERATORS = frozenset({"=", "<", ">", "<=", ">=", "<>", "!=", "<<", ">>", "::"})

UNTERMINATED_REASONS = {
    "'": "unbalanced_single_quotes",
    '"': "unbalanced_double_quotes",
}


def _column_key(name: str) -> str:
    # user_id, userId and "USERID" all name the tenant column
    return name.replace("_", "").lower()


def _depths(tokens: Sequence[Token]) -> List[int]:
    """Parenthesis depth of every token; "(" and ")" sit at the outer depth."""
    depths = []
    depth = 0
    for token in tokens:
        if token.is_punct(")"):
            depth -= 1
        depths.append(depth)
        if token.is_punct("("):
            depth += 1
    return depths


# =========================
# Configuration / output
# =========================
@dataclass(frozen=True)
class GrammarConfig:
    """
    Immutable grammar tables for the validator.

    Injected instead of module constants so tests can exercise other grammars.
    """

    forbidden_keywords: FrozenSet[str] = DEFAULT_FORBIDDEN_KEYWORDS
    tenant_relations: FrozenSet[str] = DEFAULT_TENANT_RELATIONS
    tenant_column: str = "user_id"
    tenant_column_overrides: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_TENANT_COLUMN_OVERRIDES)
    )
    tenant_marker: str = ":userId"
    max_limit: int = 200
    paramstyle: str = "qmark"

    def __post_init__(self):
        if self.paramstyle not in POSITIONAL_MARKERS:
            raise ValueError(f"Unsupported paramstyle: {self.paramstyle}")
        if self.max_limit < 1:
            raise ValueError("max_limit must be positive")
        if not self.tenant_marker.startswith(":") or len(self.tenant_marker) < 2:
            raise ValueError("tenant_marker must look like ':name'")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(
            self, "forbidden_keywords", frozenset(k.lower() for k in self.forbidden_keywords)
        )
        object.__setattr__(
            self, "tenant_relations", frozenset(r.lower() for r in self.tenant_relations)
        )
        object.__setattr__(
            self,
            "tenant_column_overrides",
            {r.lower(): c for r, c in self.tenant_column_overrides.items()},
        )

    @property
    def positional_marker(self) -> str:
        return POSITIONAL_MARKERS[self.paramstyle]

    def column_for(self, relation: str) -> str:
        """Tenant identity column of a tenant-owned relation."""
        return self.tenant_column_overrides.get(relation.lower(), self.tenant_column)

    @classmethod
    def from_settings(cls, settings, paramstyle: str = "qmark") -> "GrammarConfig":
        return cls(
            tenant_relations=frozenset(settings.SQL_TENANT_RELATIONS),
            tenant_column=settings.SQL_TENANT_COLUMN,
            tenant_column_overrides=dict(settings.SQL_TENANT_COLUMN_OVERRIDES),
            tenant_marker=settings.SQL_TENANT_MARKER,
            max_limit=settings.SQL_MAX_LIMIT,
            paramstyle=paramstyle,
        )


@dataclass(frozen=True)
class ApprovedQuery:
    """The only value the executor accepts. `params` follows marker order."""

    sql: str
    params: Tuple[str, ...] = ()


# =========================
# Validator
# =========================
class QueryValidator:
    """Pure, synchronous and deterministic: same input, byte-identical output."""

    def __init__(self, config: Optional[GrammarConfig] = None):
        self.config = config or GrammarConfig()

    def validate(self, text: str, tenant_id: str) -> ApprovedQuery:
        """
        Classify `text` and rewrite it into an ApprovedQuery.

        Args:
            text: Untrusted SQL statement.
            tenant_id: Identity of the requesting tenant, only ever bound.

        Returns:
            ApprovedQuery with exactly one LIMIT and, when a tenant-owned
            relation is referenced, exactly one tenant predicate.

        Raises:
            QueryRejected: a subclass naming the first failed check.
            ValueError: If tenant_id is not a non-empty string.
        """
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")

        try:
            tokens = self._normalize(text)
            self._check_statement_kind(tokens)
            self._check_single_statement(tokens)
            self._check_forbidden_keywords(tokens)
            self._check_comments(tokens)
            tokens = self._scope_to_tenant(tokens)
            tokens = self._bound_limit(tokens)
            tokens, marker_count = self._translate_markers(tokens)
            self._check_syntax(tokens)
        except QueryRejected as error:
            logger.warning(f"Query rejected [{error.code}]: {error.message}")
            raise

        params = (tenant_id,) if marker_count else ()
        return ApprovedQuery(sql=render(tokens), params=params)

    # ---------------------------------------------------------------- steps

    def _normalize(self, text: str) -> List[Token]:
        try:
            tokens = tokenize(text or "")
        except UnterminatedLiteral as error:
            delimiter = error.delimiter or ""
            if delimiter.startswith("$"):
                reason = "unterminated_dollar_quote"
            else:
                reason = UNTERMINATED_REASONS.get(delimiter, "unterminated_literal")
            raise RejectedMalformedSyntax(reason, "Unclosed quote in SQL query") from error

        return [
            token.with_text(token.upper)
            if token.is_word and token.upper in CLAUSE_KEYWORDS
            else token
            for token in tokens
        ]

    def _check_statement_kind(self, tokens: List[Token]) -> None:
        if not tokens or not tokens[0].matches("SELECT"):
            raise RejectedStatementKind("Only SELECT statements are allowed")

    def _check_single_statement(self, tokens: List[Token]) -> None:
        if any(token.is_punct(";") for token in tokens):
            raise RejectedMultipleStatements(
                "Statement separators are not allowed; send a single statement"
            )

    def _check_forbidden_keywords(self, tokens: List[Token]) -> None:
        for token in tokens:
            if token.is_word and token.text.lower() in self.config.forbidden_keywords:
                raise RejectedForbiddenKeyword(
                    f"Keyword '{token.upper}' is not allowed", keyword=token.text.lower()
                )

    def _check_comments(self, tokens: List[Token]) -> None:
        if any(token.kind == TokenKind.COMMENT for token in tokens):
            raise RejectedMalformedSyntax("comment", "SQL comments are not allowed")

    def _scope_to_tenant(self, tokens: List[Token]) -> List[Token]:
        """
        Make sure the single tenant-owned table of the query is filtered.

        Relations and aliases come from the parsed statement; the rewrite
        itself happens on tokens so the rest of the text stays as written.
        """
        if not any(self._names_tenant_relation(token) for token in tokens):
            return tokens

        tree = self._parse(tokens)
        if not isinstance(tree, exp.Select):
            raise RejectedTenantScope(
                "compound_select",
                "UNION / INTERSECT / EXCEPT are not allowed on tenant-owned tables",
            )

        tables = [
            table
            for table in tree.find_all(exp.Table)
            if table.name.lower() in self.config.tenant_relations
        ]
        if not tables:
            return tokens
        if any(table.find_ancestor(exp.Select) is not tree for table in tables):
            raise RejectedTenantScope(
                "nested_tenant_relation",
                "Tenant-owned tables may only be referenced in the outer query",
            )
        if len(tables) > 1:
            raise RejectedTenantScope(
                "multiple_tenant_relations",
                "Only one tenant-owned table may be referenced per query",
            )

        table = tables[0]
        column = self.config.column_for(table.name)
        depths = _depths(tokens)
        predicates = self._find_tenant_predicates(tokens, column)
        where = self._find_clause(tokens, depths, ("WHERE",))

        if len(predicates) > 1:
            raise RejectedTenantScope(
                "duplicate_tenant_predicate", "Only one tenant predicate is allowed"
            )
        if predicates:
            start, end, qualifier = predicates[0]
            if qualifier and qualifier not in (table.name.lower(), table.alias.lower()):
                raise RejectedTenantScope(
                    "foreign_tenant_predicate",
                    f"The tenant predicate must filter '{table.name}'",
                )
            if where is None or not self._is_top_level_conjunct(
                tokens, depths, where, (start, end)
            ):
                raise RejectedTenantScope(
                    "tenant_predicate_not_conjunctive",
                    "The tenant predicate must be a top-level AND condition of WHERE",
                )
            # Already scoped
            return tokens

        return self._inject_predicate(tokens, depths, where, column, table.alias)

    def _bound_limit(self, tokens: List[Token]) -> List[Token]:
        if any(token.matches("FETCH") for token in tokens):
            raise RejectedLimitClause(
                "fetch_clause", "FETCH is not supported; bound the query with LIMIT"
            )

        max_limit = self.config.max_limit
        limits = [i for i, token in enumerate(tokens) if token.matches("LIMIT")]
        if not limits:
            return tokens + [
                Token(TokenKind.KEYWORD, "LIMIT", spaced=True),
                Token(TokenKind.NUMBER, str(max_limit), spaced=True),
            ]

        if len(limits) > 1:
            raise RejectedLimitClause("multiple_limits", "Only one LIMIT clause is allowed")

        index = limits[0]
        if _depths(tokens)[index] != 0:
            raise RejectedLimitClause(
                "nested_limit", "LIMIT is only allowed on the outer query"
            )

        bound = tokens[index + 1] if index + 1 < len(tokens) else None
        if bound is None or bound.kind != TokenKind.NUMBER or not bound.text.isdigit():
            raise RejectedLimitClause(
                "non_numeric_limit", "LIMIT must be followed by an integer literal"
            )
        if index + 2 < len(tokens) and tokens[index + 2].is_punct(","):
            raise RejectedLimitClause("comma_limit", "Use LIMIT n OFFSET m instead of LIMIT m, n")
        if int(bound.text) > max_limit:
            raise RejectedLimitClause(
                "limit_exceeds_maximum", f"LIMIT may not exceed {max_limit}"
            )
        return tokens

    def _translate_markers(self, tokens: List[Token]) -> Tuple[List[Token], int]:
        positional = self.config.positional_marker
        accepted = (self.config.tenant_marker, positional)
        escape_percent = positional == "%s"

        translated = []
        count = 0
        for token in tokens:
            if token.kind == TokenKind.PARAMETER:
                if token.text not in accepted:
                    raise RejectedMalformedSyntax(
                        "unsupported_parameter",
                        f"Parameter '{token.text}' is not supported",
                    )
                count += 1
                translated.append(token.with_text(positional))
                continue
            # format paramstyles treat a bare % as a placeholder
            if escape_percent and "%" in token.text:
                token = token.with_text(token.text.replace("%", "%%"))
            translated.append(token)

        if count > 1:
            raise RejectedMalformedSyntax(
                "multiple_parameters", "Only a single tenant parameter is supported"
            )
        return translated, count

    def _check_syntax(self, tokens: List[Token]) -> None:
        depth = 0
        for token in tokens:
            if token.is_punct("("):
                depth += 1
            elif token.is_punct(")"):
                depth -= 1
                if depth < 0:
                    break
        if depth != 0:
            raise RejectedMalformedSyntax(
                "unbalanced_parentheses", "Unbalanced parentheses in SQL query"
            )

        for token in tokens:
            if token.kind == TokenKind.OPERATOR and token.text not in ALLOWED_OPERATORS:
                raise RejectedMalformedSyntax(
                    "malformed_operator", f"Malformed operator '{token.text}'"
                )

        for previous, current in zip(tokens, tokens[1:]):
            if (
                previous.is_word
                and current.is_word
                and previous.upper == current.upper
                and previous.upper in DUPLICATE_SENSITIVE
            ):
                raise RejectedMalformedSyntax(
                    "duplicate_keyword", f"Duplicated keyword '{current.upper}'"
                )
            if previous.is_punct(",") and current.is_punct(","):
                raise RejectedMalformedSyntax("double_comma", "Doubled comma in SQL query")
            if self._is_comparison(previous) and self._is_comparison(current):
                raise RejectedMalformedSyntax(
                    "malformed_operator",
                    f"Malformed operator '{previous.text} {current.text}'",
                )

    # -------------------------------------------------------------- helpers

    def _names_tenant_relation(self, token: Token) -> bool:
        return (
            token.kind
            in (TokenKind.IDENTIFIER, TokenKind.KEYWORD, TokenKind.QUOTED_IDENTIFIER)
            and token.name in self.config.tenant_relations
        )

    def _parse(self, tokens: List[Token]) -> exp.Expression:
        try:
            return sqlglot.parse_one(render(tokens), read="postgres")
        except (ParseError, TokenError) as error:
            raise RejectedMalformedSyntax(
                "unparseable", f"Could not parse SQL query: {error}"
            ) from error

    @staticmethod
    def _is_column(token: Token, column: str) -> bool:
        return (
            token.kind
            in (TokenKind.IDENTIFIER, TokenKind.KEYWORD, TokenKind.QUOTED_IDENTIFIER)
            and _column_key(token.name) == _column_key(column)
        )

    @staticmethod
    def _is_comparison(token: Token) -> bool:
        return token.kind == TokenKind.OPERATOR and token.text[0] in COMPARISON_CHARS

    @staticmethod
    def _starts_clause(tokens: List[Token], index: int, words: Sequence[str]) -> bool:
        token = tokens[index]
        if not token.matches(*words):
            return False
        if token.upper in ("GROUP", "ORDER"):
            return index + 1 < len(tokens) and tokens[index + 1].matches("BY")
        return True

    def _find_clause(
        self, tokens: List[Token], depths: List[int], words: Sequence[str], start: int = 0
    ) -> Optional[int]:
        for index in range(start, len(tokens)):
            if depths[index] == 0 and self._starts_clause(tokens, index, words):
                return index
        return None

    def _where_end(self, tokens: List[Token], depths: List[int], where: int) -> int:
        end = self._find_clause(tokens, depths, WHERE_BOUNDARIES, start=where + 1)
        return len(tokens) if end is None else end

    def _find_tenant_predicates(
        self, tokens: List[Token], column: str
    ) -> List[Tuple[int, int, Optional[str]]]:
        """Spans of `[qualifier.]column = <marker>` and their qualifier."""
        markers = (self.config.tenant_marker, self.config.positional_marker)
        spans = []
        for i in range(len(tokens) - 2):
            name, operator, marker = tokens[i], tokens[i + 1], tokens[i + 2]
            if not (
                self._is_column(name, column)
                and operator.kind == TokenKind.OPERATOR
                and operator.text == "="
                and marker.kind == TokenKind.PARAMETER
                and marker.text in markers
            ):
                continue
            start, qualifier = i, None
            if i >= 2 and tokens[i - 1].is_punct(".") and tokens[i - 2].kind in (
                TokenKind.IDENTIFIER,
                TokenKind.KEYWORD,
                TokenKind.QUOTED_IDENTIFIER,
            ):
                start, qualifier = i - 2, tokens[i - 2].name
            spans.append((start, i + 3, qualifier))
        return spans

    @staticmethod
    def _has_top_level_or(tokens, depths, begin: int, end: int) -> bool:
        return any(depths[i] == 0 and tokens[i].matches("OR") for i in range(begin, end))

    @staticmethod
    def _conjuncts(tokens, depths, begin: int, end: int) -> List[Tuple[int, int]]:
        """Split a condition on top-level AND, skipping the AND of BETWEEN x AND y."""
        spans = []
        start = begin
        pending_between = False
        for index in range(begin, end):
            if depths[index] != 0:
                continue
            if tokens[index].matches("BETWEEN"):
                pending_between = True
            elif tokens[index].matches("AND"):
                if pending_between:
                    pending_between = False
                else:
                    spans.append((start, index))
                    start = index + 1
        spans.append((start, end))
        return spans

    def _is_top_level_conjunct(
        self, tokens: List[Token], depths: List[int], where: int, span: Tuple[int, int]
    ) -> bool:
        end = self._where_end(tokens, depths, where)
        if not (where < span[0] and span[1] <= end):
            return False
        if self._has_top_level_or(tokens, depths, where + 1, end):
            return False
        return span in self._conjuncts(tokens, depths, where + 1, end)

    def _inject_predicate(
        self,
        tokens: List[Token],
        depths: List[int],
        where: Optional[int],
        column: str,
        alias: str = "",
    ) -> List[Token]:
        if alias:
            predicate = [
                Token(TokenKind.IDENTIFIER, alias, spaced=True),
                Token(TokenKind.PUNCTUATION, "."),
                Token(TokenKind.IDENTIFIER, column),
            ]
        else:
            predicate = [Token(TokenKind.IDENTIFIER, column, spaced=True)]
        predicate += [
            Token(TokenKind.OPERATOR, "=", spaced=True),
            Token(TokenKind.PARAMETER, self.config.tenant_marker, spaced=True),
        ]

        if where is not None:
            end = self._where_end(tokens, depths, where)
            condition = tokens[where + 1 : end]
            if not condition:
                raise RejectedMalformedSyntax("empty_where", "WHERE has no condition")
            if self._has_top_level_or(tokens, depths, where + 1, end):
                # AND binds tighter than OR: keep the tenant filter outside
                condition = (
                    [Token(TokenKind.PUNCTUATION, "(", spaced=True), condition[0].with_spacing(False)]
                    + condition[1:]
                    + [Token(TokenKind.PUNCTUATION, ")")]
                )
            return (
                tokens[: where + 1]
                + predicate
                + [Token(TokenKind.KEYWORD, "AND", spaced=True)]
                + condition
                + tokens[end:]
            )

        clause = [Token(TokenKind.KEYWORD, "WHERE", spaced=True)] + predicate
        boundary = self._find_clause(tokens, depths, TRAILING_CLAUSES)
        if boundary is None:
            return tokens + clause
        return (
            tokens[:boundary]
            + clause
            + [tokens[boundary].with_spacing(True)]
            + tokens[boundary + 1 :]
        )
