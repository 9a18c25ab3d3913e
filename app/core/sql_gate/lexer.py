import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional

from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import TokenError
from sqlglot.tokens import TokenType


# -----------------------------------------------------------------------------
# LEXER MODULE
# Purpose: turn untrusted SQL text into a flat token list so every safety check
# works on tokens instead of raw substrings (string literals, quoted identifiers
# and comments can never be mistaken for keywords).
# Scanning is done by the sqlglot PostgreSQL tokenizer; this module only maps
# its tokens back onto the source text and into the few kinds the gate needs.
# -----------------------------------------------------------------------------


class TokenKind(str, Enum):
    KEYWORD = "keyword"
    IDENTIFIER = "identifier"
    QUOTED_IDENTIFIER = "quoted_identifier"
    STRING = "string"
    NUMBER = "number"
    PARAMETER = "parameter"
    OPERATOR = "operator"
    PUNCTUATION = "punctuation"
    COMMENT = "comment"


COMPARISON_CHARS = "<>=!"

_DIALECT = Dialect.get_or_raise("postgres")
_MISSING_DELIMITER = re.compile(r"Missing (\S+) from")
_DOLLAR_PARAM = re.compile(r"\$\d+")
_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")


class UnterminatedLiteral(ValueError):
    """A quote, quoted identifier or dollar quote was never closed."""

    def __init__(self, delimiter: Optional[str], message: str):
        super().__init__(message)
        self.delimiter = delimiter


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    spaced: bool = False  # whitespace preceded this token in the source

    @property
    def upper(self) -> str:
        return self.text.upper()

    @property
    def is_word(self) -> bool:
        return self.kind in (TokenKind.KEYWORD, TokenKind.IDENTIFIER)

    def matches(self, *words: str) -> bool:
        """Case-insensitive match of a bare word against any of `words`."""
        return self.is_word and self.upper in words

    def is_punct(self, char: str) -> bool:
        return self.kind == TokenKind.PUNCTUATION and self.text == char

    @property
    def name(self) -> str:
        """Lower-cased identifier name with quoting removed."""
        if self.kind == TokenKind.QUOTED_IDENTIFIER:
            quote = self.text[0]
            return self.text[1:-1].replace(quote * 2, quote).lower()
        return self.text.lower()

    def with_text(self, text: str) -> "Token":
        return replace(self, text=text)

    def with_spacing(self, spaced: bool) -> "Token":
        return replace(self, spaced=spaced)


def _classify(token_type: TokenType, raw: str) -> TokenKind:
    if token_type.name.endswith("STRING") and raw[-1] in "'$":
        return TokenKind.STRING
    if token_type == TokenType.IDENTIFIER:
        return TokenKind.QUOTED_IDENTIFIER
    if token_type == TokenType.NUMBER:
        return TokenKind.NUMBER
    if token_type in (TokenType.PLACEHOLDER, TokenType.PARAMETER):
        return TokenKind.PARAMETER
    if raw[0].isalpha() or raw[0] == "_":
        return TokenKind.IDENTIFIER if token_type == TokenType.VAR else TokenKind.KEYWORD
    if raw == "::" or all(char in COMPARISON_CHARS for char in raw):
        return TokenKind.OPERATOR
    return TokenKind.PUNCTUATION


def _scan(text: str):
    try:
        return _DIALECT.tokenize(text)
    except TokenError as error:
        # sqlglot wraps the scanner error; the delimiter is named in the cause
        for candidate in (error.__cause__, error):
            match = _MISSING_DELIMITER.search(str(candidate or ""))
            if match:
                raise UnterminatedLiteral(match.group(1), str(candidate)) from error
        raise UnterminatedLiteral(None, str(error)) from error


def _merge_parameters(tokens: List[Token]) -> List[Token]:
    """Join `:name` and `$n`, which sqlglot emits as two tokens, into one."""
    merged: List[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if (
            token.text in (":", "$")
            and following is not None
            and not following.spaced
            and _NAME.fullmatch(following.text)
            and (token.text == ":" or following.text.isdigit())
        ):
            merged.append(Token(TokenKind.PARAMETER, token.text + following.text, token.spaced))
            index += 2
            continue
        if _DOLLAR_PARAM.fullmatch(token.text):
            token = replace(token, kind=TokenKind.PARAMETER)
        merged.append(token)
        index += 1
    return merged


def tokenize(text: str) -> List[Token]:
    """
    Split SQL text into tokens.

    Comments become COMMENT tokens so the caller can reject them. Multi-word
    keywords such as GROUP BY are split back into single words.

    Raises:
        UnterminatedLiteral: A string, quoted identifier or dollar quote is open.

    Example:
        tokenize("select 'a;b' from t") -> [select, 'a;b', from, t]
    """
    tokens: List[Token] = []
    position = 0

    def take_gap(end: int) -> bool:
        gap = text[position:end]
        if gap.strip():
            tokens.append(Token(TokenKind.COMMENT, gap.strip(), bool(position)))
        return bool(gap)

    for scanned in _scan(text):
        spaced = take_gap(scanned.start)
        raw = text[scanned.start : scanned.end + 1]
        position = scanned.end + 1

        kind = _classify(scanned.token_type, raw)
        if kind in (TokenKind.KEYWORD, TokenKind.IDENTIFIER) and len(raw.split()) > 1:
            for offset, word in enumerate(raw.split()):
                tokens.append(Token(TokenKind.KEYWORD, word, spaced or offset > 0))
            continue
        tokens.append(Token(kind, raw, spaced))

    take_gap(len(text))
    return _merge_parameters(tokens)


def render(tokens: List[Token]) -> str:
    """Join tokens back into SQL, one space wherever the source had whitespace."""
    parts = []
    for index, token in enumerate(tokens):
        if index and token.spaced:
            parts.append(" ")
        parts.append(token.text)
    return "".join(parts)
