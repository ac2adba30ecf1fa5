"""Boolean filter expressions over article records.

A filter is a small query language::

    category:cs.AI and (title:"neural network" or author:Smith) -is:seen

Terms are ``field:value`` pairs, the keywords ``bookmarked``, ``seen``,
``true`` and ``false``, or bare words searched in the title, abstract and
note. Terms are combined with ``and``/``&&`` (also implied by adjacency),
``or``/``||`` and ``not``/``!``/``-``; ``not`` binds tightest, then ``and``,
then ``or``. Keywords are case-insensitive.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, timezone
from enum import Enum
from typing import List, Optional, Tuple

from .errors import FilterSyntaxError
from .models import ArticleRecord, parse_arxiv_id

logger = logging.getLogger(__name__)

_FIELD_ALIASES = {
    "category": "category",
    "cat": "category",
    "primary": "primary",
    "primary_category": "primary",
    "id": "id",
    "title": "title",
    "abstract": "abstract",
    "author": "author",
    "comments": "comments",
    "journal": "journal",
    "journal_ref": "journal",
    "acm": "acm",
    "acm_class": "acm",
    "msc": "msc",
    "msc_class": "msc",
    "note": "note",
    "notes": "note",
    "any": "any",
    "submitted_after": "submitted_after",
    "seen_after": "seen_after",
    "is": "is",
}

_IS_VALUES = {"bookmarked", "seen", "published"}
_KEYWORDS = {"bookmarked", "seen", "true", "false"}
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ExprKind(Enum):
    TRUE = "true"
    FALSE = "false"
    FIELD = "field"
    TEXT = "text"
    AND = "and"
    OR = "or"
    NOT = "not"


@dataclass(frozen=True)
class FilterExpression:
    """Immutable node of a compiled filter."""

    kind: ExprKind
    field: str = ""
    value: str = ""
    children: Tuple["FilterExpression", ...] = ()

    def matches(self, record: ArticleRecord) -> bool:
        return evaluate(self, record)

    def __str__(self) -> str:
        if self.kind in (ExprKind.TRUE, ExprKind.FALSE):
            return self.kind.value
        if self.kind == ExprKind.FIELD:
            return f"{self.field}:{self.value!r}"
        if self.kind == ExprKind.TEXT:
            return repr(self.value)
        if self.kind == ExprKind.NOT:
            return f"not {self.children[0]}"
        joiner = f" {self.kind.value} "
        return "(" + joiner.join(str(c) for c in self.children) + ")"


TRUE = FilterExpression(ExprKind.TRUE)
FALSE = FilterExpression(ExprKind.FALSE)


# --- tokenizer ---------------------------------------------------------------

@dataclass
class _Token:
    kind: str  # "(", ")", "not", "and", "or", "field", "word", "keyword"
    start: int
    text: str = ""
    field: str = ""


def _read_quoted(text: str, pos: int) -> Tuple[str, int]:
    """Read a quoted string starting at ``pos``; returns (content, end)."""
    quote = text[pos]
    end = text.find(quote, pos + 1)
    if end < 0:
        raise FilterSyntaxError("unterminated quoted string", pos)
    return text[pos + 1:end], end + 1


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        ch = text[pos]
        if ch.isspace():
            pos += 1
        elif ch in "()":
            tokens.append(_Token(ch, pos))
            pos += 1
        elif ch == "!" or ch == "-":
            tokens.append(_Token("not", pos))
            pos += 1
        elif text.startswith("&&", pos):
            tokens.append(_Token("and", pos))
            pos += 2
        elif text.startswith("||", pos):
            tokens.append(_Token("or", pos))
            pos += 2
        elif ch in "\"'":
            start = pos
            value, pos = _read_quoted(text, pos)
            tokens.append(_Token("word", start, value))
        else:
            start = pos
            while pos < length and not text[pos].isspace() and text[pos] not in "()\"'":
                pos += 1
            word = text[start:pos]
            if ":" in word:
                name, value = word.split(":", 1)
                field = _FIELD_ALIASES.get(name.lower())
                if field is None:
                    raise FilterSyntaxError(f"unknown field {name!r}", start)
                if not value and pos < length and text[pos] in "\"'":
                    value, pos = _read_quoted(text, pos)
                if not value:
                    raise FilterSyntaxError(f"missing value for field {name!r}", start)
                tokens.append(_Token("field", start, value, field))
            elif word.lower() in ("and", "or", "not"):
                tokens.append(_Token(word.lower(), start))
            elif word.lower() in _KEYWORDS:
                tokens.append(_Token("keyword", start, word.lower()))
            else:
                tokens.append(_Token("word", start, word))
    return tokens


# --- parser ------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def take(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def error(self, message: str, token: Optional[_Token]) -> FilterSyntaxError:
        if token is None:
            return FilterSyntaxError(f"{message}, found end of input", len(self.text))
        found = token.text if token.kind in ("field", "word", "keyword") else token.kind
        return FilterSyntaxError(f"{message}, found {found!r}", token.start)

    def parse(self) -> FilterExpression:
        if not self.tokens:
            raise FilterSyntaxError("empty filter expression", 0)
        expr = self.parse_or()
        token = self.peek()
        if token is not None:
            raise self.error("expected end of expression", token)
        return expr

    def parse_or(self) -> FilterExpression:
        children = [self.parse_and()]
        while self.peek() is not None and self.peek().kind == "or":
            self.take()
            children.append(self.parse_and())
        return _combine(ExprKind.OR, children)

    def parse_and(self) -> FilterExpression:
        children = [self.parse_unary()]
        while True:
            token = self.peek()
            if token is None:
                break
            if token.kind == "and":
                self.take()
            elif token.kind not in ("not", "(", "field", "word", "keyword"):
                break
            children.append(self.parse_unary())
        return _combine(ExprKind.AND, children)

    def parse_unary(self) -> FilterExpression:
        token = self.peek()
        if token is not None and token.kind == "not":
            self.take()
            return FilterExpression(ExprKind.NOT, children=(self.parse_unary(),))
        return self.parse_atom()

    def parse_atom(self) -> FilterExpression:
        token = self.peek()
        if token is None:
            raise self.error("expected a term", None)
        if token.kind == "(":
            self.take()
            expr = self.parse_or()
            closing = self.peek()
            if closing is None or closing.kind != ")":
                raise self.error("expected ')'", closing)
            self.take()
            return expr
        if token.kind == "field":
            self.take()
            return _field_node(token)
        if token.kind == "keyword":
            self.take()
            if token.text == "true":
                return TRUE
            if token.text == "false":
                return FALSE
            return FilterExpression(ExprKind.FIELD, "is", token.text)
        if token.kind == "word":
            self.take()
            return FilterExpression(ExprKind.TEXT, value=token.text)
        raise self.error("expected a term", token)


def _combine(kind: ExprKind, children: List[FilterExpression]) -> FilterExpression:
    if len(children) == 1:
        return children[0]
    flat: List[FilterExpression] = []
    for child in children:
        flat.extend(child.children if child.kind == kind else (child,))
    return FilterExpression(kind, children=tuple(flat))


def _field_node(token: _Token) -> FilterExpression:
    field, value = token.field, token.text
    if field == "id":
        # id:a,b,c matches any of the listed articles
        nodes = []
        for part in value.split(","):
            try:
                article_id, _ = parse_arxiv_id(part.strip())
            except ValueError as e:
                raise FilterSyntaxError(str(e), token.start) from e
            nodes.append(FilterExpression(ExprKind.FIELD, field, article_id))
        return _combine(ExprKind.OR, nodes)
    elif field in ("submitted_after", "seen_after"):
        if not _DATE_RE.match(value):
            raise FilterSyntaxError(f"expected a date YYYY-MM-DD for {field}, got {value!r}", token.start)
        try:
            date.fromisoformat(value)
        except ValueError as e:
            raise FilterSyntaxError(f"invalid date {value!r}", token.start) from e
    elif field == "is":
        value = value.lower()
        if value not in _IS_VALUES:
            raise FilterSyntaxError(
                f"expected one of {', '.join(sorted(_IS_VALUES))} after is:, got {value!r}",
                token.start,
            )
    return FilterExpression(ExprKind.FIELD, field, value)


def compile_filter(text: str) -> FilterExpression:
    """
    Compile a filter expression.

    Args:
        text: Filter source, e.g. ``category:math.NT -seen``

    Returns:
        The compiled FilterExpression

    Raises:
        FilterSyntaxError: if the expression is malformed
    """
    expr = _Parser(text).parse()
    logger.debug(f"Compiled filter {text!r} -> {expr}")
    return expr


# --- evaluation --------------------------------------------------------------

def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.lower() in haystack.lower()


def _submitted_date(record: ArticleRecord) -> str:
    submitted = record.first_version.submitted
    if submitted.tzinfo is not None:
        submitted = submitted.astimezone(timezone.utc)
    return submitted.date().isoformat()


def _match_field(field: str, value: str, record: ArticleRecord) -> bool:
    if field == "category":
        return value in record.categories
    if field == "primary":
        return record.primary_category == value
    if field == "id":
        return record.id == value
    if field == "title":
        return _contains(record.title, value)
    if field == "abstract":
        return _contains(record.abstract, value)
    if field == "author":
        return any(_contains(name, value) for name in record.authors)
    if field == "comments":
        return _contains(record.comments, value)
    if field == "journal":
        return _contains(record.journal_ref, value)
    if field == "acm":
        return _contains(record.acm_classes, value)
    if field == "msc":
        return _contains(record.msc_classes, value)
    if field == "note":
        return _contains(record.note, value)
    if field == "any":
        return (
            value in record.categories
            or any(_contains(name, value) for name in record.authors)
            or any(
                _contains(text, value)
                for text in (
                    record.title,
                    record.abstract,
                    record.comments,
                    record.journal_ref,
                    record.acm_classes,
                    record.msc_classes,
                    record.note,
                )
            )
        )
    if field == "submitted_after":
        return _submitted_date(record) >= value
    if field == "seen_after":
        first_seen = record.first_version.first_seen
        return bool(first_seen) and first_seen >= value
    if field == "is":
        if value == "bookmarked":
            return record.bookmarked
        if value == "seen":
            return record.is_seen
        return bool(record.journal_ref)
    return False


def evaluate(expr: FilterExpression, record: ArticleRecord) -> bool:
    """Evaluate a compiled filter against one record."""
    kind = expr.kind
    if kind == ExprKind.TRUE:
        return True
    if kind == ExprKind.FALSE:
        return False
    if kind == ExprKind.AND:
        return all(evaluate(child, record) for child in expr.children)
    if kind == ExprKind.OR:
        return any(evaluate(child, record) for child in expr.children)
    if kind == ExprKind.NOT:
        return not evaluate(expr.children[0], record)
    if kind == ExprKind.TEXT:
        return any(_contains(text, expr.value) for text in (record.title, record.abstract, record.note))
    return _match_field(expr.field, expr.value, record)
