"""
Predicate expressions over entity fields.

A predicate is a small tree (:class:`Compare`, :class:`And`, :class:`Or`,
:class:`Not`, :data:`TRUE`) rather than a raw WHERE string.  Trees compile
to parameterised SQL for the store and can also be evaluated directly
against a :class:`~codegraph_kb.models.CodeEntity`.

:func:`parse_predicate` accepts the textual form used by the CLI::

    name ~ '^parse' AND NOT file_path contains 'vendor'
    entity_kind = function AND (complexity_score >= 10 OR is_public = false)
"""

from __future__ import annotations

import fnmatch
import re
from functools import lru_cache
from typing import Any, Iterable, Optional, Union

from .errors import QueryError

# ---------------------------------------------------------------------------
# Fields and operators
# ---------------------------------------------------------------------------

TEXT_FIELDS = frozenset({
    "entity_id", "name", "qualified_name", "file_path", "entity_kind",
    "language", "signature", "body_text", "parent_name",
})
INT_FIELDS = frozenset({"line_start", "line_end", "complexity_score", "token_count"})
BOOL_FIELDS = frozenset({"is_public", "is_test"})
FIELDS = TEXT_FIELDS | INT_FIELDS | BOOL_FIELDS

OPERATORS = ("=", "!=", "~", "contains", "glob", "<", "<=", ">", ">=")
_ORDERING_OPS = frozenset({"<", "<=", ">", ">="})
_TEXT_ONLY_OPS = frozenset({"~", "contains", "glob"})


@lru_cache(maxsize=256)
def _compile_regex(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def sql_regexp(pattern: str, value: Any) -> bool:
    """SQLite ``REGEXP`` implementation (``value REGEXP pattern``)."""
    if value is None:
        return False
    return _compile_regex(pattern).search(str(value)) is not None


def register_sql_functions(conn) -> None:
    """Register the functions compiled predicates rely on."""
    conn.create_function("REGEXP", 2, sql_regexp, deterministic=True)


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------

class Predicate:
    """Base class of the predicate tree."""

    def fields(self) -> set[str]:
        return set()

    def to_sql(self) -> tuple[str, list[Any]]:
        raise NotImplementedError

    def evaluate(self, entity: Any) -> bool:
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "Predicate":
        return And(self, other)

    def __or__(self, other: "Predicate") -> "Predicate":
        return Or(self, other)

    def __invert__(self) -> "Predicate":
        return Not(self)


class _TruePredicate(Predicate):
    def to_sql(self) -> tuple[str, list[Any]]:
        return "1", []

    def evaluate(self, entity: Any) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _TruePredicate)

    def __hash__(self) -> int:
        return hash("TRUE")

    def __repr__(self) -> str:
        return "TRUE"

    __str__ = __repr__


TRUE: Predicate = _TruePredicate()


def _coerce(field: str, value: Any) -> Any:
    if field in BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        raise QueryError(f"{field} expects a boolean, got {value!r}")
    if field in INT_FIELDS:
        if isinstance(value, bool):
            raise QueryError(f"{field} expects an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise QueryError(f"{field} expects an integer, got {value!r}") from None
    return str(value)


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class Compare(Predicate):
    """``field op value``."""

    __slots__ = ("field", "op", "value")

    def __init__(self, field: str, op: str, value: Any) -> None:
        if field not in FIELDS:
            raise QueryError(f"unknown field {field!r}; expected one of {sorted(FIELDS)}")
        if op not in OPERATORS:
            raise QueryError(f"unknown operator {op!r}; expected one of {list(OPERATORS)}")
        if op in _TEXT_ONLY_OPS and field not in TEXT_FIELDS:
            raise QueryError(f"operator {op!r} needs a text field, not {field!r}")
        if op in _ORDERING_OPS and field in BOOL_FIELDS:
            raise QueryError(f"operator {op!r} is not defined for {field!r}")
        value = _coerce(field, value)
        if op == "~":
            try:
                _compile_regex(value)
            except re.error as e:
                raise QueryError(f"invalid regular expression {value!r}: {e}") from None
        self.field = field
        self.op = op
        self.value = value

    def fields(self) -> set[str]:
        return {self.field}

    def to_sql(self) -> tuple[str, list[Any]]:
        # Every clause yields 0/1, never NULL, so NOT agrees with evaluate().
        col, op, val = self.field, self.op, self.value
        if op == "=":
            return f"{col} IS ?", [val]
        if op == "!=":
            return f"{col} IS NOT ?", [val]
        if op == "~":
            expr = f"{col} REGEXP ?"
        elif op == "contains":
            expr = f"instr({col}, ?) > 0"
        elif op == "glob":
            expr = f"{col} GLOB ?"
        else:
            expr = f"{col} {op} ?"
        return f"({col} IS NOT NULL AND {expr})", [val]

    def evaluate(self, entity: Any) -> bool:
        actual = getattr(entity, self.field, None)
        op, val = self.op, self.value
        if op == "=":
            return actual == val
        if op == "!=":
            return actual != val
        if actual is None:
            return False
        if op == "~":
            return _compile_regex(val).search(str(actual)) is not None
        if op == "contains":
            return val in str(actual)
        if op == "glob":
            return fnmatch.fnmatchcase(str(actual), val)
        if op == "<":
            return actual < val
        if op == "<=":
            return actual <= val
        if op == ">":
            return actual > val
        return actual >= val

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Compare)
            and (self.field, self.op, self.value) == (other.field, other.op, other.value)
        )

    def __hash__(self) -> int:
        return hash((self.field, self.op, self.value))

    def __repr__(self) -> str:
        return f"Compare({self.field!r}, {self.op!r}, {self.value!r})"

    def __str__(self) -> str:
        return f"{self.field} {self.op} {_quote(self.value)}"


class _Junction(Predicate):
    keyword = ""

    def __init__(self, *parts: Predicate) -> None:
        if not parts:
            raise QueryError(f"{self.keyword} needs at least one operand")
        for p in parts:
            if not isinstance(p, Predicate):
                raise QueryError(f"{self.keyword} operands must be predicates, got {p!r}")
        self.parts: tuple[Predicate, ...] = tuple(parts)

    def fields(self) -> set[str]:
        out: set[str] = set()
        for p in self.parts:
            out |= p.fields()
        return out

    def to_sql(self) -> tuple[str, list[Any]]:
        clauses, params = [], []
        for p in self.parts:
            sql, ps = p.to_sql()
            clauses.append(f"({sql})")
            params.extend(ps)
        return f" {self.keyword} ".join(clauses), params

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.parts == other.parts  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((self.keyword, self.parts))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(repr(p) for p in self.parts)})"

    def __str__(self) -> str:
        rendered = [
            f"({p})" if isinstance(p, _Junction) else str(p) for p in self.parts
        ]
        return f" {self.keyword} ".join(rendered)


class And(_Junction):
    keyword = "AND"

    def evaluate(self, entity: Any) -> bool:
        return all(p.evaluate(entity) for p in self.parts)


class Or(_Junction):
    keyword = "OR"

    def evaluate(self, entity: Any) -> bool:
        return any(p.evaluate(entity) for p in self.parts)


class Not(Predicate):
    def __init__(self, part: Predicate) -> None:
        if not isinstance(part, Predicate):
            raise QueryError(f"NOT operand must be a predicate, got {part!r}")
        self.part = part

    def fields(self) -> set[str]:
        return self.part.fields()

    def to_sql(self) -> tuple[str, list[Any]]:
        sql, params = self.part.to_sql()
        return f"NOT ({sql})", params

    def evaluate(self, entity: Any) -> bool:
        return not self.part.evaluate(entity)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Not) and self.part == other.part

    def __hash__(self) -> int:
        return hash(("NOT", self.part))

    def __repr__(self) -> str:
        return f"Not({self.part!r})"

    def __str__(self) -> str:
        inner = f"({self.part})" if isinstance(self.part, _Junction) else str(self.part)
        return f"NOT {inner}"


# ---------------------------------------------------------------------------
# Text parser
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<lparen>\() |
        (?P<rparen>\)) |
        (?P<op>!=|<=|>=|=|~|<|>) |
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*") |
        (?P<number>-?\d+)(?![\w.]) |
        (?P<word>[^\s()'"=!<>~]+)
    )
""", re.X)

_KEYWORDS = {"and": "AND", "or": "OR", "not": "NOT", "true": "TRUE",
             "contains": "contains", "glob": "glob"}


def _tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise QueryError(f"cannot parse predicate near {text[pos:pos + 20]!r}")
        pos = m.end()
        kind = m.lastgroup
        raw = m.group(kind)
        if kind == "string":
            tokens.append(("value", re.sub(r"\\(['\"\\])", r"\1", raw[1:-1])))
        elif kind == "number":
            tokens.append(("value", int(raw)))
        elif kind == "word":
            keyword = _KEYWORDS.get(raw.lower())
            if keyword in ("contains", "glob"):
                tokens.append(("op", keyword))
            elif keyword is not None:
                tokens.append((keyword, raw))
            else:
                tokens.append(("word", raw))
        else:
            tokens.append((kind, raw))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, Any]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def take(self, kind: Optional[str] = None) -> tuple[str, Any]:
        if self.pos >= len(self.tokens):
            raise QueryError("unexpected end of predicate")
        tok = self.tokens[self.pos]
        if kind is not None and tok[0] != kind:
            raise QueryError(f"expected {kind}, got {tok[1]!r}")
        self.pos += 1
        return tok

    def parse(self) -> Predicate:
        pred = self.parse_or()
        if self.pos != len(self.tokens):
            raise QueryError(f"unexpected token {self.tokens[self.pos][1]!r}")
        return pred

    def parse_or(self) -> Predicate:
        parts = [self.parse_and()]
        while self.peek() == "OR":
            self.take()
            parts.append(self.parse_and())
        return parts[0] if len(parts) == 1 else Or(*parts)

    def parse_and(self) -> Predicate:
        parts = [self.parse_not()]
        while self.peek() == "AND":
            self.take()
            parts.append(self.parse_not())
        return parts[0] if len(parts) == 1 else And(*parts)

    def parse_not(self) -> Predicate:
        if self.peek() == "NOT":
            self.take()
            return Not(self.parse_not())
        return self.parse_atom()

    def parse_atom(self) -> Predicate:
        kind = self.peek()
        if kind == "lparen":
            self.take()
            pred = self.parse_or()
            self.take("rparen")
            return pred
        if kind == "TRUE":
            self.take()
            return TRUE
        _, field = self.take("word")
        _, op = self.take("op")
        vkind, value = self.take()
        if vkind not in ("value", "word", "TRUE"):
            raise QueryError(f"expected a value after {field} {op}, got {value!r}")
        return Compare(field, op, value)


def parse_predicate(text: str) -> Predicate:
    """
    Parse the textual predicate syntax into a tree.

    Raises
    ------
    QueryError
        On syntax errors, unknown fields or operators, or bad regexes.
    """
    if not text or not text.strip():
        return TRUE
    return _Parser(_tokenize(text)).parse()


PredicateLike = Union[Predicate, str, dict, None]


def as_predicate(obj: PredicateLike) -> Predicate:
    """
    Normalise caller input: None → TRUE, text → parsed, dict → AND of
    equalities, predicates pass through.
    """
    if obj is None:
        return TRUE
    if isinstance(obj, Predicate):
        return obj
    if isinstance(obj, str):
        return parse_predicate(obj)
    if isinstance(obj, dict):
        parts = [Compare(k, "=", v) for k, v in sorted(obj.items())]
        if not parts:
            return TRUE
        return parts[0] if len(parts) == 1 else And(*parts)
    raise QueryError(f"cannot build a predicate from {type(obj).__name__}")


def all_of(preds: Iterable[Predicate]) -> Predicate:
    parts = [p for p in preds if p is not TRUE]
    if not parts:
        return TRUE
    return parts[0] if len(parts) == 1 else And(*parts)
