"""Abstract query model and the shared predicate evaluator.

A query is a predicate tree plus optional sort, projection and
pagination, expressed independently of any provider syntax. The same
``evaluate()`` walks the tree for local fallback filtering, sink
constraint validation, and tests that compare native against local
results.

Example:
    from databroker.lib.query import F, Query, SortKey

    q = (
        Query()
        .filter((F("year") < 1950) & F("title").contains("whale"))
        .order_by(SortKey("year", descending=True))
        .page(limit=10)
    )
    rows = apply_query(q, [{"title": "Moby-Dick; or, The Whale", "year": 1851}])
"""

from __future__ import annotations

import base64
import binascii
import json
import operator as _operator
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from databroker.lib.record import Conflict, is_absent

__all__ = [
    "ALWAYS",
    "Always",
    "And",
    "Combinator",
    "Comparison",
    "F",
    "Not",
    "Operator",
    "Or",
    "Pagination",
    "Predicate",
    "Query",
    "Range",
    "SortKey",
    "TextMatch",
    "TextMode",
    "Xor",
    "apply_query",
    "conjoin",
    "conjuncts",
    "decode_cursor",
    "encode_cursor",
    "evaluate",
    "filter_rows",
    "paginate",
    "predicate_fields",
    "predicate_from_dict",
    "predicate_to_dict",
    "project",
    "sort_rows",
]


class Operator(Enum):
    """Leaf operators a connector may declare native support for."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    RANGE = "range"
    CONTAINS = "contains"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    EXACT = "exact"


class Combinator(Enum):
    """Logical combinators beyond AND, which is always splittable."""

    OR = "or"
    NOT = "not"
    XOR = "xor"


class TextMode(Enum):
    """How a text match compares the field against the needle."""

    CONTAINS = "contains"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    EXACT = "exact"

    @property
    def operator(self) -> Operator:
        return Operator(self.value)


COMPARISON_OPERATORS = frozenset(
    {Operator.EQ, Operator.NE, Operator.LT, Operator.LE, Operator.GT, Operator.GE, Operator.IN}
)

_SYMBOLS = {
    Operator.EQ: "==",
    Operator.NE: "!=",
    Operator.LT: "<",
    Operator.LE: "<=",
    Operator.GT: ">",
    Operator.GE: ">=",
    Operator.IN: "in",
}

_COMPARATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: _operator.eq,
    Operator.NE: _operator.ne,
    Operator.LT: _operator.lt,
    Operator.LE: _operator.le,
    Operator.GT: _operator.gt,
    Operator.GE: _operator.ge,
}


# ============================================
# Predicate tree
# ============================================


class Predicate:
    """Base for predicate nodes. Supports ``&``, ``|``, ``~`` and ``^``."""

    def __and__(self, other: "Predicate") -> "Predicate":
        return conjoin([self, other])

    def __or__(self, other: "Predicate") -> "Predicate":
        left = self.children if isinstance(self, Or) else (self,)
        right = other.children if isinstance(other, Or) else (other,)
        return Or(left + right)

    def __invert__(self) -> "Predicate":
        if isinstance(self, Not):
            return self.child
        return Not(self)

    def __xor__(self, other: "Predicate") -> "Predicate":
        return Xor(self, other)


@dataclass(frozen=True)
class Always(Predicate):
    """Matches every record."""

    def __str__(self) -> str:
        return "TRUE"


ALWAYS = Always()


@dataclass(frozen=True)
class Comparison(Predicate):
    """``field <op> value`` for eq/ne/lt/le/gt/ge/in."""

    field: str
    op: Operator
    value: Any

    def __post_init__(self) -> None:
        if self.op not in COMPARISON_OPERATORS:
            raise ValueError(f"{self.op.value!r} is not a comparison operator")
        if self.op is Operator.IN:
            object.__setattr__(self, "value", tuple(self.value))

    def __str__(self) -> str:
        return f"{self.field} {_SYMBOLS[self.op]} {self.value!r}"


@dataclass(frozen=True)
class Range(Predicate):
    """``low <= field <= high``; a missing bound is unbounded."""

    field: str
    low: Any = None
    high: Any = None
    low_inclusive: bool = True
    high_inclusive: bool = True

    def __post_init__(self) -> None:
        if self.low is None and self.high is None:
            raise ValueError(f"Range on {self.field!r} needs at least one bound")

    @property
    def inclusive(self) -> bool:
        """Whether every present bound is inclusive."""
        return (self.low is None or self.low_inclusive) and (self.high is None or self.high_inclusive)

    def __str__(self) -> str:
        lo = "[" if self.low_inclusive else "("
        hi = "]" if self.high_inclusive else ")"
        low = "-inf" if self.low is None else repr(self.low)
        high = "+inf" if self.high is None else repr(self.high)
        return f"{self.field} in {lo}{low}, {high}{hi}"


@dataclass(frozen=True)
class TextMatch(Predicate):
    """Substring, prefix, suffix or whole-string match on a text field."""

    field: str
    text: str
    mode: TextMode = TextMode.CONTAINS
    case_sensitive: bool = False

    @property
    def op(self) -> Operator:
        return self.mode.operator

    def __str__(self) -> str:
        flag = "" if self.case_sensitive else " (ci)"
        return f"{self.field} {self.mode.value} {self.text!r}{flag}"


@dataclass(frozen=True)
class And(Predicate):
    children: Tuple[Predicate, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))

    def __str__(self) -> str:
        return "(" + " AND ".join(str(c) for c in self.children) + ")"


@dataclass(frozen=True)
class Or(Predicate):
    children: Tuple[Predicate, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))

    def __str__(self) -> str:
        return "(" + " OR ".join(str(c) for c in self.children) + ")"


@dataclass(frozen=True)
class Not(Predicate):
    child: Predicate

    def __str__(self) -> str:
        return f"NOT {self.child}"


@dataclass(frozen=True)
class Xor(Predicate):
    left: Predicate
    right: Predicate

    def __str__(self) -> str:
        return f"({self.left} XOR {self.right})"


Leaf = Union[Comparison, Range, TextMatch]


def conjuncts(predicate: Predicate) -> List[Predicate]:
    """Flatten nested ANDs into a list of top-level conjuncts."""
    if isinstance(predicate, Always):
        return []
    if isinstance(predicate, And):
        out: List[Predicate] = []
        for child in predicate.children:
            out.extend(conjuncts(child))
        return out
    return [predicate]


def conjoin(predicates: Iterable[Predicate]) -> Predicate:
    """AND predicates together, dropping ALWAYS and flattening."""
    flat: List[Predicate] = []
    for p in predicates:
        flat.extend(conjuncts(p))
    if not flat:
        return ALWAYS
    if len(flat) == 1:
        return flat[0]
    return And(tuple(flat))


def predicate_fields(predicate: Predicate) -> Set[str]:
    """All field names referenced anywhere in the tree."""
    if isinstance(predicate, (Comparison, Range, TextMatch)):
        return {predicate.field}
    if isinstance(predicate, (And, Or)):
        out: Set[str] = set()
        for child in predicate.children:
            out |= predicate_fields(child)
        return out
    if isinstance(predicate, Not):
        return predicate_fields(predicate.child)
    if isinstance(predicate, Xor):
        return predicate_fields(predicate.left) | predicate_fields(predicate.right)
    return set()


# ============================================
# Evaluation
# ============================================


def _unknown(value: Any) -> bool:
    return is_absent(value) or isinstance(value, Conflict)


def _compare(value: Any, op: Operator, target: Any) -> bool:
    if op is Operator.IN:
        return any(_compare(value, Operator.EQ, t) for t in target)
    try:
        return bool(_COMPARATORS[op](value, target))
    except TypeError:
        return False


def _in_range(value: Any, node: Range) -> bool:
    try:
        if node.low is not None:
            if node.low_inclusive and not value >= node.low:
                return False
            if not node.low_inclusive and not value > node.low:
                return False
        if node.high is not None:
            if node.high_inclusive and not value <= node.high:
                return False
            if not node.high_inclusive and not value < node.high:
                return False
    except TypeError:
        return False
    return True


def _text_match(value: Any, node: TextMatch) -> bool:
    if not isinstance(value, str):
        return False
    haystack, needle = value, node.text
    if not node.case_sensitive:
        haystack, needle = haystack.casefold(), needle.casefold()
    if node.mode is TextMode.CONTAINS:
        return needle in haystack
    if node.mode is TextMode.PREFIX:
        return haystack.startswith(needle)
    if node.mode is TextMode.SUFFIX:
        return haystack.endswith(needle)
    return haystack == needle


def evaluate(predicate: Predicate, row: Mapping[str, Any]) -> bool:
    """Evaluate a predicate against one record mapping.

    Leaves on an absent or conflicting field are false; NOT is plain
    boolean negation of its child.
    """
    if isinstance(predicate, Always):
        return True
    if isinstance(predicate, Comparison):
        value = row.get(predicate.field)
        return not _unknown(value) and _compare(value, predicate.op, predicate.value)
    if isinstance(predicate, Range):
        value = row.get(predicate.field)
        return not _unknown(value) and _in_range(value, predicate)
    if isinstance(predicate, TextMatch):
        value = row.get(predicate.field)
        return not _unknown(value) and _text_match(value, predicate)
    if isinstance(predicate, And):
        return all(evaluate(c, row) for c in predicate.children)
    if isinstance(predicate, Or):
        return any(evaluate(c, row) for c in predicate.children)
    if isinstance(predicate, Not):
        return not evaluate(predicate.child, row)
    if isinstance(predicate, Xor):
        return evaluate(predicate.left, row) != evaluate(predicate.right, row)
    raise TypeError(f"Unknown predicate node: {predicate!r}")


# ============================================
# Sort, projection, pagination
# ============================================


@dataclass(frozen=True)
class SortKey:
    """One sort key; absent and conflicting values always sort last."""

    field: str
    descending: bool = False

    @classmethod
    def parse(cls, text: str) -> "SortKey":
        """Parse ``year``, ``-year`` or ``year:desc``."""
        text = text.strip()
        if text.startswith("-"):
            return cls(text[1:], descending=True)
        name, _, direction = text.partition(":")
        direction = direction.strip().lower()
        if direction not in ("", "asc", "desc"):
            raise ValueError(f"Unknown sort direction in {text!r}")
        return cls(name.strip(), descending=direction == "desc")

    def __str__(self) -> str:
        return f"{self.field}:{'desc' if self.descending else 'asc'}"


def encode_cursor(offset: int) -> str:
    """Opaque cursor for an absolute result offset."""
    raw = json.dumps({"offset": offset}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    """Inverse of encode_cursor; raises ValueError for foreign tokens."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        offset = int(payload["offset"])
    except (binascii.Error, ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"Invalid pagination cursor: {cursor!r}") from exc
    if offset < 0:
        raise ValueError(f"Invalid pagination cursor: {cursor!r}")
    return offset


@dataclass(frozen=True)
class Pagination:
    """Offset/limit or cursor/limit window over the final result."""

    offset: int = 0
    limit: Optional[int] = None
    cursor: Optional[str] = None

    def __post_init__(self) -> None:
        if self.cursor is not None:
            if self.offset:
                raise ValueError("Pagination takes either offset or cursor, not both")
            object.__setattr__(self, "offset", decode_cursor(self.cursor))
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")

    @property
    def end(self) -> Optional[int]:
        """Exclusive end index, or None when unbounded."""
        return None if self.limit is None else self.offset + self.limit


@dataclass(frozen=True)
class Query:
    """Immutable abstract query."""

    where: Predicate = ALWAYS
    sort: Tuple[SortKey, ...] = ()
    projection: Optional[Tuple[str, ...]] = None
    pagination: Optional[Pagination] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "sort", tuple(self.sort))
        if self.projection is not None:
            object.__setattr__(self, "projection", tuple(self.projection))

    def filter(self, predicate: Predicate) -> "Query":
        return replace(self, where=conjoin([self.where, predicate]))

    def order_by(self, *keys: Union[SortKey, str]) -> "Query":
        parsed = tuple(k if isinstance(k, SortKey) else SortKey.parse(k) for k in keys)
        return replace(self, sort=parsed)

    def select(self, *fields: str) -> "Query":
        return replace(self, projection=tuple(fields))

    def page(self, offset: int = 0, limit: Optional[int] = None) -> "Query":
        return replace(self, pagination=Pagination(offset=offset, limit=limit))

    def after(self, cursor: str, limit: Optional[int] = None) -> "Query":
        return replace(self, pagination=Pagination(cursor=cursor, limit=limit))

    def unpaged(self) -> "Query":
        return replace(self, pagination=None)

    @property
    def referenced_fields(self) -> Set[str]:
        """Fields needed to filter and sort, regardless of projection."""
        return predicate_fields(self.where) | {k.field for k in self.sort}

    def __str__(self) -> str:
        parts = [f"WHERE {self.where}"]
        if self.sort:
            parts.append("ORDER BY " + ", ".join(str(k) for k in self.sort))
        if self.projection is not None:
            parts.append("SELECT " + ", ".join(self.projection))
        if self.pagination is not None:
            parts.append(f"OFFSET {self.pagination.offset} LIMIT {self.pagination.limit}")
        return " ".join(parts)


def filter_rows(predicate: Predicate, rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return [r for r in rows if evaluate(predicate, r)]


def sort_rows(
    rows: Iterable[Any],
    keys: Sequence[SortKey],
    *,
    mapping_of: Optional[Callable[[Any], Mapping[str, Any]]] = None,
) -> List[Any]:
    """Stable multi-key sort; unknown values sink to the end for every key.

    ``mapping_of`` extracts the field mapping when rows are not mappings
    themselves (e.g. merge results).
    """
    view = mapping_of or (lambda r: r)
    ordered = list(rows)
    for key in reversed(keys):
        name = key.field
        known = [r for r in ordered if not _unknown(view(r).get(name))]
        unknown = [r for r in ordered if _unknown(view(r).get(name))]
        try:
            known.sort(key=lambda r: view(r)[name], reverse=key.descending)
        except TypeError:
            try:
                known.sort(key=lambda r: _type_key(view(r)[name]), reverse=key.descending)
            except TypeError:
                known.sort(key=lambda r: _type_key(view(r)[name], exact=False), reverse=key.descending)
        ordered = known + unknown
    return ordered


def _type_key(value: Any, exact: bool = True) -> Tuple[str, Any]:
    """Group by type first so values are only compared within their own type."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        group = "number"
    else:
        group = type(value).__name__
    return (group, value if exact else repr(value))


def paginate(rows: Sequence[Any], pagination: Optional[Pagination]) -> List[Any]:
    if pagination is None:
        return list(rows)
    return list(rows[pagination.offset:pagination.end])


def project(row: Mapping[str, Any], fields: Optional[Sequence[str]]) -> Dict[str, Any]:
    if fields is None:
        return dict(row)
    return {f: row[f] for f in fields if f in row}


def apply_query(query: Query, rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Full local evaluation: filter, sort, paginate, then project."""
    selected = filter_rows(query.where, rows)
    if query.sort:
        selected = sort_rows(selected, query.sort)
    selected = paginate(selected, query.pagination)
    return [project(r, query.projection) for r in selected]


# ============================================
# Fluent builder
# ============================================


class F:
    """Field reference for building predicates with Python operators.

    Example:
        (F("year") >= 1800) & (F("format") == "Pdf") | F("title").contains("whale")
    """

    __hash__ = None  # type: ignore[assignment]

    def __init__(self, name: str) -> None:
        self.name = name

    def __eq__(self, value: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, Operator.EQ, value)

    def __ne__(self, value: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, Operator.NE, value)

    def __lt__(self, value: Any) -> Comparison:
        return Comparison(self.name, Operator.LT, value)

    def __le__(self, value: Any) -> Comparison:
        return Comparison(self.name, Operator.LE, value)

    def __gt__(self, value: Any) -> Comparison:
        return Comparison(self.name, Operator.GT, value)

    def __ge__(self, value: Any) -> Comparison:
        return Comparison(self.name, Operator.GE, value)

    def isin(self, values: Iterable[Any]) -> Comparison:
        return Comparison(self.name, Operator.IN, tuple(values))

    def between(self, low: Any, high: Any, *, inclusive: bool = True) -> Range:
        return Range(self.name, low, high, inclusive, inclusive)

    def contains(self, text: str, *, case_sensitive: bool = False) -> TextMatch:
        return TextMatch(self.name, text, TextMode.CONTAINS, case_sensitive)

    def startswith(self, text: str, *, case_sensitive: bool = False) -> TextMatch:
        return TextMatch(self.name, text, TextMode.PREFIX, case_sensitive)

    def endswith(self, text: str, *, case_sensitive: bool = False) -> TextMatch:
        return TextMatch(self.name, text, TextMode.SUFFIX, case_sensitive)

    def matches(self, text: str, *, case_sensitive: bool = False) -> TextMatch:
        return TextMatch(self.name, text, TextMode.EXACT, case_sensitive)

    def __repr__(self) -> str:
        return f"F({self.name!r})"


# ============================================
# Dict representation (YAML / JSON)
# ============================================


def predicate_to_dict(predicate: Predicate) -> Dict[str, Any]:
    """Serialise a predicate tree into plain dicts and lists."""
    if isinstance(predicate, Always):
        return {"always": True}
    if isinstance(predicate, Comparison):
        value = list(predicate.value) if predicate.op is Operator.IN else predicate.value
        return {"field": predicate.field, "op": predicate.op.value, "value": value}
    if isinstance(predicate, Range):
        out: Dict[str, Any] = {"field": predicate.field, "between": [predicate.low, predicate.high]}
        if not predicate.low_inclusive:
            out["low_inclusive"] = False
        if not predicate.high_inclusive:
            out["high_inclusive"] = False
        return out
    if isinstance(predicate, TextMatch):
        return {
            "field": predicate.field,
            predicate.mode.value: predicate.text,
            "case_sensitive": predicate.case_sensitive,
        }
    if isinstance(predicate, And):
        return {"all": [predicate_to_dict(c) for c in predicate.children]}
    if isinstance(predicate, Or):
        return {"any": [predicate_to_dict(c) for c in predicate.children]}
    if isinstance(predicate, Not):
        return {"not": predicate_to_dict(predicate.child)}
    if isinstance(predicate, Xor):
        return {"xor": [predicate_to_dict(predicate.left), predicate_to_dict(predicate.right)]}
    raise TypeError(f"Unknown predicate node: {predicate!r}")


def predicate_from_dict(data: Mapping[str, Any]) -> Predicate:
    """Build a predicate tree from its dict form.

    Raises:
        ValueError: If the dict does not describe a known node.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"Predicate must be a mapping, got {type(data).__name__}")

    if "always" in data:
        return ALWAYS
    if "all" in data:
        return And(tuple(predicate_from_dict(c) for c in data["all"]))
    if "any" in data:
        return Or(tuple(predicate_from_dict(c) for c in data["any"]))
    if "not" in data:
        return Not(predicate_from_dict(data["not"]))
    if "xor" in data:
        left, right = data["xor"]
        return Xor(predicate_from_dict(left), predicate_from_dict(right))

    name = data.get("field")
    if not name:
        raise ValueError(f"Predicate is missing 'field': {dict(data)}")

    if "op" in data:
        try:
            op = Operator(str(data["op"]).lower())
        except ValueError as exc:
            raise ValueError(f"Unknown operator {data['op']!r}") from exc
        if "value" not in data:
            raise ValueError(f"Comparison on {name!r} is missing 'value'")
        return Comparison(name, op, data["value"])

    if "between" in data:
        low, high = data["between"]
        return Range(
            name,
            low,
            high,
            bool(data.get("low_inclusive", True)),
            bool(data.get("high_inclusive", True)),
        )

    for mode in TextMode:
        if mode.value in data:
            return TextMatch(name, str(data[mode.value]), mode, bool(data.get("case_sensitive", False)))

    raise ValueError(f"Cannot parse predicate on {name!r}: {dict(data)}")
