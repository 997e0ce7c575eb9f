"""Per-connector query translation with local fallback.

Given an abstract query and a connector's declared capabilities,
``translate()`` splits the work into a compiled query the connector can
run exactly and a residual query the broker evaluates locally on the
connector's output. Running the compiled query natively and then the
residual locally gives the same rows as evaluating the original query
locally.

Rules:
- Top-level AND children translate independently.
- OR / NOT / XOR subtrees translate only as a whole: the combinator must
  be supported and every leaf below it covered.
- Sort is native only when the filter is fully native and the exact key
  sequence is declared.
- A limit is pushed only for sorted queries whose filter and sort are both
  native. The pushed limit is ``offset + limit + 1``: the extra row tells
  the caller whether a further page exists. Offsets always stay local.
- Unsorted queries never push a limit: a provider's own order is not the
  order the broker pages in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from databroker.lib.query import (
    ALWAYS,
    Always,
    And,
    Combinator,
    Comparison,
    Not,
    Operator,
    Or,
    Pagination,
    Predicate,
    Query,
    Range,
    SortKey,
    TextMatch,
    Xor,
    conjoin,
    conjuncts,
    predicate_fields,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ALL_OPERATORS",
    "Capabilities",
    "CompiledQuery",
    "Translation",
    "TranslationFallback",
    "TranslationKind",
    "WILDCARD",
    "translate",
]

ALL_OPERATORS: FrozenSet[Operator] = frozenset(Operator)
WILDCARD = "*"


def _operators(values: Iterable[Union[Operator, str]]) -> FrozenSet[Operator]:
    return frozenset(v if isinstance(v, Operator) else Operator(str(v).lower()) for v in values)


@dataclass(frozen=True)
class Capabilities:
    """Query features a connector can execute natively.

    Example:
        # REST endpoint filtering by equality on two params, sorted by year
        Capabilities(
            filters={"author": {"eq"}, "format": {"eq"}},
            sort_sequences=[(SortKey("year"),)],
            pagination=True,
        )
    """

    filters: Mapping[str, FrozenSet[Operator]] = field(default_factory=dict)
    combinators: FrozenSet[Combinator] = frozenset()
    sort_sequences: FrozenSet[Tuple[SortKey, ...]] = frozenset()
    sort_any: bool = False
    pagination: bool = False
    projection: bool = False
    # False when a declared RANGE only handles inclusive bounds
    exclusive_ranges: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "filters", {name: _operators(ops) for name, ops in dict(self.filters).items()}
        )
        object.__setattr__(
            self,
            "combinators",
            frozenset(c if isinstance(c, Combinator) else Combinator(str(c).lower()) for c in self.combinators),
        )
        object.__setattr__(
            self,
            "sort_sequences",
            frozenset(
                tuple(k if isinstance(k, SortKey) else SortKey.parse(k) for k in seq)
                for seq in self.sort_sequences
            ),
        )

    @classmethod
    def none(cls) -> "Capabilities":
        """Connector that can only return everything."""
        return cls()

    @classmethod
    def full(cls) -> "Capabilities":
        """Connector that evaluates any query exactly (e.g. in-memory)."""
        return cls(
            filters={WILDCARD: ALL_OPERATORS},
            combinators=frozenset(Combinator),
            sort_any=True,
            pagination=True,
            projection=True,
        )

    def supports(self, field_name: str, op: Operator) -> bool:
        ops = self.filters.get(field_name, self.filters.get(WILDCARD, frozenset()))
        return op in ops

    def supports_sort(self, keys: Sequence[SortKey]) -> bool:
        return self.sort_any or tuple(keys) in self.sort_sequences

    def covers(self, predicate: Predicate) -> bool:
        """Whether a whole subtree can run natively."""
        if isinstance(predicate, Always):
            return True
        if isinstance(predicate, (Comparison, TextMatch)):
            return self.supports(predicate.field, predicate.op)
        if isinstance(predicate, Range):
            return self.supports(predicate.field, Operator.RANGE) and (self.exclusive_ranges or predicate.inclusive)
        if isinstance(predicate, And):
            return all(self.covers(c) for c in predicate.children)
        if isinstance(predicate, Or):
            return Combinator.OR in self.combinators and all(self.covers(c) for c in predicate.children)
        if isinstance(predicate, Not):
            return Combinator.NOT in self.combinators and self.covers(predicate.child)
        if isinstance(predicate, Xor):
            return (
                Combinator.XOR in self.combinators
                and self.covers(predicate.left)
                and self.covers(predicate.right)
            )
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filters": {name: sorted(op.value for op in ops) for name, ops in sorted(self.filters.items())},
            "combinators": sorted(c.value for c in self.combinators),
            "sort_sequences": sorted([str(k) for k in seq] for seq in self.sort_sequences),
            "sort_any": self.sort_any,
            "pagination": self.pagination,
            "projection": self.projection,
            "exclusive_ranges": self.exclusive_ranges,
        }


@dataclass(frozen=True)
class CompiledQuery:
    """The part of a query a connector has promised to run exactly.

    Connectors render this into their native syntax (HTTP params, SQL, ...).
    """

    where: Predicate = ALWAYS
    sort: Tuple[SortKey, ...] = ()
    limit: Optional[int] = None
    projection: Optional[Tuple[str, ...]] = None

    def to_query(self) -> Query:
        pagination = None if self.limit is None else Pagination(limit=self.limit)
        return Query(where=self.where, sort=self.sort, projection=self.projection, pagination=pagination)

    def with_limit(self, limit: Optional[int]) -> "CompiledQuery":
        return CompiledQuery(self.where, self.sort, limit, self.projection)


class TranslationKind(Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


@dataclass(frozen=True)
class TranslationFallback:
    """Informational note that some work is evaluated locally. Not an error."""

    connector: Optional[str]
    kind: TranslationKind
    deferred_filter: Optional[str] = None
    deferred_sort: bool = False
    deferred_limit: bool = False

    def describe(self) -> str:
        parts: List[str] = []
        if self.deferred_filter:
            parts.append(f"filter {self.deferred_filter}")
        if self.deferred_sort:
            parts.append("sort")
        if self.deferred_limit:
            parts.append("limit")
        what = ", ".join(parts) or "nothing"
        return f"{self.connector or '?'}: {self.kind.value} translation, local evaluation of {what}"


@dataclass(frozen=True)
class Translation:
    compiled: CompiledQuery
    residual: Query
    fallback: Optional[TranslationFallback] = None

    @property
    def kind(self) -> TranslationKind:
        return self.fallback.kind if self.fallback else TranslationKind.FULL

    @property
    def is_native(self) -> bool:
        return self.fallback is None


def translate(
    query: Query,
    capabilities: Capabilities,
    *,
    connector: Optional[str] = None,
    extra_fields: Iterable[str] = (),
    limit_pushdown: bool = True,
) -> Translation:
    """Compile a query for one connector.

    Args:
        query: The abstract query
        capabilities: What the connector runs natively
        connector: Name used in fallback notes
        extra_fields: Fields the caller needs back regardless of projection
            (identity keys for merging)
        limit_pushdown: Allow pushing ``offset + limit + 1`` when exact. The
            broker only allows it when a single source is queried.

    Returns:
        Translation with the compiled part and the residual part
    """
    native: List[Predicate] = []
    residual: List[Predicate] = []
    for part in conjuncts(query.where):
        (native if capabilities.covers(part) else residual).append(part)

    residual_where = conjoin(residual)
    filter_native = not residual

    sort_native = bool(query.sort) and filter_native and capabilities.supports_sort(query.sort)
    native_sort = query.sort if sort_native else ()

    pagination = query.pagination
    wants_limit = pagination is not None and pagination.limit is not None
    limit_native = wants_limit and limit_pushdown and capabilities.pagination and sort_native
    native_limit = None
    if limit_native and pagination is not None and pagination.end is not None:
        native_limit = pagination.end + 1

    projection: Optional[Tuple[str, ...]] = None
    if query.projection is not None and capabilities.projection:
        needed = set(query.projection) | predicate_fields(residual_where) | set(extra_fields)
        needed |= {k.field for k in query.sort}
        ordered = list(query.projection) + sorted(needed - set(query.projection))
        projection = tuple(ordered)

    compiled = CompiledQuery(
        where=conjoin(native),
        sort=native_sort,
        limit=native_limit,
        projection=projection,
    )

    residual_pagination: Optional[Pagination] = None
    if pagination is not None:
        residual_pagination = Pagination(offset=pagination.offset, limit=pagination.limit)

    residual_query = Query(
        where=residual_where,
        sort=() if sort_native else query.sort,
        projection=query.projection,
        pagination=residual_pagination,
    )

    deferred_sort = bool(query.sort) and not sort_native
    deferred_limit = wants_limit and not limit_native
    if residual or deferred_sort or deferred_limit:
        nothing_native = not native and not sort_native and not limit_native
        kind = TranslationKind.NONE if nothing_native else TranslationKind.PARTIAL
        fallback: Optional[TranslationFallback] = TranslationFallback(
            connector=connector,
            kind=kind,
            deferred_filter=str(residual_where) if residual else None,
            deferred_sort=deferred_sort,
            deferred_limit=deferred_limit,
        )
        logger.debug("Translation fallback: %s", fallback.describe())
    else:
        fallback = None

    return Translation(compiled=compiled, residual=residual_query, fallback=fallback)
