"""Declared guarantees and requirements on connector data.

A guarantee says every record a source returns satisfies a predicate; the
broker uses guarantees to skip sources that provably cannot contribute to
a query. A requirement says a sink rejects any record violating a
predicate; the broker checks requirements before every submission.

Both kinds reuse the query predicate representation and its evaluator.

Example:
    pdf_only = Constraint.guarantee("pdf_only", F("format") == "Pdf")
    is_satisfiable(Query().filter(F("format") == "Hardcover"), [pdf_only])
    # False

    needs_isbn = Constraint.requirement("has_isbn", F("isbn") != "")
    validate({"title": "Moby-Dick"}, [needs_isbn]).ok
    # False
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from databroker.lib.query import (
    ALWAYS,
    Always,
    And,
    Comparison,
    Not,
    Operator,
    Or,
    Predicate,
    Query,
    Range,
    TextMatch,
    TextMode,
    Xor,
    conjoin,
    evaluate,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Constraint",
    "ConstraintKind",
    "DNF_CLAUSE_LIMIT",
    "ValidationResult",
    "Violation",
    "is_satisfiable",
    "validate",
]

# Past this many DNF clauses the check gives up and answers "maybe".
DNF_CLAUSE_LIMIT = 256


class ConstraintKind(Enum):
    GUARANTEE = "guarantee"
    REQUIREMENT = "requirement"


@dataclass(frozen=True)
class Constraint:
    """A named predicate attached to a connector at registration."""

    name: str
    predicate: Predicate
    kind: ConstraintKind = ConstraintKind.GUARANTEE
    description: Optional[str] = None

    @classmethod
    def guarantee(cls, name: str, predicate: Predicate, description: Optional[str] = None) -> "Constraint":
        return cls(name, predicate, ConstraintKind.GUARANTEE, description)

    @classmethod
    def requirement(cls, name: str, predicate: Predicate, description: Optional[str] = None) -> "Constraint":
        return cls(name, predicate, ConstraintKind.REQUIREMENT, description)

    def check(self, record: Mapping[str, Any]) -> bool:
        return evaluate(self.predicate, record)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name}: {self.predicate}"


@dataclass(frozen=True)
class Violation:
    """One failed requirement for one record."""

    constraint: str
    predicate: str
    description: Optional[str] = None

    def __str__(self) -> str:
        text = f"{self.constraint} ({self.predicate})"
        return f"{text}: {self.description}" if self.description else text


@dataclass
class ValidationResult:
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "violations": [
                {"constraint": v.constraint, "predicate": v.predicate, "description": v.description}
                for v in self.violations
            ],
        }


def validate(record: Mapping[str, Any], constraints: Iterable[Constraint]) -> ValidationResult:
    """Check a record against every requirement in ``constraints``.

    Guarantees are ignored; they describe sources, not submissions.
    """
    violations = [
        Violation(c.name, str(c.predicate), c.description)
        for c in constraints
        if c.kind is ConstraintKind.REQUIREMENT and not c.check(record)
    ]
    return ValidationResult(violations)


# ============================================
# Satisfiability
# ============================================

# NNF literal: (leaf, negated)
Literal = Tuple[Predicate, bool]

_FALSE = Or(())


def _nnf(predicate: Predicate, negated: bool = False) -> Predicate:
    """Push negations down to the leaves.

    Negated leaves are kept as ``Not(leaf)`` so they retain their
    "absent or fails" meaning.
    """
    if isinstance(predicate, Always):
        return _FALSE if negated else ALWAYS
    if isinstance(predicate, Not):
        return _nnf(predicate.child, not negated)
    if isinstance(predicate, And):
        children = tuple(_nnf(c, negated) for c in predicate.children)
        return Or(children) if negated else And(children)
    if isinstance(predicate, Or):
        children = tuple(_nnf(c, negated) for c in predicate.children)
        return And(children) if negated else Or(children)
    if isinstance(predicate, Xor):
        a, b = predicate.left, predicate.right
        if negated:
            rewritten: Predicate = Or((And((a, b)), And((Not(a), Not(b)))))
        else:
            rewritten = Or((And((a, Not(b))), And((Not(a), b))))
        return _nnf(rewritten)
    return Not(predicate) if negated else predicate


def _dnf(predicate: Predicate, limit: int) -> Optional[List[List[Literal]]]:
    """Clauses of an NNF tree, or None when the expansion exceeds ``limit``."""
    if isinstance(predicate, Always):
        return [[]]
    if isinstance(predicate, Not):
        return [[(predicate.child, True)]]
    if isinstance(predicate, Or):
        clauses: List[List[Literal]] = []
        for child in predicate.children:
            sub = _dnf(child, limit)
            if sub is None:
                return None
            clauses.extend(sub)
            if len(clauses) > limit:
                return None
        return clauses
    if isinstance(predicate, And):
        product: List[List[Literal]] = [[]]
        for child in predicate.children:
            sub = _dnf(child, limit)
            if sub is None:
                return None
            product = [left + right for left in product for right in sub]
            if len(product) > limit:
                return None
        return product
    return [[(predicate, False)]]


class _FieldState:
    """Accumulated value-level restrictions on one field within a clause."""

    def __init__(self) -> None:
        self.required = False
        self.opaque = False
        self.candidates: Optional[List[Any]] = None
        self.excluded: List[Any] = []
        self.low: Optional[Tuple[Any, bool]] = None
        self.high: Optional[Tuple[Any, bool]] = None

    def restrict_to(self, values: Sequence[Any]) -> None:
        if self.candidates is None:
            self.candidates = list(values)
        else:
            self.candidates = [c for c in self.candidates if any(_equal(c, v) for v in values)]

    def exclude(self, value: Any) -> None:
        self.excluded.append(value)

    def lower(self, value: Any, inclusive: bool) -> None:
        try:
            if self.low is None or value > self.low[0]:
                self.low = (value, inclusive)
            elif value == self.low[0]:
                self.low = (value, inclusive and self.low[1])
        except TypeError:
            self.opaque = True

    def upper(self, value: Any, inclusive: bool) -> None:
        try:
            if self.high is None or value < self.high[0]:
                self.high = (value, inclusive)
            elif value == self.high[0]:
                self.high = (value, inclusive and self.high[1])
        except TypeError:
            self.opaque = True

    def _allows(self, value: Any) -> bool:
        if any(_equal(value, x) for x in self.excluded):
            return False
        try:
            if self.low is not None:
                bound, inclusive = self.low
                if value < bound or (value == bound and not inclusive):
                    return False
            if self.high is not None:
                bound, inclusive = self.high
                if value > bound or (value == bound and not inclusive):
                    return False
        except TypeError:
            return True
        return True

    def satisfiable(self) -> bool:
        if not self.required or self.opaque:
            return True
        if self.candidates is not None:
            return any(self._allows(c) for c in self.candidates)
        if self.low is None or self.high is None:
            return True
        (low, low_inc), (high, high_inc) = self.low, self.high
        try:
            if low > high:
                return False
            if low == high:
                if not (low_inc and high_inc):
                    return False
                return not any(_equal(low, x) for x in self.excluded)
        except TypeError:
            return True
        return True


def _equal(a: Any, b: Any) -> bool:
    try:
        return bool(a == b)
    except TypeError:
        return False


_NEGATED_BOUNDS = {
    Operator.LT: ("lower", True),
    Operator.LE: ("lower", False),
    Operator.GT: ("upper", True),
    Operator.GE: ("upper", False),
}


def _apply_literal(state: _FieldState, leaf: Predicate, negated: bool) -> None:
    if not negated:
        state.required = True

    if isinstance(leaf, Comparison):
        op, value = leaf.op, leaf.value
        if not negated:
            if op is Operator.EQ:
                state.restrict_to([value])
            elif op is Operator.IN:
                state.restrict_to(value)
            elif op is Operator.NE:
                state.exclude(value)
            elif op is Operator.LT:
                state.upper(value, False)
            elif op is Operator.LE:
                state.upper(value, True)
            elif op is Operator.GT:
                state.lower(value, False)
            elif op is Operator.GE:
                state.lower(value, True)
        else:
            # Only matters when the field is present; absent always passes.
            if op is Operator.EQ:
                state.exclude(value)
            elif op is Operator.IN:
                for v in value:
                    state.exclude(v)
            elif op is Operator.NE:
                state.restrict_to([value])
            else:
                side, inclusive = _NEGATED_BOUNDS[op]
                getattr(state, side)(value, inclusive)
        return

    if isinstance(leaf, Range) and not negated:
        if leaf.low is not None:
            state.lower(leaf.low, leaf.low_inclusive)
        if leaf.high is not None:
            state.upper(leaf.high, leaf.high_inclusive)
        return

    if isinstance(leaf, TextMatch) and not negated:
        if leaf.mode is TextMode.EXACT and leaf.case_sensitive:
            state.restrict_to([leaf.text])
        return


def _clause_satisfiable(clause: Sequence[Literal]) -> bool:
    states: Dict[str, _FieldState] = {}
    for leaf, negated in clause:
        name = getattr(leaf, "field", None)
        if name is None:
            continue
        _apply_literal(states.setdefault(name, _FieldState()), leaf, negated)
    return all(state.satisfiable() for state in states.values())


def is_satisfiable(
    query: Union[Query, Predicate],
    constraints: Iterable[Constraint],
    *,
    limit: int = DNF_CLAUSE_LIMIT,
) -> bool:
    """Whether a query can possibly match records under the given guarantees.

    Conservative: ``False`` means provably empty, ``True`` means "maybe".
    Requirements in ``constraints`` are ignored.
    """
    where = query.where if isinstance(query, Query) else query
    guarantees = [c.predicate for c in constraints if c.kind is ConstraintKind.GUARANTEE]
    combined = conjoin([where, *guarantees])
    if isinstance(combined, Always):
        return True

    clauses = _dnf(_nnf(combined), limit)
    if clauses is None:
        logger.debug("Satisfiability check exceeded %d clauses; assuming satisfiable", limit)
        return True
    return any(_clause_satisfiable(clause) for clause in clauses)
