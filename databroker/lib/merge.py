"""Identity-based reconciliation of partial records.

Records from every source in a federation round are partitioned into
equivalence classes with union-find over their identity tokens: two
records sharing any identity-key value describe the same entity, and the
relation is transitive. Each class becomes one merged record. Fields the
sources agree on take the common value; fields they disagree on become a
``Conflict`` and keep every value with its provenance. Nothing picks a
winner automatically.

Example:
    engine = MergeEngine(books)
    results = engine.merge({
        "library": [{"isbn": "978-0142437247", "year": 1851}],
        "archive": [{"isbn": "978-0142437247", "year": 1855}],
    })
    results[0].record["year"]
    # Conflict(1851, 1855)
    results[0].resolve_by_priority(["library"]).record["year"]
    # 1851
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from databroker.lib.errors import MergeConflictError
from databroker.lib.record import Conflict, IdentityToken, RecordType, freeze

logger = logging.getLogger(__name__)

__all__ = [
    "FieldContribution",
    "MergeEngine",
    "MergeResult",
    "UnionFind",
]

TaggedStreams = Union[Mapping[str, Iterable[Any]], Iterable[Tuple[str, Iterable[Any]]]]


class UnionFind:
    """Disjoint sets over integer ids with path compression and union by rank."""

    def __init__(self, size: int = 0) -> None:
        self._parent: List[int] = list(range(size))
        self._rank: List[int] = [0] * size

    def add(self) -> int:
        node = len(self._parent)
        self._parent.append(node)
        self._rank.append(0)
        return node

    def find(self, node: int) -> int:
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root

    def union(self, a: int, b: int) -> int:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1
        return ra

    def groups(self) -> Dict[int, List[int]]:
        out: Dict[int, List[int]] = {}
        for node in range(len(self._parent)):
            out.setdefault(self.find(node), []).append(node)
        return out


@dataclass(frozen=True)
class FieldContribution:
    """One source's value for one field of a merged record."""

    source: str
    value: Any


def _value_key(value: Any) -> Tuple[str, str]:
    return (type(value).__name__, repr(value))


def _token_key(token: IdentityToken) -> Tuple[int, str]:
    return (token[0], repr(token[1]))


def _contribution_key(c: FieldContribution) -> Tuple[str, str, str]:
    return (c.source, type(c.value).__name__, repr(c.value))


@dataclass
class MergeResult:
    """One merged entity plus per-field provenance."""

    record: Dict[str, Any]
    provenance: Dict[str, List[FieldContribution]] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)
    identity: Tuple[IdentityToken, ...] = ()

    @property
    def conflicts(self) -> Dict[str, Conflict]:
        return {k: v for k, v in self.record.items() if isinstance(v, Conflict)}

    @property
    def is_conflicted(self) -> bool:
        return any(isinstance(v, Conflict) for v in self.record.values())

    def contributors(self, field_name: str) -> List[str]:
        """Sources that supplied a value for ``field_name``."""
        return sorted({c.source for c in self.provenance.get(field_name, [])})

    def resolve(self, field_name: str, value: Any) -> "MergeResult":
        """Copy with ``field_name`` set to a caller-chosen value."""
        if field_name not in self.record:
            raise KeyError(field_name)
        record = dict(self.record)
        record[field_name] = value
        return MergeResult(record, dict(self.provenance), list(self.sources), self.identity)

    def resolve_by_priority(self, priority: Sequence[str]) -> "MergeResult":
        """Copy with conflicts settled by the first listed source that contributed.

        Fields none of the listed sources contributed to stay conflicted.
        """
        record = dict(self.record)
        for name in self.conflicts:
            by_source = {c.source: c.value for c in self.provenance.get(name, [])}
            for source in priority:
                if source in by_source:
                    record[name] = by_source[source]
                    break
        return MergeResult(record, dict(self.provenance), list(self.sources), self.identity)

    def project(self, fields: Optional[Sequence[str]]) -> "MergeResult":
        if fields is None:
            return self
        record = {f: self.record[f] for f in fields if f in self.record}
        provenance = {f: self.provenance[f] for f in record if f in self.provenance}
        return MergeResult(record, provenance, list(self.sources), self.identity)

    def to_record(self, record_type: RecordType) -> Any:
        """Build the domain object.

        Raises:
            MergeConflictError: If any field is still conflicted
        """
        conflicted = list(self.conflicts)
        if conflicted:
            raise MergeConflictError(
                f"Cannot build {record_type.name} with unresolved conflicts",
                fields=conflicted,
            )
        return record_type.from_mapping(self.record)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form; conflicting cells become ``{"conflict": [...]}``."""
        record = {
            k: {"conflict": list(v.values)} if isinstance(v, Conflict) else v
            for k, v in self.record.items()
        }
        return {
            "record": record,
            "sources": list(self.sources),
            "provenance": {
                k: [{"source": c.source, "value": c.value} for c in cs]
                for k, cs in self.provenance.items()
            },
        }


class MergeEngine:
    """Merges tagged per-source record streams for one record type.

    Pure and single-threaded; holds no state between calls.
    """

    def __init__(self, record_type: RecordType) -> None:
        self.record_type = record_type

    def merge(self, streams: TaggedStreams) -> List[MergeResult]:
        """Merge every record of every stream into per-entity results.

        Args:
            streams: ``{source: records}`` or an iterable of ``(source, records)``

        Returns:
            One MergeResult per equivalence class, in an order that depends
            only on the records, never on stream arrival order
        """
        pairs = streams.items() if isinstance(streams, Mapping) else streams

        rows: List[Tuple[str, Dict[str, Any]]] = []
        tokens: List[List[IdentityToken]] = []
        for source, records in pairs:
            for record in records:
                mapping = self.record_type.present(record)
                rows.append((source, mapping))
                tokens.append(self.record_type.identity_tokens(mapping))

        sets = UnionFind(len(rows))
        owner: Dict[IdentityToken, int] = {}
        for index, row_tokens in enumerate(tokens):
            for token in row_tokens:
                if token in owner:
                    sets.union(owner[token], index)
                else:
                    owner[token] = index

        keyed: List[Tuple[Tuple[int, str], MergeResult]] = []
        singletons: List[Tuple[Tuple[str, str], MergeResult]] = []
        for members in sets.groups().values():
            class_tokens = sorted({t for m in members for t in tokens[m]}, key=_token_key)
            result = self._merge_class([rows[m] for m in members], tuple(class_tokens))
            if class_tokens:
                keyed.append((_token_key(class_tokens[0]), result))
            else:
                content = repr(sorted((k, _value_key(v)) for k, v in result.record.items()))
                singletons.append(((content, ",".join(result.sources)), result))

        keyed.sort(key=lambda pair: pair[0])
        singletons.sort(key=lambda pair: pair[0])
        results = [r for _, r in keyed] + [r for _, r in singletons]

        conflicted = sum(1 for r in results if r.is_conflicted)
        logger.debug(
            "Merged %d records into %d entities (%d with conflicts)",
            len(rows),
            len(results),
            conflicted,
        )
        return results

    def _merge_class(
        self,
        members: Sequence[Tuple[str, Mapping[str, Any]]],
        identity: Tuple[IdentityToken, ...],
    ) -> MergeResult:
        contributions: Dict[str, List[FieldContribution]] = {}
        seen: Dict[str, set] = {}
        for source, mapping in members:
            for name, value in mapping.items():
                marker: Tuple[str, Hashable] = (source, freeze(value))
                if marker in seen.setdefault(name, set()):
                    continue
                seen[name].add(marker)
                contributions.setdefault(name, []).append(FieldContribution(source, value))

        record: Dict[str, Any] = {}
        provenance: Dict[str, List[FieldContribution]] = {}
        for name in self.record_type.field_order(contributions):
            entries = sorted(contributions[name], key=_contribution_key)
            provenance[name] = entries
            distinct: List[Any] = []
            frozen: List[Hashable] = []
            for entry in sorted(entries, key=lambda c: _value_key(c.value)):
                key = freeze(entry.value)
                if key not in frozen:
                    frozen.append(key)
                    distinct.append(entry.value)
            record[name] = distinct[0] if len(distinct) == 1 else Conflict(tuple(distinct))

        sources = sorted({source for source, _ in members})
        return MergeResult(record, provenance, sources, identity)
