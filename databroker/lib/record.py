"""Record shape contract and identity-key extraction.

The broker never knows what a record means. A record type describes the
shape (field names, semantic types, identity-key groups) and how to move
between domain objects and plain mappings, so the merge engine and the
query evaluator can work generically.

Example:
    books = MappingRecordType(
        "book",
        fields={"isbn": str, "title": str, "author": str, "year": int},
        identity_keys=[("isbn",), ("title", "author")],
    )
    books.identity_tokens({"isbn": "978-0142437247", "title": "Moby-Dick"})
    # [(0, ('978-0142437247',))]
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Type

__all__ = [
    "ABSENT",
    "Conflict",
    "DataclassRecordType",
    "IdentityToken",
    "MappingRecordType",
    "RecordType",
    "freeze",
    "is_absent",
]

IdentityToken = Tuple[int, Tuple[Hashable, ...]]


class _Absent:
    """Sentinel for a field with no known value."""

    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


def is_absent(value: Any) -> bool:
    """Missing and None both mean "unknown"; empty domain values do not."""
    return value is None or value is ABSENT


def freeze(value: Any) -> Hashable:
    """Make a field value hashable so it can key an identity token."""
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((str(k), freeze(v)) for k, v in value.items()))
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


@dataclasses.dataclass(frozen=True)
class Conflict:
    """Post-merge marker for a field whose sources disagree.

    Holds the distinct values in a deterministic order. Never equal to a
    plain value, so it cannot satisfy a query predicate by accident.
    """

    values: Tuple[Any, ...]

    def __repr__(self) -> str:
        inner = ", ".join(repr(v) for v in self.values)
        return f"Conflict({inner})"


class RecordType(ABC):
    """Shape contract for one domain record type.

    Implemented once per domain, usually on top of generated types.
    """

    name: str

    @property
    @abstractmethod
    def fields(self) -> Mapping[str, type]:
        """Ordered field name -> semantic type. Empty means open schema."""
        ...

    @property
    @abstractmethod
    def identity_keys(self) -> Tuple[Tuple[str, ...], ...]:
        """Identity-key candidate groups, each one or more field names."""
        ...

    @abstractmethod
    def to_mapping(self, record: Any) -> Dict[str, Any]:
        """Decompose a record into a field -> value mapping."""
        ...

    @abstractmethod
    def from_mapping(self, mapping: Mapping[str, Any]) -> Any:
        """Build a record from a field -> value mapping."""
        ...

    def present(self, record: Any) -> Dict[str, Any]:
        """Mapping of only the fields that carry a known value."""
        mapping = record if isinstance(record, Mapping) else self.to_mapping(record)
        return {k: v for k, v in mapping.items() if not is_absent(v)}

    def identity_tokens(self, record: Any) -> List[IdentityToken]:
        """One token per identity-key group whose fields are all present.

        Two records sharing any token refer to the same entity.
        """
        mapping = self.present(record)
        tokens: List[IdentityToken] = []
        for index, group in enumerate(self.identity_keys):
            if all(f in mapping for f in group):
                tokens.append((index, tuple(freeze(mapping[f]) for f in group)))
        return tokens

    def field_order(self, names: Iterable[str]) -> List[str]:
        """Declared fields first, then any extra names sorted."""
        wanted = set(names)
        declared = [f for f in self.fields if f in wanted]
        extra = sorted(wanted - set(declared))
        return declared + extra

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class MappingRecordType(RecordType):
    """Record type whose records are plain dicts.

    Example:
        vehicles = MappingRecordType("vehicle", identity_keys=[("vin",)])
    """

    def __init__(
        self,
        name: str,
        *,
        fields: Optional[Mapping[str, type]] = None,
        identity_keys: Sequence[Sequence[str]] = (),
    ) -> None:
        self.name = name
        self._fields: Dict[str, type] = dict(fields or {})
        self._identity_keys = tuple(tuple(group) for group in identity_keys)
        for group in self._identity_keys:
            if not group:
                raise ValueError(f"{name}: identity-key groups must name at least one field")

    @property
    def fields(self) -> Mapping[str, type]:
        return self._fields

    @property
    def identity_keys(self) -> Tuple[Tuple[str, ...], ...]:
        return self._identity_keys

    def to_mapping(self, record: Any) -> Dict[str, Any]:
        return dict(record)

    def from_mapping(self, mapping: Mapping[str, Any]) -> Dict[str, Any]:
        return dict(mapping)


class DataclassRecordType(RecordType):
    """Record type backed by a dataclass, the shape of schema-generated types.

    Fields are read from the dataclass definition; identity keys are
    declared by the caller or via an ``__identity_keys__`` class attribute.

    Example:
        @dataclass
        class Book:
            isbn: Optional[str] = None
            title: Optional[str] = None
            year: Optional[int] = None
            __identity_keys__ = (("isbn",),)

        books = DataclassRecordType(Book)
    """

    def __init__(
        self,
        cls: Type[Any],
        *,
        identity_keys: Optional[Sequence[Sequence[str]]] = None,
        name: Optional[str] = None,
    ) -> None:
        if not dataclasses.is_dataclass(cls):
            raise TypeError(f"{cls!r} is not a dataclass")
        self.cls = cls
        self.name = name or cls.__name__
        self._fields = {f.name: f.type for f in dataclasses.fields(cls)}
        keys = identity_keys if identity_keys is not None else getattr(cls, "__identity_keys__", ())
        self._identity_keys = tuple(tuple(group) for group in keys)

        unknown = [f for group in self._identity_keys for f in group if f not in self._fields]
        if unknown:
            raise ValueError(f"{self.name}: identity keys reference unknown fields {unknown}")

    @property
    def fields(self) -> Mapping[str, type]:
        return self._fields

    @property
    def identity_keys(self) -> Tuple[Tuple[str, ...], ...]:
        return self._identity_keys

    def to_mapping(self, record: Any) -> Dict[str, Any]:
        return {name: getattr(record, name) for name in self._fields}

    def from_mapping(self, mapping: Mapping[str, Any]) -> Any:
        known = {k: v for k, v in mapping.items() if k in self._fields and not is_absent(v)}
        return self.cls(**known)
