"""Broker settings and configuration models.

``BrokerSettings`` is read from ``BROKER_*`` environment variables (and a
``.env`` file) with pydantic-settings. The remaining models validate the
YAML document that ``config_loader.load_broker`` turns into a ready
``Broker``.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from databroker.lib.constraints import Constraint, ConstraintKind
from databroker.lib.query import Combinator, Operator, SortKey, predicate_from_dict
from databroker.lib.record import MappingRecordType
from databroker.lib.translate import Capabilities

logger = logging.getLogger(__name__)

__all__ = [
    "BrokerConfig",
    "BrokerSettings",
    "CapabilitiesConfig",
    "ConnectorConfig",
    "ConstraintConfig",
    "FIELD_TYPES",
    "RecordTypeConfig",
]

FIELD_TYPES: Dict[str, Type[Any]] = {
    "str": str,
    "string": str,
    "int": int,
    "integer": int,
    "float": float,
    "number": float,
    "bool": bool,
    "boolean": bool,
    "date": dt.date,
    "datetime": dt.datetime,
    "list": list,
    "any": object,
}


class BrokerSettings(BaseSettings):
    """Environment-based broker settings.

    Automatically loads from environment variables with BROKER_ prefix.

    Example:
        >>> # BROKER_QUERY_TIMEOUT_SECONDS=5
        >>> # BROKER_SOURCE_TIMEOUT_SECONDS=2
        >>> settings = BrokerSettings()
        >>> settings.query_timeout_seconds
        5.0
    """

    query_timeout_seconds: float = Field(default=30.0, gt=0, description="Deadline for a whole federation round")
    source_timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Deadline for any single source within a round"
    )
    submit_timeout_seconds: float = Field(default=30.0, gt=0, description="Deadline for one submission batch")
    max_workers: int = Field(default=8, ge=1, le=64, description="Concurrent connector calls")
    limit_pushdown: bool = Field(default=True, description="Push offset+limit to sources when exact")
    dnf_clause_limit: int = Field(default=256, ge=1, description="Satisfiability check expansion cap")

    model_config = SettingsConfigDict(
        env_prefix="BROKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ============================================
# YAML configuration models
# ============================================


class RecordTypeConfig(BaseModel):
    """Record shape declared in YAML.

    Example:
        record_type:
          name: book
          fields: {isbn: str, title: str, author: str, year: int, format: str}
          identity_keys: [[isbn], [title, author]]
    """

    name: str = Field(..., min_length=1)
    fields: Dict[str, str] = Field(default_factory=dict, description="Field name -> type name")
    identity_keys: List[List[str]] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def validate_field_types(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = {name: t for name, t in v.items() if t.lower() not in FIELD_TYPES}
        if unknown:
            raise ValueError(f"Unknown field types {unknown}; expected one of: {sorted(FIELD_TYPES)}")
        return {name: t.lower() for name, t in v.items()}

    @model_validator(mode="after")
    def validate_identity_keys(self) -> "RecordTypeConfig":
        for group in self.identity_keys:
            if not group:
                raise ValueError("identity key groups must name at least one field")
            if self.fields:
                missing = [f for f in group if f not in self.fields]
                if missing:
                    raise ValueError(f"identity key {group} references undeclared fields {missing}")
        return self

    def build(self) -> MappingRecordType:
        return MappingRecordType(
            self.name,
            fields={name: FIELD_TYPES[t] for name, t in self.fields.items()},
            identity_keys=self.identity_keys,
        )


class ConstraintConfig(BaseModel):
    """A guarantee or requirement with its predicate in dict form."""

    name: str = Field(..., min_length=1)
    kind: Literal["guarantee", "requirement"] = "guarantee"
    where: Dict[str, Any] = Field(..., description="Predicate, e.g. {field: format, op: eq, value: Pdf}")
    description: Optional[str] = None

    @field_validator("where")
    @classmethod
    def validate_predicate(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        predicate_from_dict(v)
        return v

    def build(self) -> Constraint:
        return Constraint(
            self.name,
            predicate_from_dict(self.where),
            ConstraintKind(self.kind),
            self.description,
        )


class CapabilitiesConfig(BaseModel):
    """Explicit capability override for a connector."""

    filters: Dict[str, List[str]] = Field(default_factory=dict)
    combinators: List[str] = Field(default_factory=list)
    sort_sequences: List[List[str]] = Field(default_factory=list)
    sort_any: bool = False
    pagination: bool = False
    projection: bool = False
    exclusive_ranges: bool = True

    @field_validator("filters")
    @classmethod
    def validate_operators(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        valid = {op.value for op in Operator}
        for name, ops in v.items():
            bad = [op for op in ops if op.lower() not in valid]
            if bad:
                raise ValueError(f"Unknown operators {bad} for {name!r}; expected one of: {sorted(valid)}")
        return v

    @field_validator("combinators")
    @classmethod
    def validate_combinators(cls, v: List[str]) -> List[str]:
        valid = {c.value for c in Combinator}
        bad = [c for c in v if c.lower() not in valid]
        if bad:
            raise ValueError(f"Unknown combinators {bad}; expected some of: {sorted(valid)}")
        return v

    def build(self) -> Capabilities:
        return Capabilities(
            filters={name: frozenset(Operator(op.lower()) for op in ops) for name, ops in self.filters.items()},
            combinators=frozenset(Combinator(c.lower()) for c in self.combinators),
            sort_sequences=frozenset(tuple(SortKey.parse(k) for k in seq) for seq in self.sort_sequences),
            sort_any=self.sort_any,
            pagination=self.pagination,
            projection=self.projection,
            exclusive_ranges=self.exclusive_ranges,
        )


class ConnectorConfig(BaseModel):
    """One connector entry.

    ``options`` holds the type-specific constructor arguments, e.g.
    ``base_url``/``endpoint``/``data_path`` for ``rest`` or ``records`` for
    ``memory``.
    """

    name: str = Field(..., min_length=1)
    type: Literal["rest", "memory"]
    role: Literal["source", "sink", "both"] = "source"
    capabilities: Optional[CapabilitiesConfig] = None
    constraints: List[ConstraintConfig] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_rest_options(self) -> "ConnectorConfig":
        if self.type == "rest":
            missing = [k for k in ("base_url", "endpoint") if not self.options.get(k)]
            if missing:
                raise ValueError(f"rest connector {self.name!r} requires options: {missing}")
        return self

    @model_validator(mode="after")
    def validate_constraint_kinds(self) -> "ConnectorConfig":
        if self.role == "source" and any(c.kind == "requirement" for c in self.constraints):
            logger.warning("Connector %s is a source; its requirements will never be checked", self.name)
        return self


class BrokerConfig(BaseModel):
    """Top-level YAML document."""

    record_type: RecordTypeConfig
    settings: Dict[str, Any] = Field(default_factory=dict)
    connectors: List[ConnectorConfig] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_unique_names(self) -> "BrokerConfig":
        seen: set = set()
        duplicates = []
        for c in self.connectors:
            if c.name in seen:
                duplicates.append(c.name)
            seen.add(c.name)
        if duplicates:
            raise ValueError(f"Duplicate connector names: {sorted(set(duplicates))}")
        return self

    def build_settings(self) -> BrokerSettings:
        """Environment settings overridden by the document's ``settings`` block."""
        return BrokerSettings(**self.settings)
