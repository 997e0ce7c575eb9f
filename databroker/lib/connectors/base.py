"""Abstract base class for connectors.

A connector is the only thing that talks to a provider. It declares what
it can do (role, capabilities, constraints) and the broker decides what
to ask of it; the broker never inspects anything else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from databroker.lib.constraints import Constraint, ConstraintKind
from databroker.lib.translate import Capabilities, CompiledQuery

logger = logging.getLogger(__name__)

__all__ = ["Connector", "ConnectorDescriptor", "Role"]


class Role(Enum):
    SOURCE = "source"
    SINK = "sink"
    BOTH = "both"

    @property
    def is_source(self) -> bool:
        return self in (Role.SOURCE, Role.BOTH)

    @property
    def is_sink(self) -> bool:
        return self in (Role.SINK, Role.BOTH)


@dataclass(frozen=True)
class ConnectorDescriptor:
    """Immutable snapshot of what a connector declared at registration."""

    name: str
    role: Role
    capabilities: Capabilities
    constraints: Tuple[Constraint, ...] = ()
    wire_format: Optional[str] = None

    @property
    def guarantees(self) -> List[Constraint]:
        return [c for c in self.constraints if c.kind is ConstraintKind.GUARANTEE]

    @property
    def requirements(self) -> List[Constraint]:
        return [c for c in self.constraints if c.kind is ConstraintKind.REQUIREMENT]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role.value,
            "wire_format": self.wire_format,
            "capabilities": self.capabilities.to_dict(),
            "constraints": [
                {"name": c.name, "kind": c.kind.value, "predicate": str(c.predicate)}
                for c in self.constraints
            ],
        }


class Connector(ABC):
    """Abstract base class for sources and sinks.

    Subclasses implement ``execute`` if they are sources and ``submit`` if
    they are sinks. Both may raise ``ConnectionError``; ``execute`` may also
    raise ``FormatError`` and ``submit`` may raise ``RejectedError``.
    """

    def __init__(
        self,
        name: str,
        *,
        role: Role = Role.SOURCE,
        capabilities: Optional[Capabilities] = None,
        constraints: Sequence[Constraint] = (),
    ) -> None:
        self.name = name
        self.role = role
        self.capabilities = capabilities or Capabilities.none()
        self.constraints: Tuple[Constraint, ...] = tuple(constraints)

    @property
    def wire_format(self) -> Optional[str]:
        return None

    @property
    def descriptor(self) -> ConnectorDescriptor:
        return ConnectorDescriptor(
            name=self.name,
            role=self.role,
            capabilities=self.capabilities,
            constraints=self.constraints,
            wire_format=self.wire_format,
        )

    @abstractmethod
    def execute(self, compiled: CompiledQuery) -> List[Dict[str, Any]]:
        """Run a compiled query and return record mappings.

        The result must match ``compiled`` exactly: the broker relies on it
        having applied the filter, sort and limit it was given.

        Runs on a broker worker thread. A source that misses the round
        deadline is reported as timed out, but its thread cannot be
        interrupted and keeps running until this call returns, so
        implementations must bound their own I/O with a transport timeout
        (``RestConnector`` passes ``timeout`` to every request).
        """
        pass

    def submit(self, record: Mapping[str, Any]) -> None:
        """Deliver one record to the sink."""
        raise NotImplementedError(f"{self.name} does not accept submissions")

    def submit_all(self, records: Iterable[Mapping[str, Any]]) -> None:
        """Deliver a batch; override when the provider has a bulk endpoint."""
        for record in records:
            self.submit(record)

    def size_hint(self) -> Optional[int]:
        """Approximate number of records the source holds, if known."""
        return None

    def close(self) -> None:
        """Release provider resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, role={self.role.value})"
