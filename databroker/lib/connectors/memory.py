"""In-memory connector.

Holds records in a list and runs compiled queries with the shared local
evaluator. Useful as a fixture provider for hosts and tests, and as the
reference for what "exact native execution" means.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from databroker.lib.connectors.base import Connector, Role
from databroker.lib.constraints import Constraint
from databroker.lib.errors import RejectedError
from databroker.lib.query import apply_query
from databroker.lib.translate import Capabilities, CompiledQuery

logger = logging.getLogger(__name__)

__all__ = ["InMemoryConnector"]


class InMemoryConnector(Connector):
    """Source and/or sink backed by a Python list.

    By default it can evaluate any query natively. Pass narrower
    capabilities to simulate a weaker provider.

    Example:
        library = InMemoryConnector(
            "library",
            records=[{"isbn": "978-0142437247", "title": "Moby-Dick", "year": 1851}],
            role=Role.BOTH,
        )
    """

    def __init__(
        self,
        name: str,
        records: Optional[Iterable[Mapping[str, Any]]] = None,
        *,
        role: Role = Role.SOURCE,
        capabilities: Optional[Capabilities] = None,
        constraints: Sequence[Constraint] = (),
        reject: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(
            name,
            role=role,
            capabilities=capabilities if capabilities is not None else Capabilities.full(),
            constraints=constraints,
        )
        self.records: List[Dict[str, Any]] = [dict(r) for r in (records or [])]
        self.submitted: List[Dict[str, Any]] = []
        self.executed: List[CompiledQuery] = []
        # Field names whose presence makes the sink refuse a record
        self.reject = set(reject or ())

    @property
    def wire_format(self) -> Optional[str]:
        return "memory"

    def execute(self, compiled: CompiledQuery) -> List[Dict[str, Any]]:
        if not self.role.is_source:
            raise NotImplementedError(f"{self.name} is not a source")
        self.executed.append(compiled)
        rows = apply_query(compiled.to_query(), self.records)
        logger.debug("%s returned %d of %d records", self.name, len(rows), len(self.records))
        return copy.deepcopy(rows)

    def _check(self, record: Mapping[str, Any]) -> None:
        refused = sorted(f for f in self.reject if record.get(f) is not None)
        if refused:
            raise RejectedError(
                f"Record refused by {self.name}",
                connector=self.name,
                details={"fields": ", ".join(refused)},
            )

    def submit(self, record: Mapping[str, Any]) -> None:
        if not self.role.is_sink:
            raise NotImplementedError(f"{self.name} is not a sink")
        self._check(record)
        self.submitted.append(dict(record))
        if self.role.is_source:
            self.records.append(dict(record))

    def submit_all(self, records: Iterable[Mapping[str, Any]]) -> None:
        # All or nothing
        batch = [dict(r) for r in records]
        for record in batch:
            self._check(record)
        for record in batch:
            self.submit(record)

    def size_hint(self) -> Optional[int]:
        return len(self.records)
