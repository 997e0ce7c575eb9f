"""Broker orchestration.

One ``Broker`` owns an explicit set of registered connectors for one
record type. A federation round:

1. prunes sources whose guarantees make the query provably empty,
2. translates the query per source (pure, no I/O),
3. executes every eligible source concurrently under the round and
   per-source deadlines,
4. applies each source's residual filter locally,
5. merges everything by identity,
6. sorts, paginates and projects the merged records.

A failing or slow source never fails the round; it is reported in
``QueryResult.degraded``. Submissions validate every sink requirement
before anything is sent, and each sink succeeds or fails on its own.

Example:
    broker = Broker(books, BrokerSettings(query_timeout_seconds=5))
    broker.register(InMemoryConnector("archive", records=archive_rows))
    broker.register(RestConnector("library", "https://library.example.org", "/api/books"))

    result = broker.query(Query().filter(F("author") == "Herman Melville"))
    for merged in result:
        print(merged.record, merged.conflicts)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from databroker.lib.connectors.base import Connector, ConnectorDescriptor
from databroker.lib.constraints import Violation, is_satisfiable, validate
from databroker.lib.errors import (
    BrokerError,
    ConfigurationError,
    ConnectionError,
    FormatError,
    MergeConflictError,
    NoSuchRecordError,
    RejectedError,
)
from databroker.lib.logging import BrokerLogger, get_broker_logger
from databroker.lib.merge import MergeEngine, MergeResult
from databroker.lib.query import ALWAYS, Query, encode_cursor, filter_rows, paginate, sort_rows
from databroker.lib.record import RecordType
from databroker.lib.settings import BrokerSettings
from databroker.lib.translate import Translation, TranslationFallback, translate

logger = logging.getLogger(__name__)

__all__ = [
    "Broker",
    "QueryResult",
    "SourceFailure",
    "SourcePlan",
    "SubmissionOutcome",
    "SubmissionStatus",
]


# ============================================
# Results
# ============================================


@dataclass(frozen=True)
class SourceFailure:
    """A source whose contribution was dropped from a round."""

    source: str
    reason: str  # connection | format | timeout | error
    error_type: Optional[str] = None
    message: str = ""

    @classmethod
    def from_exception(cls, source: str, exc: BaseException) -> "SourceFailure":
        if isinstance(exc, ConnectionError):
            reason = "connection"
        elif isinstance(exc, FormatError):
            reason = "format"
        else:
            reason = "error"
        message = exc.message if isinstance(exc, BrokerError) else str(exc)
        return cls(source, reason, type(exc).__name__, message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "reason": self.reason,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class QueryResult:
    """Merged records of one federation round plus what went wrong."""

    results: List[MergeResult] = field(default_factory=list)
    degraded: List[SourceFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    fallbacks: List[TranslationFallback] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total: int = 0
    # False when a pushed-down limit was filled, so more matches may exist
    total_exact: bool = True
    queried: List[str] = field(default_factory=list)
    round_id: Optional[str] = None

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [r.record for r in self.results]

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)

    @property
    def degraded_sources(self) -> List[str]:
        return [f.source for f in self.degraded]

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[MergeResult]:
        return iter(self.results)

    def to_frame(self) -> pd.DataFrame:
        """Merged records as a DataFrame; conflicting cells hold ``Conflict``."""
        columns: List[str] = []
        for r in self.results:
            columns.extend(k for k in r.record if k not in columns)
        return pd.DataFrame.from_records(self.records, columns=columns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "total": self.total,
            "total_exact": self.total_exact,
            "next_cursor": self.next_cursor,
            "results": [r.to_dict() for r in self.results],
            "degraded": [f.to_dict() for f in self.degraded],
            "skipped": list(self.skipped),
            "fallbacks": [f.describe() for f in self.fallbacks],
        }


class SubmissionStatus(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class SubmissionOutcome:
    """What happened to one batch at one sink."""

    sink: str
    status: SubmissionStatus
    records: int = 0
    violations: List[Violation] = field(default_factory=list)
    error_type: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SubmissionStatus.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sink": self.sink,
            "status": self.status.value,
            "records": self.records,
            "violations": [str(v) for v in self.violations],
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass(frozen=True)
class SourcePlan:
    """Per-source decision for one query, computed before any I/O."""

    source: str
    eligible: bool
    translation: Optional[Translation] = None
    sample_limit: Optional[int] = None


# ============================================
# Broker
# ============================================


class Broker:
    """Federates queries and routes submissions over registered connectors."""

    def __init__(self, record_type: RecordType, settings: Optional[BrokerSettings] = None) -> None:
        self.record_type = record_type
        self.settings = settings or BrokerSettings()
        self._connectors: Dict[str, Connector] = {}
        self._descriptors: Dict[str, ConnectorDescriptor] = {}
        self._lock = threading.Lock()
        self._merge = MergeEngine(record_type)

    # ----------------------------------------
    # Registration
    # ----------------------------------------

    def register(self, connector: Connector) -> ConnectorDescriptor:
        """Add a connector; its descriptor is frozen from here on.

        Raises:
            ConfigurationError: If the name is already registered
        """
        descriptor = connector.descriptor
        with self._lock:
            if descriptor.name in self._connectors:
                raise ConfigurationError(
                    f"Connector {descriptor.name!r} is already registered",
                    field="name",
                    value=descriptor.name,
                    suggestion="Deregister the existing connector first or choose another name.",
                )
            self._connectors[descriptor.name] = connector
            self._descriptors[descriptor.name] = descriptor
        logger.info(
            "Registered %s connector %s (%d constraints)",
            descriptor.role.value,
            descriptor.name,
            len(descriptor.constraints),
        )
        return descriptor

    def deregister(self, name: str) -> Connector:
        with self._lock:
            if name not in self._connectors:
                raise ConfigurationError(f"No connector named {name!r}", field="name", value=name)
            self._descriptors.pop(name)
            connector = self._connectors.pop(name)
        logger.info("Deregistered connector %s", name)
        return connector

    def connector(self, name: str) -> Connector:
        try:
            return self._connectors[name]
        except KeyError:
            raise ConfigurationError(f"No connector named {name!r}", field="name", value=name) from None

    @property
    def connectors(self) -> List[ConnectorDescriptor]:
        with self._lock:
            return list(self._descriptors.values())

    @property
    def sources(self) -> List[str]:
        return [d.name for d in self.connectors if d.role.is_source]

    @property
    def sinks(self) -> List[str]:
        return [d.name for d in self.connectors if d.role.is_sink]

    def close(self) -> None:
        for connector in list(self._connectors.values()):
            try:
                connector.close()
            except Exception as e:
                logger.warning("Failed to close connector %s: %s", connector.name, e)

    def __enter__(self) -> "Broker":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ----------------------------------------
    # Planning
    # ----------------------------------------

    def _identity_fields(self) -> List[str]:
        return sorted({f for group in self.record_type.identity_keys for f in group})

    def plan(self, query: Query, *, sample_limit: Optional[int] = None) -> List[SourcePlan]:
        """Decide per source whether to query it and what to send.

        Pure: no connector is called. A page limit is only pushed down
        when exactly one source is eligible; several truncated sources
        could not be merged into the right page.
        """
        plans: List[SourcePlan] = []
        extra = self._identity_fields()
        sources = [d for d in self.connectors if d.role.is_source]
        satisfiable = {
            d.name: is_satisfiable(query, d.guarantees, limit=self.settings.dnf_clause_limit) for d in sources
        }
        push_limit = self.settings.limit_pushdown and sum(satisfiable.values()) == 1
        for descriptor in sources:
            if not satisfiable[descriptor.name]:
                plans.append(SourcePlan(descriptor.name, eligible=False))
                continue
            translation = translate(
                query,
                descriptor.capabilities,
                connector=descriptor.name,
                extra_fields=extra,
                limit_pushdown=push_limit,
            )
            if sample_limit is not None and translation.residual.where is ALWAYS and descriptor.capabilities.pagination:
                translation = Translation(
                    translation.compiled.with_limit(sample_limit),
                    translation.residual,
                    translation.fallback,
                )
            plans.append(SourcePlan(descriptor.name, True, translation, sample_limit))
        return plans

    # ----------------------------------------
    # Querying
    # ----------------------------------------

    def _run_source(self, plan: SourcePlan) -> List[Dict[str, Any]]:
        assert plan.translation is not None
        connector = self._connectors[plan.source]
        rows = connector.execute(plan.translation.compiled)
        residual = plan.translation.residual.where
        if residual is not ALWAYS:
            rows = filter_rows(residual, rows)
        if plan.sample_limit is not None:
            rows = rows[: plan.sample_limit]
        return [dict(r) for r in rows]

    def _gather(
        self,
        plans: Sequence[SourcePlan],
        log: BrokerLogger,
        started: float,
    ) -> Tuple[List[Tuple[str, List[Dict[str, Any]]]], List[SourceFailure]]:
        """Run sources concurrently and wait once, up to the round deadline.

        Late sources are reported as timed out and the round returns
        without them. Their worker threads are abandoned, not stopped:
        each keeps running until its connector's own transport timeout.
        """
        if not plans:
            return [], []

        budget = self.settings.query_timeout_seconds
        if self.settings.source_timeout_seconds is not None:
            budget = min(budget, self.settings.source_timeout_seconds)
        deadline = started + budget

        outputs: Dict[str, List[Dict[str, Any]]] = {}
        failures: Dict[str, SourceFailure] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self.settings.max_workers, len(plans)),
            thread_name_prefix="databroker-source",
        )
        try:
            futures: Dict[Future, SourcePlan] = {executor.submit(self._run_source, p): p for p in plans}
            done, pending = wait(futures, timeout=max(0.0, deadline - time.monotonic()))

            for future in done:
                name = futures[future].source
                try:
                    outputs[name] = future.result()
                except Exception as e:
                    failures[name] = SourceFailure.from_exception(name, e)
                    log.warning("Source %s failed: %s", name, failures[name].message, extra={"source": name})

            for future in pending:
                name = futures[future].source
                future.cancel()
                failures[name] = SourceFailure(
                    name,
                    "timeout",
                    None,
                    f"No response within {budget:.1f}s",
                )
                log.warning("Source %s timed out after %.1fs", name, budget, extra={"source": name})
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        # Registration order, independent of completion order
        ordered_outputs = [(p.source, outputs[p.source]) for p in plans if p.source in outputs]
        ordered_failures = [failures[p.source] for p in plans if p.source in failures]
        return ordered_outputs, ordered_failures

    def _round(self, query: Query, *, sample_limit: Optional[int] = None) -> QueryResult:
        round_id = uuid.uuid4().hex[:8]
        log = get_broker_logger(__name__, round_id=round_id, record_type=self.record_type.name)
        started = time.monotonic()

        plans = self.plan(query, sample_limit=sample_limit)
        skipped = [p.source for p in plans if not p.eligible]
        eligible = [p for p in plans if p.eligible]
        fallbacks = [p.translation.fallback for p in eligible if p.translation and p.translation.fallback]

        log.info("Round started: %s over %d sources (%d skipped)", query, len(eligible), len(skipped))
        if skipped:
            log.info("Skipped by constraints: %s", ", ".join(skipped))
        for note in fallbacks:
            log.debug("Fallback: %s", note.describe())

        outputs, failures = self._gather(eligible, log, started)
        merged = self._merge.merge(outputs)

        if query.sort:
            merged = sort_rows(merged, query.sort, mapping_of=lambda r: r.record)
        total = len(merged)
        # A source that filled its pushed limit may hold more matches
        fetched = {name: len(rows) for name, rows in outputs}
        total_exact = sample_limit is not None or not any(
            p.translation is not None
            and p.translation.compiled.limit is not None
            and fetched.get(p.source, 0) >= p.translation.compiled.limit
            for p in eligible
        )
        pagination = None if sample_limit is not None else query.pagination
        page = paginate(merged, pagination)
        results = [r.project(query.projection) for r in page]

        next_cursor = None
        if pagination is not None and pagination.end is not None and pagination.end < total:
            next_cursor = encode_cursor(pagination.end)

        elapsed = time.monotonic() - started
        log.info(
            "Round finished: %d merged records, %d degraded sources",
            len(results),
            len(failures),
        )
        log.metric("round_duration_seconds", round(elapsed, 4), unit="seconds")

        return QueryResult(
            results=results,
            degraded=failures,
            skipped=skipped,
            fallbacks=fallbacks,
            next_cursor=next_cursor,
            total=total,
            total_exact=total_exact,
            queried=[p.source for p in eligible],
            round_id=round_id,
        )

    def query(self, query: Optional[Query] = None) -> QueryResult:
        """Run one federation round."""
        return self._round(query or Query())

    def sample(self, query: Optional[Query] = None, per_source: int = 10) -> QueryResult:
        """At most ``per_source`` matching records from each source, merged.

        Pagination on ``query`` is ignored.
        """
        if per_source < 1:
            raise ValueError("per_source must be >= 1")
        return self._round((query or Query()).unpaged(), sample_limit=per_source)

    def fetch_optional(self, query: Optional[Query] = None) -> Optional[MergeResult]:
        """First merged record of a round, or None."""
        result = self.query(query)
        return result.results[0] if result.results else None

    def fetch_one(self, query: Optional[Query] = None) -> MergeResult:
        """First merged record of a round.

        Raises:
            NoSuchRecordError: If nothing matched
        """
        result = self.query(query)
        if not result.results:
            details: Dict[str, Any] = {"query": str(query or Query())}
            if result.degraded:
                details["degraded"] = ", ".join(result.degraded_sources)
            raise NoSuchRecordError("No record matched the query", details=details)
        return result.results[0]

    # ----------------------------------------
    # Submission
    # ----------------------------------------

    def _as_mapping(self, record: Any) -> Dict[str, Any]:
        if isinstance(record, MergeResult):
            if record.is_conflicted:
                raise MergeConflictError(
                    "Cannot submit a merged record with unresolved conflicts",
                    fields=list(record.conflicts),
                )
            return dict(record.record)
        if isinstance(record, Mapping):
            return dict(record)
        return self.record_type.to_mapping(record)

    def _targets(self, sinks: Optional[Iterable[str]]) -> List[str]:
        if sinks is None:
            return self.sinks
        names = list(sinks)
        for name in names:
            descriptor = self._descriptors.get(name)
            if descriptor is None or not descriptor.role.is_sink:
                raise ConfigurationError(f"{name!r} is not a registered sink", field="sinks", value=name)
        return names

    def submit(self, record: Any, sinks: Optional[Iterable[str]] = None) -> Dict[str, SubmissionOutcome]:
        """Validate and deliver one record to each target sink."""
        return self.submit_all([record], sinks)

    def submit_all(
        self,
        records: Iterable[Any],
        sinks: Optional[Iterable[str]] = None,
    ) -> Dict[str, SubmissionOutcome]:
        """Validate and deliver a batch to each target sink.

        A requirement violation by any record blocks the whole batch for
        that sink and the sink is never called. Sinks are independent: one
        rejecting or failing does not undo another.
        """
        batch = [self._as_mapping(r) for r in records]
        targets = self._targets(sinks)
        outcomes: Dict[str, SubmissionOutcome] = {}
        dispatch: List[str] = []

        for name in targets:
            requirements = self._descriptors[name].requirements
            violations: List[Violation] = []
            for mapping in batch:
                violations.extend(validate(mapping, requirements).violations)
            if violations:
                outcomes[name] = SubmissionOutcome(
                    name,
                    SubmissionStatus.REJECTED,
                    records=len(batch),
                    violations=violations,
                    error_type=RejectedError.__name__,
                    message="Violated: " + ", ".join(sorted({v.constraint for v in violations})),
                )
                logger.warning("Submission to %s blocked: %s", name, outcomes[name].message)
            else:
                dispatch.append(name)

        if dispatch and batch:
            outcomes.update(self._dispatch(dispatch, batch))
        for name in dispatch:
            outcomes.setdefault(name, SubmissionOutcome(name, SubmissionStatus.ACCEPTED, records=0))

        return {name: outcomes[name] for name in targets}

    def _deliver(self, name: str, batch: List[Dict[str, Any]]) -> None:
        connector = self._connectors[name]
        if len(batch) == 1:
            connector.submit(batch[0])
        else:
            connector.submit_all(batch)

    def _dispatch(self, names: Sequence[str], batch: List[Dict[str, Any]]) -> Dict[str, SubmissionOutcome]:
        timeout = self.settings.submit_timeout_seconds
        outcomes: Dict[str, SubmissionOutcome] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self.settings.max_workers, len(names)),
            thread_name_prefix="databroker-sink",
        )
        try:
            futures: Dict[Future, str] = {executor.submit(self._deliver, n, batch): n for n in names}
            done, pending = wait(futures, timeout=timeout)

            for future in done:
                name = futures[future]
                try:
                    future.result()
                    outcomes[name] = SubmissionOutcome(name, SubmissionStatus.ACCEPTED, records=len(batch))
                    logger.info("Submitted %d records to %s", len(batch), name)
                except RejectedError as e:
                    outcomes[name] = SubmissionOutcome(
                        name,
                        SubmissionStatus.REJECTED,
                        records=len(batch),
                        violations=list(e.violations),
                        error_type=type(e).__name__,
                        message=e.message,
                    )
                    logger.warning("Sink %s rejected submission: %s", name, e.message)
                except Exception as e:
                    outcomes[name] = SubmissionOutcome(
                        name,
                        SubmissionStatus.FAILED,
                        records=len(batch),
                        error_type=type(e).__name__,
                        message=e.message if isinstance(e, BrokerError) else str(e),
                    )
                    logger.error("Submission to %s failed: %s", name, e)

            for future in pending:
                name = futures[future]
                future.cancel()
                outcomes[name] = SubmissionOutcome(
                    name,
                    SubmissionStatus.TIMED_OUT,
                    records=len(batch),
                    message=f"No response within {timeout:.1f}s",
                )
                logger.warning("Submission to %s timed out after %.1fs", name, timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return outcomes

    def describe(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self.connectors]

    def __repr__(self) -> str:
        return f"Broker({self.record_type.name!r}, connectors={[d.name for d in self.connectors]})"
