"""REST connector family.

Talks to an HTTP provider with httpx and an injected codec. Natively
supported filters are rendered as query parameters: each equality becomes
``field=value`` and other operators use configurable parameter templates.
A disjunction of renderable filters is sent as one request per branch and
the responses are combined. Everything else is left to the broker's local
fallback.

Example:
    library = RestConnector(
        "library",
        base_url="https://library.example.org",
        endpoint="/api/books",
        codec=JsonCodec(data_path="data"),
        role=Role.BOTH,
        operator_params={"ge": "{field}_from", "le": "{field}_to"},
        sort_param="sort",
        sortable=["year"],
        limit_param="limit",
    )
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import httpx

from databroker.lib.codec import Codec, JsonCodec
from databroker.lib.connectors.base import Connector, Role
from databroker.lib.constraints import Constraint
from databroker.lib.errors import BrokerError, ConfigurationError, ConnectionError, RejectedError
from databroker.lib.query import (
    Always,
    And,
    Combinator,
    Comparison,
    Operator,
    Or,
    Predicate,
    Range,
    SortKey,
    TextMatch,
    conjoin,
    conjuncts,
    filter_rows,
    sort_rows,
)
from databroker.lib.record import freeze
from databroker.lib.resilience import RetryConfig, retry_operation
from databroker.lib.translate import WILDCARD, Capabilities, CompiledQuery

logger = logging.getLogger(__name__)

__all__ = ["RestConnector"]

# Sink responses that mean "the provider refused this record"
REJECTION_STATUS_CODES = frozenset({400, 409, 422})

BOUND_OPERATORS = frozenset({Operator.GT, Operator.GE, Operator.LT, Operator.LE})

Params = List[Tuple[str, str]]


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _distinct(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop records already returned by an earlier request."""
    seen: Set[Hashable] = set()
    out: List[Dict[str, Any]] = []
    for row in rows:
        key = freeze(row)
        if key not in seen:
            seen.add(key)
            out.append(row)
    return out


class RestConnector(Connector):
    """Source and/or sink over an HTTP JSON-style API."""

    def __init__(
        self,
        name: str,
        base_url: str,
        endpoint: str,
        codec: Optional[Codec] = None,
        role: Role = Role.SOURCE,
        capabilities: Optional[Capabilities] = None,
        constraints: Sequence[Constraint] = (),
        param_names: Optional[Mapping[str, str]] = None,
        operator_params: Optional[Mapping[str, str]] = None,
        sort_param: Optional[str] = None,
        sortable: Sequence[str] = (),
        limit_param: Optional[str] = None,
        sink_endpoint: Optional[str] = None,
        sink_method: str = "POST",
        bulk_submit: bool = False,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        retry: Optional[RetryConfig] = None,
        max_or_requests: int = 8,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.codec = codec or JsonCodec()
        self.param_names = dict(param_names or {})
        self.operator_params = {
            Operator(str(op).lower()): template for op, template in (operator_params or {}).items()
        }
        self.sort_param = sort_param
        self.sortable = list(sortable)
        self.limit_param = limit_param
        self.sink_endpoint = sink_endpoint or endpoint
        self.sink_method = sink_method.upper()
        self.bulk_submit = bulk_submit
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.retry = retry
        self.max_or_requests = max_or_requests
        self._transport = transport
        self._client: Optional[httpx.Client] = None

        errors = self._validate()
        if errors:
            raise ConfigurationError(
                "RestConnector configuration errors:\n" + "\n".join(f"  - {e}" for e in errors),
                connector=name,
            )

        super().__init__(
            name,
            role=role,
            capabilities=capabilities if capabilities is not None else self._default_capabilities(),
            constraints=constraints,
        )

    def _validate(self) -> List[str]:
        errors: List[str] = []
        if not self.base_url:
            errors.append("base_url is required (e.g., 'https://api.example.com')")
        if not self.endpoint:
            errors.append("endpoint is required (e.g., '/v1/books')")
        if self.sortable and not self.sort_param:
            errors.append("sortable fields need a sort_param")
        if self.sink_method not in ("POST", "PUT", "PATCH"):
            errors.append(f"sink_method must be POST, PUT or PATCH, got {self.sink_method!r}")
        for template in self.operator_params.values():
            if "{field}" not in template:
                errors.append(f"operator parameter template {template!r} must contain '{{field}}'")
        if self.max_or_requests < 1:
            errors.append(f"max_or_requests must be at least 1, got {self.max_or_requests}")
        return errors

    def _default_capabilities(self) -> Capabilities:
        ops = {Operator.EQ, *self.operator_params}
        sequences = [(SortKey(f),) for f in self.sortable] + [(SortKey(f, True),) for f in self.sortable]
        return Capabilities(
            filters={WILDCARD: frozenset(ops)},
            combinators=frozenset({Combinator.OR}) if self.max_or_requests > 1 else frozenset(),
            sort_sequences=frozenset(sequences),
            pagination=self.limit_param is not None,
            # Open bounds are sent through the comparison templates
            exclusive_ranges=BOUND_OPERATORS <= set(self.operator_params),
        )

    @property
    def wire_format(self) -> Optional[str]:
        return self.codec.wire_format

    # ============================================
    # Query rendering
    # ============================================

    def _param(self, field_name: str) -> str:
        return self.param_names.get(field_name, field_name)

    def _render_leaf(self, node: Predicate) -> Params:
        if isinstance(node, Comparison):
            if node.op is Operator.EQ:
                return [(self._param(node.field), _render_value(node.value))]
            template = self.operator_params.get(node.op)
            if template is not None:
                key = template.format(field=self._param(node.field))
                if node.op is Operator.IN:
                    return [(key, ",".join(_render_value(v) for v in node.value))]
                return [(key, _render_value(node.value))]
        if isinstance(node, TextMatch):
            template = self.operator_params.get(node.op)
            if template is not None:
                return [(template.format(field=self._param(node.field)), node.text)]
        if isinstance(node, Range):
            params = self._render_range(node)
            if params is not None:
                return params
        raise ConfigurationError(
            f"Cannot render {node} as an HTTP parameter",
            connector=self.name,
            suggestion="Narrow the declared capabilities to what the endpoint accepts.",
        )

    def _render_range(self, node: Range) -> Optional[Params]:
        """``lo..hi`` through the range template, else one parameter per bound."""
        key = self._param(node.field)
        template = self.operator_params.get(Operator.RANGE)
        if node.inclusive and template is not None:
            low = "" if node.low is None else _render_value(node.low)
            high = "" if node.high is None else _render_value(node.high)
            return [(template.format(field=key), f"{low}..{high}")]

        bounds = []
        if node.low is not None:
            bounds.append((Operator.GE if node.low_inclusive else Operator.GT, node.low))
        if node.high is not None:
            bounds.append((Operator.LE if node.high_inclusive else Operator.LT, node.high))
        params: Params = []
        for op, value in bounds:
            bound_template = self.operator_params.get(op)
            if bound_template is None:
                return None
            params.append((bound_template.format(field=key), _render_value(value)))
        return params

    def _expand(self, node: Predicate) -> List[Params]:
        """Parameter lists whose union of results is exactly ``node``."""
        if isinstance(node, Always):
            return [[]]
        if isinstance(node, Or):
            return [params for child in node.children for params in self._expand(child)]
        if isinstance(node, And):
            combined: List[Params] = [[]]
            for child in node.children:
                combined = [left + right for left in combined for right in self._expand(child)]
            return combined
        return [self._render_leaf(node)]

    def _render_tail(self, compiled: CompiledQuery) -> Params:
        params: Params = []
        if compiled.sort and self.sort_param:
            keys = ",".join(f"-{k.field}" if k.descending else k.field for k in compiled.sort)
            params.append((self.sort_param, keys))
        if compiled.limit is not None and self.limit_param:
            params.append((self.limit_param, str(compiled.limit)))
        return params

    def render_param_sets(self, compiled: CompiledQuery) -> Optional[List[Params]]:
        """One parameter list per HTTP request, or None above ``max_or_requests``.

        Disjunctions become one request per branch; ANDed parts are
        combined across every branch.
        """
        sets: List[Params] = [[]]
        for node in conjuncts(compiled.where):
            sets = [left + right for left in sets for right in self._expand(node)]
            if len(sets) > self.max_or_requests:
                return None
        tail = self._render_tail(compiled)
        return [params + tail for params in sets]

    def render_params(self, compiled: CompiledQuery) -> Params:
        """HTTP query parameters for a compiled query that fits one request."""
        sets = self.render_param_sets(compiled)
        if sets is None or len(sets) != 1:
            raise ConfigurationError(
                f"{compiled.where} needs more than one request",
                connector=self.name,
            )
        return sets[0]

    # ============================================
    # Transport
    # ============================================

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise ConnectionError(
                f"{method} {url} failed",
                connector=self.name,
                host=self.base_url,
                cause=e,
            ) from e
        if response.status_code >= 500 or response.status_code in (401, 403, 404, 429):
            raise ConnectionError(
                f"{method} {url} returned HTTP {response.status_code}",
                connector=self.name,
                host=self.base_url,
                status_code=response.status_code,
            )
        return response

    def execute(self, compiled: CompiledQuery) -> List[Dict[str, Any]]:
        if not self.role.is_source:
            raise NotImplementedError(f"{self.name} is not a source")
        param_sets = self.render_param_sets(compiled)
        filter_here = param_sets is None
        if param_sets is None:
            # Too many branches: send the plain conditions, filter the rest here
            plain = conjoin(node for node in conjuncts(compiled.where) if not isinstance(node, Or))
            param_sets = self.render_param_sets(CompiledQuery(where=plain, sort=compiled.sort)) or [[]]
            logger.debug("%s: %s exceeds %d requests", self.name, compiled.where, self.max_or_requests)

        if len(param_sets) == 1 and not filter_here:
            return self._fetch(param_sets[0])

        rows = _distinct(row for params in param_sets for row in self._fetch(params))
        if filter_here:
            rows = [dict(r) for r in filter_rows(compiled.where, rows)]
        if compiled.sort:
            rows = sort_rows(rows, compiled.sort)
        if compiled.limit is not None:
            rows = rows[: compiled.limit]
        return rows

    def _fetch(self, params: Params) -> List[Dict[str, Any]]:
        logger.debug("Fetching %s%s with params %s", self.base_url, self.endpoint, params)

        response = retry_operation(
            lambda: self._request("GET", self.endpoint, params=params),
            self.retry,
            f"{self.name} fetch",
        )
        if response.status_code >= 400:
            raise BrokerError(
                f"Provider refused the query with HTTP {response.status_code}",
                connector=self.name,
                details={"params": params, "body": response.text[:200]},
            )

        records = self.codec.decode(response.content)
        logger.debug("%s returned %d records", self.name, len(records))
        return records

    def _send(self, body: bytes, label: str) -> None:
        response = retry_operation(
            lambda: self._request(
                self.sink_method,
                self.sink_endpoint,
                content=body,
                headers={"Content-Type": self.codec.content_type},
            ),
            self.retry,
            f"{self.name} {label}",
        )
        if response.status_code in REJECTION_STATUS_CODES:
            raise RejectedError(
                f"Sink refused {label} with HTTP {response.status_code}",
                connector=self.name,
                details={"status_code": response.status_code, "body": response.text[:200]},
            )
        if response.status_code >= 400:
            raise BrokerError(
                f"Sink {label} failed with HTTP {response.status_code}",
                connector=self.name,
                details={"body": response.text[:200]},
            )

    def submit(self, record: Mapping[str, Any]) -> None:
        if not self.role.is_sink:
            raise NotImplementedError(f"{self.name} is not a sink")
        self._send(self.codec.encode(record), "submission")

    def submit_all(self, records: Iterable[Mapping[str, Any]]) -> None:
        if not self.bulk_submit:
            super().submit_all(records)
            return
        if not self.role.is_sink:
            raise NotImplementedError(f"{self.name} is not a sink")
        self._send(self.codec.encode_all(records), "batch")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __repr__(self) -> str:
        return f"RestConnector({self.name!r}, {self.base_url}{self.endpoint}, role={self.role.value})"
