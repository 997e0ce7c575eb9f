"""Data-integration broker.

One query interface over many independently formatted providers, with
per-provider query translation, constraint-based pruning, and
identity-based merging of partial records.

Usage:
    python -m databroker describe books.yaml
    python -m databroker query books.yaml --where '{"field": "author", "op": "eq", "value": "Herman Melville"}'
"""

from databroker.lib.broker import Broker, QueryResult
from databroker.lib.query import F, Query, SortKey
from databroker.lib.record import DataclassRecordType, MappingRecordType

__version__ = "0.1.0"

__all__ = [
    "Broker",
    "QueryResult",
    "F",
    "Query",
    "SortKey",
    "DataclassRecordType",
    "MappingRecordType",
]
