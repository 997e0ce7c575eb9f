"""Broker library modules.

This package contains the query model, translator, constraint system,
merge engine, connector abstraction and broker orchestration, plus the
logging, configuration and retry utilities around them.
"""

from databroker.lib.broker import (
    Broker,
    QueryResult,
    SourceFailure,
    SourcePlan,
    SubmissionOutcome,
    SubmissionStatus,
)
from databroker.lib.codec import Codec, JsonCodec
from databroker.lib.config_loader import YAMLConfigError, build_broker, load_broker, validate_broker_config
from databroker.lib.connectors import Connector, ConnectorDescriptor, InMemoryConnector, RestConnector, Role
from databroker.lib.constraints import (
    Constraint,
    ConstraintKind,
    ValidationResult,
    Violation,
    is_satisfiable,
    validate,
)
from databroker.lib.env import expand_config, expand_env_vars, load_env_file
from databroker.lib.errors import (
    BrokerError,
    ConfigurationError,
    ConnectionError,
    FormatError,
    MergeConflictError,
    NoSuchRecordError,
    RejectedError,
)
from databroker.lib.logging import BrokerLogger, JSONFormatter, get_broker_logger, setup_logging
from databroker.lib.merge import FieldContribution, MergeEngine, MergeResult
from databroker.lib.query import (
    ALWAYS,
    And,
    Comparison,
    F,
    Not,
    Operator,
    Or,
    Pagination,
    Predicate,
    Query,
    Range,
    SortKey,
    TextMatch,
    TextMode,
    Xor,
    apply_query,
    evaluate,
    predicate_from_dict,
    predicate_to_dict,
)
from databroker.lib.record import ABSENT, Conflict, DataclassRecordType, MappingRecordType, RecordType
from databroker.lib.resilience import RetryConfig, retry_operation
from databroker.lib.settings import BrokerSettings
from databroker.lib.translate import Capabilities, CompiledQuery, Translation, TranslationFallback, translate

__all__ = [
    # Broker
    "Broker",
    "QueryResult",
    "SourceFailure",
    "SourcePlan",
    "SubmissionOutcome",
    "SubmissionStatus",
    # Codec
    "Codec",
    "JsonCodec",
    # Config
    "BrokerSettings",
    "YAMLConfigError",
    "build_broker",
    "load_broker",
    "validate_broker_config",
    # Connectors
    "Connector",
    "ConnectorDescriptor",
    "InMemoryConnector",
    "RestConnector",
    "Role",
    # Constraints
    "Constraint",
    "ConstraintKind",
    "ValidationResult",
    "Violation",
    "is_satisfiable",
    "validate",
    # Env
    "expand_config",
    "expand_env_vars",
    "load_env_file",
    # Errors
    "BrokerError",
    "ConfigurationError",
    "ConnectionError",
    "FormatError",
    "MergeConflictError",
    "NoSuchRecordError",
    "RejectedError",
    # Logging
    "BrokerLogger",
    "JSONFormatter",
    "get_broker_logger",
    "setup_logging",
    # Merge
    "FieldContribution",
    "MergeEngine",
    "MergeResult",
    # Query
    "ALWAYS",
    "And",
    "Comparison",
    "F",
    "Not",
    "Operator",
    "Or",
    "Pagination",
    "Predicate",
    "Query",
    "Range",
    "SortKey",
    "TextMatch",
    "TextMode",
    "Xor",
    "apply_query",
    "evaluate",
    "predicate_from_dict",
    "predicate_to_dict",
    # Records
    "ABSENT",
    "Conflict",
    "DataclassRecordType",
    "MappingRecordType",
    "RecordType",
    # Resilience
    "RetryConfig",
    "retry_operation",
    # Translation
    "Capabilities",
    "CompiledQuery",
    "Translation",
    "TranslationFallback",
    "translate",
]
