"""YAML configuration loader for brokers.

Lets a host declare its record type and connectors in a YAML file instead
of Python.

Example YAML (books.yaml):
    record_type:
      name: book
      fields: {isbn: str, title: str, author: str, year: int, format: str}
      identity_keys: [[isbn], [title, author]]

    settings:
      query_timeout_seconds: 10

    connectors:
      - name: library
        type: rest
        role: both
        options:
          base_url: "https://${LIBRARY_HOST}"
          endpoint: /api/books
          data_path: data
          limit_param: limit
        constraints:
          - name: has_isbn
            kind: requirement
            where: {field: isbn, op: ne, value: ""}

      - name: pdf_archive
        type: memory
        options:
          records_file: ./fixtures/pdf_archive.yaml
        constraints:
          - name: pdf_only
            where: {field: format, op: eq, value: Pdf}

Usage:
    # Command line
    python -m databroker query books.yaml --where '{"field": "year", "op": "lt", "value": 1900}'

    # Python API
    from databroker.lib.config_loader import load_broker
    with load_broker("books.yaml") as broker:
        result = broker.query()
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from databroker.lib.broker import Broker
from databroker.lib.codec import JsonCodec
from databroker.lib.connectors import Connector, InMemoryConnector, RestConnector, Role
from databroker.lib.env import expand_config, load_env_file
from databroker.lib.errors import ConfigurationError
from databroker.lib.resilience import RetryConfig
from databroker.lib.settings import BrokerConfig, BrokerSettings, ConnectorConfig

logger = logging.getLogger(__name__)

__all__ = [
    "YAMLConfigError",
    "build_broker",
    "build_connector",
    "load_broker",
    "load_config",
    "validate_broker_config",
]

REST_OPTIONS = frozenset(
    {
        "base_url",
        "endpoint",
        "data_path",
        "param_names",
        "operator_params",
        "sort_param",
        "sortable",
        "limit_param",
        "sink_endpoint",
        "sink_method",
        "bulk_submit",
        "headers",
        "timeout",
        "max_or_requests",
        "retry",
    }
)
MEMORY_OPTIONS = frozenset({"records", "records_file", "reject"})


class YAMLConfigError(Exception):
    """Error in YAML broker configuration."""

    pass


def _resolve_path(path: str, config_dir: Path) -> Path:
    """Resolve a path relative to the YAML file's directory."""
    if os.path.isabs(path):
        return Path(path)
    return config_dir / path


def _read_yaml(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise YAMLConfigError(f"Invalid YAML syntax in {path}: {e}") from e


def load_config(config_path: Union[str, Path]) -> BrokerConfig:
    """Read, expand and validate a broker YAML file.

    Raises:
        YAMLConfigError: If the file is not valid YAML or fails validation
        FileNotFoundError: If the file doesn't exist
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    raw = _read_yaml(config_path)
    if not raw:
        raise YAMLConfigError("Empty configuration file")
    if not isinstance(raw, dict):
        raise YAMLConfigError("Configuration must be a mapping with 'record_type' and 'connectors'")

    try:
        return BrokerConfig.model_validate(expand_config(raw))
    except ValidationError as e:
        lines = [f"  - {'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise YAMLConfigError("Invalid broker configuration:\n" + "\n".join(lines)) from e


def _memory_records(options: Dict[str, Any], config_dir: Path) -> List[Dict[str, Any]]:
    records = list(options.get("records") or [])
    if options.get("records_file"):
        path = _resolve_path(str(options["records_file"]), config_dir)
        if not path.exists():
            raise YAMLConfigError(f"records_file not found: {path}")
        loaded = _read_yaml(path) or []
        if not isinstance(loaded, list):
            raise YAMLConfigError(f"records_file {path} must hold a list of records")
        records.extend(loaded)
    return records


RETRY_PRESETS = ("none", "default", "aggressive")


def _retry_config(value: Any) -> Optional[RetryConfig]:
    """``retry:`` is either a preset name or RetryConfig keyword arguments."""
    if not value:
        return None
    if isinstance(value, str):
        if value not in RETRY_PRESETS:
            raise YAMLConfigError(f"Unknown retry preset {value!r}. Expected one of: {list(RETRY_PRESETS)}")
        return getattr(RetryConfig, value)()
    if isinstance(value, dict):
        return RetryConfig(**value)
    raise YAMLConfigError(f"retry must be a preset name or a mapping, got {type(value).__name__}")


def build_connector(config: ConnectorConfig, config_dir: Optional[Path] = None) -> Connector:
    """Instantiate one connector from its validated config."""
    config_dir = config_dir or Path.cwd()
    options = dict(config.options)
    allowed = REST_OPTIONS if config.type == "rest" else MEMORY_OPTIONS
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise YAMLConfigError(
            f"Connector {config.name!r}: unknown {config.type} options {unknown}. "
            f"Expected some of: {sorted(allowed)}"
        )

    role = Role(config.role)
    capabilities = config.capabilities.build() if config.capabilities else None
    constraints = [c.build() for c in config.constraints]

    if config.type == "memory":
        return InMemoryConnector(
            config.name,
            records=_memory_records(options, config_dir),
            role=role,
            capabilities=capabilities,
            constraints=constraints,
            reject=options.get("reject"),
        )

    retry_options = options.pop("retry", None)
    data_path = options.pop("data_path", None)
    try:
        return RestConnector(
            config.name,
            codec=JsonCodec(data_path=data_path),
            role=role,
            capabilities=capabilities,
            constraints=constraints,
            retry=_retry_config(retry_options),
            **options,
        )
    except (ConfigurationError, TypeError, ValueError) as e:
        raise YAMLConfigError(f"Connector {config.name!r}: {e}") from e


def build_broker(
    config: BrokerConfig,
    *,
    config_dir: Optional[Path] = None,
    settings: Optional[BrokerSettings] = None,
) -> Broker:
    """Create a Broker and register every configured connector."""
    try:
        resolved = settings or config.build_settings()
    except ValidationError as e:
        raise YAMLConfigError(f"Invalid settings block: {e}") from e

    broker = Broker(config.record_type.build(), resolved)
    for connector_config in config.connectors:
        broker.register(build_connector(connector_config, config_dir))
    logger.info(
        "Loaded broker for %s with %d connectors",
        config.record_type.name,
        len(config.connectors),
    )
    return broker


def load_broker(
    config_path: Union[str, Path],
    *,
    env_file: Optional[Union[str, Path]] = None,
    settings: Optional[BrokerSettings] = None,
) -> Broker:
    """Load a ready Broker from a YAML configuration file.

    Args:
        config_path: Path to the YAML configuration file
        env_file: Optional .env file loaded before ``${VAR}`` expansion
        settings: Explicit settings; by default environment plus the
            file's ``settings`` block

    Raises:
        YAMLConfigError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    if env_file is not None:
        if not load_env_file(env_file):
            logger.warning("No variables loaded from env file %s", env_file)
    config_path = Path(config_path)
    config = load_config(config_path)
    return build_broker(config, config_dir=config_path.parent.resolve(), settings=settings)


def validate_broker_config(config_path: Union[str, Path]) -> List[str]:
    """Validate a YAML configuration file without keeping the broker.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: List[str] = []
    try:
        broker = load_broker(config_path)
        broker.close()
    except (YAMLConfigError, FileNotFoundError) as e:
        errors.append(str(e))
    return errors
