"""Connector abstraction and the bundled connector families.

Usage:
    from databroker.lib.connectors import InMemoryConnector, RestConnector, Role

    # Fixture data held in memory
    archive = InMemoryConnector("archive", records=[...])

    # HTTP provider with a JSON codec
    library = RestConnector("library", "https://library.example.org", "/api/books")
"""

from typing import Any, Dict, Type

from databroker.lib.connectors.base import Connector, ConnectorDescriptor, Role
from databroker.lib.connectors.memory import InMemoryConnector
from databroker.lib.connectors.rest import RestConnector

__all__ = [
    "Connector",
    "ConnectorDescriptor",
    "InMemoryConnector",
    "RestConnector",
    "Role",
    "CONNECTOR_TYPES",
    "create_connector",
]

CONNECTOR_TYPES: Dict[str, Type[Connector]] = {
    "memory": InMemoryConnector,
    "rest": RestConnector,
}


def create_connector(kind: str, name: str, **options: Any) -> Connector:
    """Instantiate a connector by type name.

    Args:
        kind: Connector type ('memory' or 'rest')
        name: Connector name
        **options: Constructor arguments for that type

    Returns:
        Connector instance

    Raises:
        ValueError: If the type is unknown
    """
    try:
        cls = CONNECTOR_TYPES[kind]
    except KeyError:
        raise ValueError(
            f"Unknown connector type {kind!r}. Expected one of: {', '.join(sorted(CONNECTOR_TYPES))}"
        ) from None
    return cls(name, **options)
