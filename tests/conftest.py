"""Pytest configuration and fixtures."""

import pytest

from databroker.lib.broker import Broker
from databroker.lib.connectors import InMemoryConnector, Role
from databroker.lib.record import MappingRecordType
from databroker.lib.settings import BrokerSettings


MOBY_DICK_ISBN = "978-0142437247"


@pytest.fixture
def book_type():
    """Book record type identified by ISBN or by title + author."""
    return MappingRecordType(
        "book",
        fields={"isbn": str, "title": str, "author": str, "year": int, "format": str},
        identity_keys=[("isbn",), ("title", "author")],
    )


@pytest.fixture
def library_books():
    """Catalogue rows keyed by ISBN."""
    return [
        {"isbn": MOBY_DICK_ISBN, "title": "Moby-Dick", "author": "Herman Melville", "year": 1851},
        {"isbn": "978-0141439518", "title": "Pride and Prejudice", "author": "Jane Austen", "year": 1813},
        {"isbn": "978-0553213119", "title": "Frankenstein", "author": "Mary Shelley", "year": 1818},
    ]


@pytest.fixture
def archive_books():
    """PDF archive rows keyed by title + author, no ISBNs."""
    return [
        {"title": "Moby-Dick", "author": "Herman Melville", "format": "Pdf"},
        {"title": "Bartleby, the Scrivener", "author": "Herman Melville", "format": "Pdf", "year": 1853},
    ]


@pytest.fixture
def settings():
    """Fast deadlines for tests; never reads a stray .env."""
    return BrokerSettings(
        _env_file=None,
        query_timeout_seconds=5.0,
        submit_timeout_seconds=5.0,
        max_workers=4,
    )


@pytest.fixture
def broker(book_type, settings):
    """Empty broker for the book record type."""
    with Broker(book_type, settings) as b:
        yield b


@pytest.fixture
def library(library_books):
    return InMemoryConnector("library", records=library_books, role=Role.BOTH)


@pytest.fixture
def archive(archive_books):
    return InMemoryConnector("archive", records=archive_books)
