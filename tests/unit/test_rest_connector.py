"""Tests for the REST connector.

Uses httpx.MockTransport so no network is touched.
"""

import json

import httpx
import pytest

from databroker.lib.broker import Broker
from databroker.lib.codec import JsonCodec
from databroker.lib.connectors import RestConnector, Role, create_connector
from databroker.lib.errors import BrokerError, ConfigurationError, ConnectionError, FormatError, RejectedError
from databroker.lib.query import Combinator, F, Operator, Query, SortKey
from databroker.lib.resilience import RetryConfig
from databroker.lib.settings import BrokerSettings
from databroker.lib.translate import CompiledQuery, translate


BOOKS = [
    {"isbn": "978-0142437247", "title": "Moby-Dick", "author": "Herman Melville", "year": 1851},
    {"isbn": "978-0141439518", "title": "Pride and Prejudice", "author": "Jane Austen", "year": 1813},
]


def make_connector(handler, **kwargs):
    kwargs.setdefault("codec", JsonCodec(data_path="data"))
    return RestConnector(
        "library",
        "https://library.example.org/",
        "/api/books",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestConfiguration:
    """Tests for constructor validation and defaults."""

    def test_default_capabilities(self):
        """Equality on every field plus templated operators."""
        conn = RestConnector(
            "library",
            "https://library.example.org",
            "/api/books",
            operator_params={"ge": "{field}_from"},
            sort_param="sort",
            sortable=["year"],
            limit_param="limit",
        )
        caps = conn.capabilities
        assert caps.supports("author", Operator.EQ)
        assert caps.supports("year", Operator.GE)
        assert not caps.supports("year", Operator.LT)
        assert caps.supports_sort((SortKey("year", descending=True),))
        assert caps.pagination
        assert conn.wire_format == "json"
        assert Combinator.OR in caps.combinators
        assert not caps.exclusive_ranges

    def test_no_limit_param_no_pagination(self):
        """Pagination is only declared when the endpoint takes a limit."""
        conn = RestConnector("library", "https://library.example.org", "/api/books")
        assert not conn.capabilities.pagination

    def test_single_request_disables_or(self):
        """Disjunctions are only declared when several requests are allowed."""
        conn = RestConnector("library", "https://library.example.org", "/api/books", max_or_requests=1)
        assert Combinator.OR not in conn.capabilities.combinators
        with pytest.raises(ConfigurationError):
            RestConnector("library", "https://library.example.org", "/api/books", max_or_requests=0)

    def test_bound_templates_allow_exclusive_ranges(self):
        """All four comparison templates make exclusive ranges renderable."""
        conn = RestConnector(
            "library",
            "https://library.example.org",
            "/api/books",
            operator_params={"gt": "{field}_gt", "ge": "{field}_ge", "lt": "{field}_lt", "le": "{field}_le"},
        )
        assert conn.capabilities.exclusive_ranges

    def test_invalid_configuration(self):
        """All problems are reported together."""
        with pytest.raises(ConfigurationError) as exc_info:
            RestConnector("library", "", "", sortable=["year"], sink_method="DELETE", operator_params={"lt": "before"})
        message = str(exc_info.value)
        assert "base_url is required" in message
        assert "endpoint is required" in message
        assert "sort_param" in message
        assert "sink_method" in message
        assert "{field}" in message

    def test_create_connector(self):
        """Factory builds connectors by type name."""
        conn = create_connector("rest", "library", base_url="https://library.example.org", endpoint="/b")
        assert isinstance(conn, RestConnector)
        with pytest.raises(ValueError):
            create_connector("ftp", "archive")


class TestRenderParams:
    """Tests for native query rendering."""

    @pytest.fixture
    def conn(self):
        return RestConnector(
            "library",
            "https://library.example.org",
            "/api/books",
            param_names={"author": "by"},
            operator_params={"ge": "{field}_from", "in": "{field}_any", "range": "{field}", "contains": "q_{field}"},
            sort_param="sort",
            sortable=["year"],
            limit_param="limit",
        )

    def test_equality(self, conn):
        """Each equality is one parameter, renamed where configured."""
        compiled = CompiledQuery(where=(F("author") == "Herman Melville") & (F("available") == True))  # noqa: E712
        assert conn.render_params(compiled) == [("by", "Herman Melville"), ("available", "true")]

    def test_templates(self, conn):
        """Other operators use their templates."""
        compiled = CompiledQuery(
            where=(F("year") >= 1800) & F("format").isin(["Pdf", "Epub"]) & F("title").contains("whale")
        )
        assert conn.render_params(compiled) == [
            ("year_from", "1800"),
            ("format_any", "Pdf,Epub"),
            ("q_title", "whale"),
        ]

    def test_range(self, conn):
        """Inclusive ranges render as lo..hi."""
        assert conn.render_params(CompiledQuery(where=F("year").between(1800, 1900))) == [("year", "1800..1900")]

    def test_exclusive_range_refused(self, conn):
        """Exclusive bounds cannot be expressed."""
        with pytest.raises(ConfigurationError):
            conn.render_params(CompiledQuery(where=F("year").between(1800, 1900, inclusive=False)))

    def test_exclusive_range_through_bound_templates(self):
        """Open bounds use the gt/lt templates, closed ones ge/le."""
        conn = RestConnector(
            "library",
            "https://library.example.org",
            "/api/books",
            operator_params={"gt": "{field}_gt", "ge": "{field}_ge", "lt": "{field}_lt", "le": "{field}_le"},
        )
        compiled = CompiledQuery(where=F("year").between(1800, 1900, inclusive=False))
        assert conn.render_params(compiled) == [("year_gt", "1800"), ("year_lt", "1900")]
        half_open = CompiledQuery(where=F("year").between(1800, None, inclusive=False))
        assert conn.render_params(half_open) == [("year_gt", "1800")]

    def test_exclusive_range_stays_local(self, conn):
        """With only a range template the bounds are filtered after the fetch."""
        query = Query().filter(F("year").between(1800, 1900, inclusive=False))
        translation = translate(query, conn.capabilities)
        assert conn.render_params(translation.compiled) == []
        assert translation.residual.where == query.where

    def test_or_one_param_set_per_branch(self, conn):
        """ANDed parts are repeated in every branch's request."""
        compiled = CompiledQuery(
            where=(F("format") == "Pdf") & ((F("author") == "Jane Austen") | (F("author") == "Mary Shelley")),
            limit=2,
        )
        assert conn.render_param_sets(compiled) == [
            [("format", "Pdf"), ("by", "Jane Austen"), ("limit", "2")],
            [("format", "Pdf"), ("by", "Mary Shelley"), ("limit", "2")],
        ]
        with pytest.raises(ConfigurationError):
            conn.render_params(compiled)

    def test_or_over_request_cap(self):
        """More branches than max_or_requests cannot be rendered."""
        conn = RestConnector("library", "https://library.example.org", "/api/books", max_or_requests=2)
        compiled = CompiledQuery(where=(F("year") == 1) | (F("year") == 2) | (F("year") == 3))
        assert conn.render_param_sets(compiled) is None

    def test_sort_and_limit(self, conn):
        """Sort keys and limit are appended."""
        compiled = CompiledQuery(sort=(SortKey("year", descending=True),), limit=5)
        assert conn.render_params(compiled) == [("sort", "-year"), ("limit", "5")]

    def test_translation_only_uses_declared_features(self, conn):
        """What translate() compiles, render_params can render."""
        query = Query().filter((F("author") == "Jane Austen") & (F("year") < 1815)).order_by("-year").page(limit=2)
        translation = translate(query, conn.capabilities)
        assert conn.render_params(translation.compiled) == [("by", "Jane Austen")]
        assert translation.residual.where == (F("year") < 1815)


class TestExecute:
    """Tests for fetching records."""

    def test_fetch_with_params(self):
        """Params are sent and the body decoded with the codec."""
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"data": BOOKS})

        conn = make_connector(handler)
        rows = conn.execute(CompiledQuery(where=F("author") == "Herman Melville"))
        assert rows == BOOKS
        assert seen["url"].path == "/api/books"
        assert seen["url"].params["author"] == "Herman Melville"

    def test_server_error_is_connection_error(self):
        """5xx responses are transport failures."""
        conn = make_connector(lambda request: httpx.Response(503))
        with pytest.raises(ConnectionError) as exc_info:
            conn.execute(CompiledQuery())
        assert exc_info.value.status_code == 503

    def test_transport_error_is_connection_error(self):
        """Network errors are wrapped."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        conn = make_connector(handler)
        with pytest.raises(ConnectionError) as exc_info:
            conn.execute(CompiledQuery())
        assert exc_info.value.details["cause_type"] == "ConnectError"

    def test_bad_request_is_broker_error(self):
        """The provider refusing the query is not retryable."""
        conn = make_connector(lambda request: httpx.Response(400, text="unknown param"))
        with pytest.raises(BrokerError) as exc_info:
            conn.execute(CompiledQuery())
        assert not isinstance(exc_info.value, ConnectionError)

    def test_malformed_body_is_format_error(self):
        """Undecodable responses raise FormatError."""
        conn = make_connector(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(FormatError):
            conn.execute(CompiledQuery())

    def test_retry_on_connection_error(self):
        """Opt-in retry repeats transient failures."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"data": BOOKS[:1]})

        conn = make_connector(handler, retry=RetryConfig(max_attempts=3, backoff_seconds=0.01, jitter=False))
        assert conn.execute(CompiledQuery()) == BOOKS[:1]
        assert len(calls) == 3

    def test_no_retry_by_default(self):
        """Without a RetryConfig the first failure propagates."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        conn = make_connector(handler)
        with pytest.raises(ConnectionError):
            conn.execute(CompiledQuery())
        assert len(calls) == 1

    def test_or_sends_one_request_per_branch(self):
        """Branch results are unioned without duplicates, then sorted and cut."""
        shelley = {"isbn": "978-0553213119", "title": "Frankenstein", "author": "Mary Shelley", "year": 1818}
        catalogue = BOOKS + [shelley]
        seen = []

        def handler(request):
            params = dict(request.url.params)
            seen.append(params)
            rows = [b for b in catalogue if all(str(b.get(k)) == v for k, v in params.items() if k != "limit")]
            return httpx.Response(200, json={"data": rows})

        conn = make_connector(handler, limit_param="limit")
        compiled = CompiledQuery(
            where=(F("author") == "Jane Austen") | (F("year") == 1813) | (F("author") == "Mary Shelley"),
            sort=(SortKey("year", descending=True),),
            limit=2,
        )
        rows = conn.execute(compiled)
        assert seen == [
            {"author": "Jane Austen", "limit": "2"},
            {"year": "1813", "limit": "2"},
            {"author": "Mary Shelley", "limit": "2"},
        ]
        assert [r["title"] for r in rows] == ["Frankenstein", "Pride and Prejudice"]

    def test_too_many_branches_filtered_locally(self):
        """Above max_or_requests the plain conditions are sent and the rest filtered here."""
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"data": BOOKS})

        conn = make_connector(handler, max_or_requests=2, limit_param="limit")
        compiled = CompiledQuery(
            where=(F("isbn") == BOOKS[1]["isbn"]) & ((F("year") == 1813) | (F("year") == 1) | (F("year") == 2)),
            limit=1,
        )
        rows = conn.execute(compiled)
        assert seen == [{"isbn": BOOKS[1]["isbn"]}]
        assert rows == [BOOKS[1]]

    def test_exclusive_range_does_not_degrade_a_round(self, book_type):
        """An uncovered exclusive range is filtered by the broker instead."""
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"data": BOOKS})

        conn = make_connector(handler, operator_params={"range": "{field}_range"})
        broker = Broker(book_type, BrokerSettings(_env_file=None))
        broker.register(conn)
        result = broker.query(Query().filter(F("year").between(1813, 1851, inclusive=False)))
        assert not result.is_degraded
        assert result.records == []
        assert seen == [{}]

        result = broker.query(Query().filter(F("year").between(1813, 1851)))
        assert len(result) == 2
        assert seen[-1] == {"year_range": "1813..1851"}

    def test_sink_only_cannot_execute(self):
        """Sinks are not sources."""
        conn = make_connector(lambda request: httpx.Response(200), role=Role.SINK)
        with pytest.raises(NotImplementedError):
            conn.execute(CompiledQuery())


class TestSubmit:
    """Tests for sink submission."""

    def test_submit_posts_encoded_record(self):
        """One record is one POST with the codec's content type."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201)

        conn = make_connector(handler, role=Role.SINK, sink_endpoint="/api/books/new")
        conn.submit(BOOKS[0])
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/books/new"
        assert seen[0].headers["content-type"] == "application/json"
        assert json.loads(seen[0].content) == BOOKS[0]

    def test_submit_all_one_by_one(self):
        """Without bulk support a batch is several requests."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        conn = make_connector(handler, role=Role.SINK)
        conn.submit_all(BOOKS)
        assert len(seen) == 2

    def test_submit_all_bulk(self):
        """With bulk support a batch is one array payload."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        conn = make_connector(handler, role=Role.SINK, bulk_submit=True, sink_method="put")
        conn.submit_all(BOOKS)
        assert len(seen) == 1
        assert seen[0].method == "PUT"
        assert json.loads(seen[0].content) == BOOKS

    @pytest.mark.parametrize("status", [400, 409, 422])
    def test_rejection_status(self, status):
        """Validation-style responses are rejections."""
        conn = make_connector(lambda request: httpx.Response(status, text="duplicate"), role=Role.SINK)
        with pytest.raises(RejectedError) as exc_info:
            conn.submit(BOOKS[0])
        assert exc_info.value.details["status_code"] == status

    def test_other_client_error(self):
        """Other 4xx responses are plain failures."""
        conn = make_connector(lambda request: httpx.Response(413), role=Role.SINK)
        with pytest.raises(BrokerError) as exc_info:
            conn.submit(BOOKS[0])
        assert not isinstance(exc_info.value, RejectedError)

    def test_source_only_cannot_submit(self):
        """Sources are not sinks."""
        conn = make_connector(lambda request: httpx.Response(200))
        with pytest.raises(NotImplementedError):
            conn.submit(BOOKS[0])

    def test_close_releases_client(self):
        """close() drops the httpx client."""
        conn = make_connector(lambda request: httpx.Response(200, json={"data": []}))
        conn.execute(CompiledQuery())
        assert conn._client is not None
        conn.close()
        assert conn._client is None
