"""Tests for per-connector query translation and local fallback.

The central property: executing the compiled part natively and then the
residual part locally gives exactly what full local evaluation gives.
"""

import pytest

from databroker.lib.query import (
    ALWAYS,
    Combinator,
    F,
    Operator,
    Query,
    SortKey,
    apply_query,
)
from databroker.lib.translate import (
    WILDCARD,
    Capabilities,
    CompiledQuery,
    TranslationKind,
    translate,
)


ROWS = [
    {"isbn": "1", "title": "Moby-Dick", "author": "Herman Melville", "year": 1851, "format": "Pdf"},
    {"isbn": "2", "title": "Pride and Prejudice", "author": "Jane Austen", "year": 1813, "format": "Hardcover"},
    {"isbn": "3", "title": "Frankenstein", "author": "Mary Shelley", "year": 1818},
    {"isbn": "4", "title": "Dracula", "author": "Bram Stoker", "year": 1897, "format": "Pdf"},
    {"isbn": "5", "title": "Bartleby", "author": "Herman Melville", "year": 1853, "format": "Hardcover"},
    {"isbn": "6", "title": "Emma", "author": "Jane Austen"},
]

EQ_ONLY = Capabilities(filters={WILDCARD: {Operator.EQ}})
EQ_SORT_PAGE = Capabilities(
    filters={WILDCARD: {Operator.EQ}},
    sort_sequences=[(SortKey("year", descending=True),)],
    pagination=True,
)
AUTHOR_ONLY = Capabilities(filters={"author": {"eq", "ne"}}, pagination=True)

QUERIES = [
    Query(),
    Query().filter(F("author") == "Herman Melville"),
    Query().filter((F("author") == "Herman Melville") & (F("year") < 1852)),
    Query().filter((F("format") == "Pdf") | (F("year") < 1815)),
    Query().filter(~(F("format") == "Pdf")).order_by("year"),
    Query().filter(F("author") == "Jane Austen").order_by("-year").page(limit=1),
    Query().filter(F("author") != "Jane Austen").order_by("-year").page(offset=1, limit=2),
    Query().order_by("-year").page(offset=2, limit=2).select("title"),
    Query().filter(F("title").contains("e")).order_by("author", "-year").page(limit=3),
    Query().filter((F("year") > 1815) ^ (F("format") == "Pdf")).select("isbn", "year"),
]

CAPABILITIES = [
    Capabilities.none(),
    Capabilities.full(),
    EQ_ONLY,
    EQ_SORT_PAGE,
    AUTHOR_ONLY,
    Capabilities(filters={WILDCARD: {"eq", "lt", "gt"}}, combinators={Combinator.OR}, projection=True),
]


def run_native_then_residual(query, capabilities, rows):
    translation = translate(query, capabilities, extra_fields=["isbn"])
    native = apply_query(translation.compiled.to_query(), rows)
    return apply_query(translation.residual, native)


class TestFallbackEquivalence:
    """Native-plus-residual evaluation equals full local evaluation."""

    @pytest.mark.parametrize("query", QUERIES, ids=str)
    @pytest.mark.parametrize("capabilities", CAPABILITIES)
    def test_equivalent_results(self, query, capabilities):
        """Same rows in the same order for every capability set."""
        assert run_native_then_residual(query, capabilities, ROWS) == apply_query(query, ROWS)


class TestFilterSplitting:
    """Tests for predicate translation."""

    def test_full_translation(self):
        """Covered filters compile completely."""
        query = Query().filter((F("author") == "Herman Melville") & (F("format") == "Pdf"))
        translation = translate(query, EQ_ONLY)
        assert translation.is_native
        assert translation.kind is TranslationKind.FULL
        assert translation.compiled.where == query.where
        assert translation.residual.where is ALWAYS

    def test_partial_translation(self):
        """Uncovered AND children become residual."""
        eq = F("author") == "Herman Melville"
        lt = F("year") < 1852
        translation = translate(Query().filter(eq & lt), EQ_ONLY, connector="library")
        assert translation.kind is TranslationKind.PARTIAL
        assert translation.compiled.where == eq
        assert translation.residual.where == lt
        assert translation.fallback.connector == "library"
        assert translation.fallback.deferred_filter == "year < 1852"

    def test_no_translation(self):
        """Nothing covered: compiled is fetch-all, residual is the whole query."""
        query = Query().filter(F("year") < 1852)
        translation = translate(query, Capabilities.none())
        assert translation.kind is TranslationKind.NONE
        assert translation.compiled == CompiledQuery()
        assert translation.residual.where == query.where

    def test_or_needs_combinator(self):
        """A disjunction of covered leaves is residual without OR support."""
        query = Query().filter((F("format") == "Pdf") | (F("author") == "Jane Austen"))
        assert translate(query, EQ_ONLY).residual.where == query.where
        with_or = Capabilities(filters={WILDCARD: {"eq"}}, combinators={"or"})
        assert translate(query, with_or).is_native

    def test_or_needs_every_leaf(self):
        """One uncovered leaf makes the whole disjunction residual."""
        query = Query().filter((F("format") == "Pdf") | (F("year") < 1815))
        caps = Capabilities(filters={WILDCARD: {"eq"}}, combinators={"or"})
        translation = translate(query, caps)
        assert translation.compiled.where is ALWAYS
        assert translation.residual.where == query.where

    def test_not_and_xor(self):
        """NOT and XOR follow the same whole-subtree rule."""
        negated = Query().filter(~(F("format") == "Pdf"))
        assert not translate(negated, EQ_ONLY).is_native
        assert translate(negated, Capabilities(filters={WILDCARD: {"eq"}}, combinators={"not"})).is_native

        either = Query().filter((F("format") == "Pdf") ^ (F("author") == "Jane Austen"))
        assert not translate(either, Capabilities(filters={WILDCARD: {"eq"}}, combinators={"or", "not"})).is_native
        assert translate(either, Capabilities(filters={WILDCARD: {"eq"}}, combinators={"xor"})).is_native

    def test_field_specific_capabilities(self):
        """A named field entry overrides the wildcard."""
        caps = Capabilities(filters={WILDCARD: {"eq"}, "year": {"lt"}})
        assert caps.supports("year", Operator.LT)
        assert not caps.supports("year", Operator.EQ)
        assert caps.supports("author", Operator.EQ)

    def test_range_and_text_capabilities(self):
        """Range and text leaves need their own operators."""
        caps = Capabilities(filters={"year": {"range"}, "title": {"contains"}})
        assert caps.covers(F("year").between(1800, 1900))
        assert caps.covers(F("title").contains("whale"))
        assert not caps.covers(F("title").startswith("Moby"))

    def test_inclusive_only_ranges(self):
        """Exclusive bounds stay local when the range operator is inclusive only."""
        caps = Capabilities(filters={"year": {"range"}}, exclusive_ranges=False)
        assert caps.covers(F("year").between(1800, 1900))
        assert caps.covers(F("year").between(1800, None))
        assert not caps.covers(F("year").between(1800, 1900, inclusive=False))
        translation = translate(Query().filter(F("year").between(1800, 1900, inclusive=False)), caps)
        assert translation.compiled.where is ALWAYS
        assert translation.fallback.deferred_filter


class TestSortAndLimit:
    """Tests for sort and pagination push-down."""

    def test_exact_sort_sequence_is_native(self):
        """Declared sort sequence with native filter pushes sort and limit."""
        query = Query().filter(F("author") == "Jane Austen").order_by("-year").page(offset=2, limit=3)
        translation = translate(query, EQ_SORT_PAGE)
        assert translation.compiled.sort == (SortKey("year", descending=True),)
        assert translation.compiled.limit == 6
        assert translation.residual.sort == ()
        assert translation.residual.pagination.offset == 2
        assert translation.residual.pagination.limit == 3

    def test_other_direction_deferred(self):
        """Only the exact declared sequence is native."""
        query = Query().order_by("year").page(limit=3)
        translation = translate(query, EQ_SORT_PAGE)
        assert translation.compiled.sort == ()
        assert translation.compiled.limit is None
        assert translation.fallback.deferred_sort
        assert translation.fallback.deferred_limit

    def test_residual_filter_blocks_sort_and_limit(self):
        """Residual filtering would change what a native limit cuts off."""
        query = Query().filter(F("year") > 1815).order_by("-year").page(limit=2)
        translation = translate(query, EQ_SORT_PAGE)
        assert translation.compiled.sort == ()
        assert translation.compiled.limit is None
        assert translation.residual.pagination.limit == 2

    def test_limit_without_sort(self):
        """Without a sort the source's prefix is arbitrary, so no limit is pushed."""
        query = Query().filter(F("author") == "Jane Austen").page(limit=4)
        translation = translate(query, AUTHOR_ONLY)
        assert translation.compiled.limit is None
        assert translation.residual.pagination.limit == 4
        assert translation.fallback.deferred_limit

    def test_limit_pushdown_disabled(self):
        """Hosts can keep every limit local."""
        query = Query().filter(F("author") == "Jane Austen").page(limit=4)
        translation = translate(query, AUTHOR_ONLY, limit_pushdown=False)
        assert translation.compiled.limit is None
        assert translation.residual.pagination.limit == 4

    def test_sort_any(self):
        """sort_any accepts every sequence."""
        query = Query().order_by("author", "-year")
        assert translate(query, Capabilities.full()).compiled.sort == query.sort


class TestProjection:
    """Tests for projection push-down."""

    def test_projection_widened(self):
        """Residual, sort and identity fields are requested too."""
        caps = Capabilities(filters={WILDCARD: {"eq"}}, projection=True)
        query = Query().filter(F("year") < 1900).order_by("author").select("title")
        translation = translate(query, caps, extra_fields=["isbn"])
        assert translation.compiled.projection == ("title", "author", "isbn", "year")
        assert translation.residual.projection == ("title",)

    def test_projection_not_supported(self):
        """Without projection support the source returns whole records."""
        query = Query().select("title")
        assert translate(query, EQ_ONLY).compiled.projection is None


class TestCapabilities:
    """Tests for Capabilities construction."""

    def test_strings_normalised(self):
        """Operator, combinator and sort strings become enums and keys."""
        caps = Capabilities(filters={"year": ["LT", "ge"]}, combinators=["OR"], sort_sequences=[["-year", "title"]])
        assert caps.filters["year"] == frozenset({Operator.LT, Operator.GE})
        assert Combinator.OR in caps.combinators
        assert caps.supports_sort((SortKey("year", True), SortKey("title")))

    def test_to_dict(self):
        """Describes itself for the CLI."""
        d = Capabilities.full().to_dict()
        assert d["filters"]["*"] == sorted(op.value for op in Operator)
        assert d["sort_any"] is True
        assert d["exclusive_ranges"] is True

    def test_fallback_describe(self):
        """Fallback notes are human readable."""
        query = Query().filter(F("year") < 1900).order_by("year")
        note = translate(query, EQ_ONLY, connector="library").fallback
        assert note.describe() == "library: none translation, local evaluation of filter year < 1900, sort"
