"""Tests for the query model and the shared predicate evaluator."""

import pytest

from databroker.lib.query import (
    ALWAYS,
    And,
    Comparison,
    F,
    Not,
    Operator,
    Or,
    Pagination,
    Query,
    Range,
    SortKey,
    TextMatch,
    TextMode,
    Xor,
    apply_query,
    conjoin,
    conjuncts,
    decode_cursor,
    encode_cursor,
    evaluate,
    predicate_fields,
    predicate_from_dict,
    predicate_to_dict,
    sort_rows,
)
from databroker.lib.record import ABSENT, Conflict


MOBY = {"isbn": "978-0142437247", "title": "Moby-Dick; or, The Whale", "author": "Herman Melville", "year": 1851}


class TestBuilder:
    """Tests for the F fluent builder."""

    def test_comparisons(self):
        """Python operators build comparison nodes."""
        assert (F("year") < 1950) == Comparison("year", Operator.LT, 1950)
        assert (F("format") == "Pdf") == Comparison("format", Operator.EQ, "Pdf")
        assert F("year").isin([1851, 1855]) == Comparison("year", Operator.IN, (1851, 1855))

    def test_combinators(self):
        """&, |, ~ and ^ build the combinator nodes."""
        a, b = F("year") > 1800, F("format") == "Pdf"
        assert isinstance(a & b, And)
        assert isinstance(a | b, Or)
        assert ~a == Not(a)
        assert ~~a == a
        assert (a ^ b) == Xor(a, b)

    def test_or_flattens(self):
        """Chained ORs stay one node."""
        a, b, c = F("a") == 1, F("b") == 2, F("c") == 3
        assert (a | b | c).children == (a, b, c)

    def test_range_requires_bound(self):
        """A range with no bounds is meaningless."""
        with pytest.raises(ValueError):
            Range("year")

    def test_comparison_rejects_text_operator(self):
        """Text operators belong to TextMatch."""
        with pytest.raises(ValueError):
            Comparison("title", Operator.CONTAINS, "whale")


class TestConjuncts:
    """Tests for conjuncts() and conjoin()."""

    def test_flatten_nested_and(self):
        """Nested ANDs flatten to one list."""
        a, b, c = F("a") == 1, F("b") == 2, F("c") == 3
        assert conjuncts(And((a, And((b, c))))) == [a, b, c]

    def test_always_is_empty(self):
        """ALWAYS contributes no conjuncts."""
        assert conjuncts(ALWAYS) == []
        assert conjoin([ALWAYS, ALWAYS]) is ALWAYS

    def test_single_conjunct_unwrapped(self):
        """One conjunct is returned as itself."""
        a = F("a") == 1
        assert conjoin([ALWAYS, a]) == a

    def test_predicate_fields(self):
        """All referenced fields are collected."""
        p = ((F("a") == 1) | ~(F("b") > 2)) ^ F("c").contains("x")
        assert predicate_fields(p) == {"a", "b", "c"}


class TestEvaluate:
    """Tests for evaluate()."""

    def test_comparison(self):
        """Basic comparisons."""
        assert evaluate(F("year") < 1900, MOBY)
        assert not evaluate(F("year") >= 1900, MOBY)
        assert evaluate(F("year").isin([1850, 1851]), MOBY)
        assert evaluate(F("author") != "Jane Austen", MOBY)

    def test_absent_leaf_is_false(self):
        """Any leaf on a missing or None field is false."""
        assert not evaluate(F("format") == "Pdf", MOBY)
        assert not evaluate(F("format") != "Pdf", MOBY)
        assert not evaluate(F("year") == 1851, {"year": None})
        assert not evaluate(F("year") == 1851, {"year": ABSENT})

    def test_not_is_plain_negation(self):
        """NOT of a false leaf on an absent field is true."""
        assert evaluate(~(F("format") == "Pdf"), MOBY)

    def test_conflict_never_matches(self):
        """A conflicting value satisfies no leaf."""
        row = {"year": Conflict((1851, 1855))}
        assert not evaluate(F("year") == 1851, row)
        assert not evaluate(F("year") != 1851, row)

    def test_incomparable_types_are_false(self):
        """Comparing a string with an int does not raise."""
        assert not evaluate(F("year") < 1900, {"year": "unknown"})
        assert not evaluate(F("year").between(1800, 1900), {"year": "unknown"})

    def test_range_bounds(self):
        """Inclusive and exclusive bounds."""
        assert evaluate(F("year").between(1851, 1900), MOBY)
        assert not evaluate(F("year").between(1851, 1900, inclusive=False), MOBY)
        assert evaluate(Range("year", low=1800), MOBY)
        assert not evaluate(Range("year", high=1851, high_inclusive=False), MOBY)

    def test_text_match_modes(self):
        """Contains, prefix, suffix and exact, case-insensitive by default."""
        assert evaluate(F("title").contains("WHALE"), MOBY)
        assert not evaluate(F("title").contains("WHALE", case_sensitive=True), MOBY)
        assert evaluate(F("title").startswith("moby"), MOBY)
        assert evaluate(F("title").endswith("whale"), MOBY)
        assert not evaluate(F("title").matches("moby-dick"), MOBY)
        assert evaluate(F("author").matches("herman melville"), MOBY)

    def test_text_match_on_non_string(self):
        """Text operators only match strings."""
        assert not evaluate(F("year").contains("18"), MOBY)

    def test_xor(self):
        """XOR is true when exactly one side holds."""
        assert evaluate((F("year") == 1851) ^ (F("author") == "Jane Austen"), MOBY)
        assert not evaluate((F("year") == 1851) ^ (F("author") == "Herman Melville"), MOBY)

    def test_always(self):
        """ALWAYS matches empty rows too."""
        assert evaluate(ALWAYS, {})


class TestSort:
    """Tests for SortKey and sort_rows()."""

    def test_parse(self):
        """Three spellings of a sort key."""
        assert SortKey.parse("year") == SortKey("year")
        assert SortKey.parse("-year") == SortKey("year", descending=True)
        assert SortKey.parse("year:desc") == SortKey("year", descending=True)
        with pytest.raises(ValueError):
            SortKey.parse("year:sideways")

    def test_unknown_sorts_last_both_directions(self):
        """Absent and conflicting values go last ascending and descending."""
        rows = [{"id": 1}, {"id": 2, "year": 1900}, {"id": 3, "year": Conflict((1, 2))}, {"id": 4, "year": 1800}]
        asc = [r["id"] for r in sort_rows(rows, [SortKey("year")])]
        desc = [r["id"] for r in sort_rows(rows, [SortKey("year", descending=True)])]
        assert asc == [4, 2, 1, 3]
        assert desc == [2, 4, 1, 3]

    def test_multi_key_tie_break(self):
        """Second key breaks ties of the first."""
        rows = [
            {"author": "B", "year": 2},
            {"author": "A", "year": 2},
            {"author": "C", "year": 1},
        ]
        ordered = sort_rows(rows, [SortKey("year", descending=True), SortKey("author")])
        assert [r["author"] for r in ordered] == ["A", "B", "C"]

    def test_mixed_types_do_not_raise(self):
        """Incomparable values fall back to a type-aware order."""
        rows = [{"v": "b"}, {"v": 2}, {"v": "a"}]
        assert len(sort_rows(rows, [SortKey("v")])) == 3

    def test_mixed_types_keep_numeric_order(self):
        """Numbers stay numerically ordered among themselves when strings are mixed in."""
        rows = [{"v": 1900}, {"v": "abc"}, {"v": 200}, {"v": 3.5}, {"v": "abb"}]
        assert [r["v"] for r in sort_rows(rows, [SortKey("v")])] == [3.5, 200, 1900, "abb", "abc"]

    def test_unorderable_values_fall_back_within_type(self):
        """Values that cannot be compared at all still sort deterministically."""
        rows = [{"v": {"b": 1}}, {"v": 5}, {"v": {"a": 1}}]
        assert [r["v"] for r in sort_rows(rows, [SortKey("v")])] == [{"a": 1}, {"b": 1}, 5]

    def test_mapping_of(self):
        """Non-mapping rows are sorted through an accessor."""
        rows = [("x", {"year": 2}), ("y", {"year": 1})]
        ordered = sort_rows(rows, [SortKey("year")], mapping_of=lambda r: r[1])
        assert [name for name, _ in ordered] == ["y", "x"]


class TestPagination:
    """Tests for Pagination and cursors."""

    def test_cursor_round_trip(self):
        """A cursor decodes to its offset."""
        assert decode_cursor(encode_cursor(20)) == 20

    def test_cursor_sets_offset(self):
        """Cursor pagination starts at the encoded offset."""
        page = Pagination(cursor=encode_cursor(5), limit=5)
        assert page.offset == 5
        assert page.end == 10

    def test_invalid_cursor(self):
        """Foreign tokens are rejected."""
        with pytest.raises(ValueError):
            decode_cursor("not-a-cursor")

    def test_offset_and_cursor_exclusive(self):
        """Offset and cursor cannot both be given."""
        with pytest.raises(ValueError):
            Pagination(offset=3, cursor=encode_cursor(5))

    def test_negative_values(self):
        """Negative offsets and limits are invalid."""
        with pytest.raises(ValueError):
            Pagination(offset=-1)
        with pytest.raises(ValueError):
            Pagination(limit=-1)


class TestApplyQuery:
    """Tests for full local evaluation."""

    ROWS = [
        {"isbn": "1", "title": "Moby-Dick", "year": 1851, "format": "Pdf"},
        {"isbn": "2", "title": "Pride and Prejudice", "year": 1813, "format": "Hardcover"},
        {"isbn": "3", "title": "Frankenstein", "year": 1818},
        {"isbn": "4", "title": "Dracula", "year": 1897, "format": "Pdf"},
    ]

    def test_filter_sort_page_project(self):
        """Filter, then sort, then paginate, then project."""
        query = (
            Query()
            .filter(F("year") < 1900)
            .order_by("-year")
            .page(offset=1, limit=2)
            .select("isbn", "year")
        )
        assert apply_query(query, self.ROWS) == [{"isbn": "1", "year": 1851}, {"isbn": "3", "year": 1818}]

    def test_projection_skips_missing_fields(self):
        """Projected fields a row lacks are left out."""
        query = Query().filter(F("isbn") == "3").select("isbn", "format")
        assert apply_query(query, self.ROWS) == [{"isbn": "3"}]

    def test_query_is_immutable(self):
        """Builders return new queries."""
        base = Query()
        filtered = base.filter(F("year") < 1900)
        assert base.where is ALWAYS
        assert filtered.where == (F("year") < 1900)

    def test_filter_conjoins(self):
        """Successive filters AND together."""
        query = Query().filter(F("year") < 1900).filter(F("format") == "Pdf")
        assert [r["isbn"] for r in apply_query(query, self.ROWS)] == ["1", "4"]

    def test_str(self):
        """Readable rendering for logs."""
        query = Query().filter(F("year") < 1900).order_by("year").page(limit=3)
        assert str(query) == "WHERE year < 1900 ORDER BY year:asc OFFSET 0 LIMIT 3"


class TestPredicateDict:
    """Tests for the dict form used in YAML and the CLI."""

    def test_round_trip(self):
        """Every node type survives to_dict/from_dict."""
        predicate = And(
            (
                Or((F("format") == "Pdf", F("year").isin([1851, 1855]))),
                Not(F("title").startswith("The", case_sensitive=True)),
                Xor(F("year").between(1800, 1900), Range("year", 1850, None, False, True)),
            )
        )
        assert predicate_from_dict(predicate_to_dict(predicate)) == predicate
        assert predicate_from_dict(predicate_to_dict(ALWAYS)) is ALWAYS

    def test_parse_comparison(self):
        """Operators are case-insensitive."""
        assert predicate_from_dict({"field": "year", "op": "LT", "value": 1950}) == (F("year") < 1950)

    def test_parse_text(self):
        """Text modes are keyed by name."""
        assert predicate_from_dict({"field": "title", "contains": "whale"}) == TextMatch(
            "title", "whale", TextMode.CONTAINS, False
        )

    def test_errors(self):
        """Malformed dicts raise ValueError."""
        with pytest.raises(ValueError):
            predicate_from_dict({"op": "eq", "value": 1})
        with pytest.raises(ValueError):
            predicate_from_dict({"field": "year", "op": "approx", "value": 1})
        with pytest.raises(ValueError):
            predicate_from_dict({"field": "year", "op": "eq"})
        with pytest.raises(ValueError):
            predicate_from_dict({"field": "year", "unknown": 1})
        with pytest.raises(ValueError):
            predicate_from_dict(["field", "year"])
