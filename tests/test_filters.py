"""Tests for the filter DSL parser."""

from datetime import datetime

import pytest

from crudgraph.core.errors import ValidationError
from crudgraph.core.filters import (
    FilterParser,
    filter_datetime,
    filter_number,
    filter_string,
    parse_array,
    split_range,
)


@pytest.fixture
def parser(schema):
    return FilterParser(schema, "Post")


# =============================================================================
# Value helpers
# =============================================================================


class TestFilterString:
    def test_contains(self):
        assert filter_string("%lamp%") == {"contains": "lamp"}

    def test_starts_with(self):
        assert filter_string("lamp%") == {"startsWith": "lamp"}

    def test_ends_with(self):
        assert filter_string("%lamp") == {"endsWith": "lamp"}

    def test_equals_is_url_decoded(self):
        assert filter_string("big%20lamp") == {"equals": "big lamp"}

    def test_booleans(self):
        assert filter_string("true") is True
        assert filter_string("false") is False


class TestFilterNumber:
    def test_plain_number_is_equality(self):
        assert filter_number("42") == {"equals": 42}

    def test_comparison_operators(self):
        assert filter_number("gt:50") == {"gt": 50}
        assert filter_number("lte:9.5") == {"lte": 9.5}
        assert filter_number("ne:3") == {"not": 3}

    def test_between(self):
        assert filter_number("between:10;100") == {"gte": 10, "lte": 100}

    def test_non_numeric_returns_none(self):
        assert filter_number("gt:abc") is None


class TestFilterDatetime:
    def test_after(self):
        assert filter_datetime("after:2024-01-01") == {"gt": datetime(2024, 1, 1)}

    def test_on_covers_the_whole_day(self):
        assert filter_datetime("on:2024-01-15T13:45:00") == {
            "gte": datetime(2024, 1, 15),
            "lt": datetime(2024, 1, 16),
        }

    def test_between_dates(self):
        assert filter_datetime("between:2024-01-01;2024-02-01") == {
            "gte": datetime(2024, 1, 1),
            "lte": datetime(2024, 2, 1),
        }

    def test_between_numbers_is_not_a_date(self):
        assert filter_datetime("between:1;5") is None

    def test_invalid_date(self):
        with pytest.raises(ValidationError) as exc:
            filter_datetime("after:yesterday")
        assert exc.value.code == "invalid_date_format"

    def test_no_operator(self):
        assert filter_datetime("2024-01-01") is None


class TestHelpers:
    def test_parse_array_json(self):
        assert parse_array("[1,2,3]") == [1, 2, 3]

    def test_parse_array_falls_back_to_split(self):
        assert parse_array("[a, b]") == ["a", "b"]

    def test_split_range_requires_two_values(self):
        with pytest.raises(ValidationError) as exc:
            split_range("10")
        assert exc.value.code == "between_requires_two_values"


# =============================================================================
# Parser
# =============================================================================


class TestFilterParser:
    def test_empty(self, parser):
        assert parser.parse("") == {}
        assert parser.parse(None) == {}

    def test_multiple_conditions(self, parser):
        assert parser.parse("price=gt:50,ownerId=42") == {
            "price": {"gt": 50},
            "ownerId": {"equals": 42},
        }

    def test_string_wildcards(self, parser):
        assert parser.parse("title=%lamp%") == {"title": {"contains": "lamp"}}

    def test_boolean(self, parser):
        assert parser.parse("published=true") == {"published": True}

    def test_in_list(self, parser):
        assert parser.parse("id=[1,2,3]") == {"id": {"in": [1, 2, 3]}}

    def test_list_with_wildcards_becomes_or(self, parser):
        assert parser.parse("title=[%lamp%,desk]") == {
            "OR": [
                {"title": {"contains": "lamp"}},
                {"title": {"equals": "desk"}},
            ]
        }

    def test_numeric_between(self, parser):
        assert parser.parse("price=between:10;100") == {"price": {"gte": 10, "lte": 100}}

    def test_date_operator(self, parser):
        assert parser.parse("createdAt=before:2024-06-01") == {
            "createdAt": {"lt": datetime(2024, 6, 1)}
        }

    def test_null(self, parser):
        assert parser.parse("deletedAt=#NULL") == {"deletedAt": {"equals": None}}

    def test_not_null(self, parser):
        assert parser.parse("deletedAt=not:#NULL") == {"deletedAt": {"not": {"equals": None}}}

    def test_null_on_required_field(self, parser):
        with pytest.raises(ValidationError) as exc:
            parser.parse("title=#NULL")
        assert exc.value.code == "field_not_nullable"

    def test_not_null_on_required_field_adds_nothing(self, parser):
        assert parser.parse("title=not:#NULL") == {}

    def test_null_relation(self, parser):
        assert parser.parse("category=#NULL") == {"category": {"is": None}}
        assert parser.parse("category=not:#NULL") == {"category": {"isNot": None}}

    def test_not_in(self, parser):
        assert parser.parse("id=not:[1,2]") == {"id": {"notIn": [1, 2]}}

    def test_not_string(self, parser):
        assert parser.parse("title=not:draft") == {"title": {"not": {"equals": "draft"}}}

    def test_not_number(self, parser):
        assert parser.parse("price=not:gt:10") == {"price": {"not": {"gt": 10}}}

    def test_not_between_numbers(self, parser):
        assert parser.parse("price=not:between:10;20") == {
            "NOT": [{"AND": [{"price": {"gte": 10}}, {"price": {"lte": 20}}]}]
        }

    def test_not_between_invalid_dates(self, parser):
        with pytest.raises(ValidationError) as exc:
            parser.parse("createdAt=not:between:2024-01-01;soon")
        assert exc.value.code == "invalid_date_range"

    def test_singular_relation_path(self, parser):
        assert parser.parse("author.name=%ann%") == {"author": {"name": {"contains": "ann"}}}

    def test_list_relation_path_uses_some(self, parser):
        assert parser.parse("comments.body=%great%,comments.approved=true") == {
            "comments": {"some": {"body": {"contains": "great"}, "approved": True}}
        }

    def test_unknown_field(self, parser):
        with pytest.raises(ValidationError) as exc:
            parser.parse("colour=red")
        assert exc.value.code == "invalid_filter_field"

    def test_unknown_nested_field(self, parser):
        with pytest.raises(ValidationError) as exc:
            parser.parse("author.colour=red")
        assert exc.value.code == "invalid_filter_field"

    def test_unknown_relation(self, parser):
        with pytest.raises(ValidationError) as exc:
            parser.parse("editor.name=ann")
        assert exc.value.code == "relation_not_exist"

    def test_parts_without_value_are_skipped(self, parser):
        assert parser.parse("title=lamp,broken") == {"title": {"equals": "lamp"}}
