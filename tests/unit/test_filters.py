"""Unit tests for subscription filter predicates."""

import pytest

from hookrelay_core.webhooks.exceptions import InvalidFilter
from hookrelay_core.webhooks.filters import (
    MISSING,
    FilterGroup,
    FilterOperator,
    FilterPredicate,
    matches_all,
    parse_filters,
    resolve_path,
)

PAYLOAD = {
    "type": "invoice.paid",
    "data": {
        "object": {
            "amount": 4200,
            "currency": "usd",
            "tags": ["vip", "annual"],
            "customer": None,
        },
        "items": [{"sku": "A-1"}, {"sku": "B-2"}],
    },
    "livemode": False,
}


class TestResolvePath:
    """Tests for dot-path lookup."""

    def test_nested_dict(self):
        assert resolve_path(PAYLOAD, "data.object.amount") == 4200

    def test_list_index(self):
        assert resolve_path(PAYLOAD, "data.items.1.sku") == "B-2"

    def test_missing_key(self):
        assert resolve_path(PAYLOAD, "data.object.refunded") is MISSING

    def test_out_of_range_index(self):
        assert resolve_path(PAYLOAD, "data.items.7.sku") is MISSING

    def test_explicit_null_is_not_missing(self):
        assert resolve_path(PAYLOAD, "data.object.customer") is None

    def test_descending_into_scalar(self):
        assert resolve_path(PAYLOAD, "type.name") is MISSING


class TestFilterPredicate:
    """Tests for single predicates."""

    def test_equality(self):
        assert FilterPredicate("data.object.currency", "eq", "usd").evaluate(PAYLOAD) is True
        assert FilterPredicate("data.object.currency", "eq", "eur").evaluate(PAYLOAD) is False

    def test_inclusion(self):
        predicate = FilterPredicate("data.object.currency", FilterOperator.IN, ["usd", "eur"])

        assert predicate.evaluate(PAYLOAD) is True
        assert predicate.value == ("usd", "eur")

    def test_not_in(self):
        assert FilterPredicate("data.object.currency", "not_in", ["gbp"]).evaluate(PAYLOAD) is True

    @pytest.mark.parametrize(
        "operator,value,expected",
        [
            ("gt", 4199, True),
            ("gt", 4200, False),
            ("gte", 4200, True),
            ("lt", 5000, True),
            ("lte", 4199, False),
            (">=", 1000.5, True),
        ],
    )
    def test_numeric_comparison(self, operator, value, expected):
        assert FilterPredicate("data.object.amount", operator, value).evaluate(PAYLOAD) is expected

    def test_numeric_comparison_on_non_number_is_false(self):
        assert FilterPredicate("data.object.currency", "gt", 1).evaluate(PAYLOAD) is False
        assert FilterPredicate("livemode", "gte", 0).evaluate(PAYLOAD) is False

    def test_missing_field_only_satisfies_negative_tests(self):
        assert FilterPredicate("data.refund", "eq", None).evaluate(PAYLOAD) is False
        assert FilterPredicate("data.refund", "gt", 0).evaluate(PAYLOAD) is False
        assert FilterPredicate("data.refund", "ne", 1).evaluate(PAYLOAD) is True
        assert FilterPredicate("data.refund", "not_in", [1]).evaluate(PAYLOAD) is True

    def test_exists(self):
        assert FilterPredicate("data.object.customer", "exists").evaluate(PAYLOAD) is True
        assert FilterPredicate("data.refund", "exists").evaluate(PAYLOAD) is False
        assert FilterPredicate("data.refund", "exists", False).evaluate(PAYLOAD) is True

    def test_contains(self):
        assert FilterPredicate("data.object.tags", "contains", "vip").evaluate(PAYLOAD) is True
        assert FilterPredicate("type", "contains", "paid").evaluate(PAYLOAD) is True
        assert FilterPredicate("data.object.amount", "contains", 4).evaluate(PAYLOAD) is False

    def test_unknown_operator_rejected(self):
        with pytest.raises(InvalidFilter):
            FilterPredicate("a", "like", "x")

    def test_empty_path_rejected(self):
        with pytest.raises(InvalidFilter):
            FilterPredicate("", "eq", 1)

    def test_set_operator_requires_list(self):
        with pytest.raises(InvalidFilter):
            FilterPredicate("a", "in", "usd")

    def test_numeric_operator_requires_number(self):
        with pytest.raises(InvalidFilter):
            FilterPredicate("a", "gt", "100")
        with pytest.raises(InvalidFilter):
            FilterPredicate("a", "gt", True)

    def test_to_dict(self):
        predicate = FilterPredicate("a", "in", [1, 2])

        assert predicate.to_dict() == {"path": "a", "operator": "in", "value": [1, 2]}


class TestParseFilters:
    """Tests for compiling filter definitions."""

    def test_empty(self):
        assert parse_filters(None) == []
        assert parse_filters([]) == []
        assert parse_filters({}) == []

    def test_list_of_predicates(self):
        filters = parse_filters(
            [
                {"path": "data.object.amount", "operator": "gte", "value": 1000},
                {"field": "data.object.currency", "op": "eq", "value": "usd"},
            ]
        )

        assert len(filters) == 2
        assert matches_all(filters, PAYLOAD) is True

    def test_operator_defaults_to_equality(self):
        (predicate,) = parse_filters([{"path": "type", "value": "invoice.paid"}])

        assert predicate.operator == FilterOperator.EQ

    def test_legacy_shorthand(self):
        filters = parse_filters({"data.object.currency": ["usd", "eur"], "livemode": False})

        assert [f.operator for f in filters] == [FilterOperator.IN, FilterOperator.EQ]
        assert matches_all(filters, PAYLOAD) is True
        assert matches_all(filters, {**PAYLOAD, "livemode": True}) is False

    def test_single_predicate_dict(self):
        filters = parse_filters({"path": "type", "operator": "eq", "value": "invoice.paid"})

        assert len(filters) == 1
        assert isinstance(filters[0], FilterPredicate)

    def test_groups(self):
        (group,) = parse_filters(
            [
                {
                    "any": [
                        {"path": "data.object.currency", "value": "eur"},
                        {
                            "all": [
                                {"path": "data.object.amount", "operator": "gt", "value": 1000},
                                {"path": "data.object.tags", "operator": "contains", "value": "vip"},
                            ]
                        },
                    ]
                }
            ]
        )

        assert isinstance(group, FilterGroup)
        assert group.evaluate(PAYLOAD) is True
        assert group.to_dict()["any"][0]["value"] == "eur"

    def test_missing_path_rejected(self):
        with pytest.raises(InvalidFilter):
            parse_filters([{"operator": "eq", "value": 1}])

    def test_empty_group_rejected(self):
        with pytest.raises(InvalidFilter):
            parse_filters([{"all": []}])

    def test_non_object_rejected(self):
        with pytest.raises(InvalidFilter):
            parse_filters(["data.amount > 5"])

    def test_no_filters_match_everything(self):
        assert matches_all([], PAYLOAD) is True
