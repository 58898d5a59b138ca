"""
Tests for segment filter expressions.

Tests cover:
- Validation with path-qualified error messages
- Value coercion and normalization
- SQL evaluation against customers
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from segmentflow.exceptions import InvalidFilterError
from segmentflow.models import Tenant
from segmentflow.models.customer import RfmSegment
from segmentflow.services.segments.filters import MAX_DEPTH, MAX_LIST_VALUES, parse_filters, to_raw, validate_filters
from segmentflow.services.segments.membership import MembershipService

from factories import add_customer, days_ago


def cond(field, operator, value=None):
    node = {"field": field, "operator": operator}
    if value is not None:
        node["value"] = value
    return node


def group(*conditions, logic="AND"):
    return {"logic": logic, "conditions": list(conditions)}


# ============================================
# Validation
# ============================================


class TestValidation:
    """Tests for filter validation."""

    def test_valid_nested_expression(self):
        filters = group(
            cond("totalSpent", "gte", 500),
            cond("rfmSegment", "in", ["AT_RISK", "CANNOT_LOSE"]),
            group(cond("tags", "contains", "vip"), cond("isHighValue", "eq", True), logic="OR"),
        )

        result = validate_filters(filters)

        assert result.valid is True
        assert result.errors == []

    def test_unknown_field(self):
        result = validate_filters(group(cond("favouriteColour", "eq", "red")))

        assert result.errors == ["conditions[0].field: unknown field 'favouriteColour'"]

    def test_unknown_operator(self):
        result = validate_filters(group(cond("totalSpent", "approximately", 5)))

        assert result.errors == ["conditions[0].operator: unknown operator 'approximately'"]

    def test_operator_not_allowed_for_field_type(self):
        result = validate_filters(group(cond("tags", "eq", "vip")))

        assert result.valid is False
        assert "not allowed for list field 'tags'" in result.errors[0]

    @pytest.mark.parametrize(
        "condition,message",
        [
            (cond("totalSpent", "gte", "lots"), "expected a number"),
            (cond("totalSpent", "gte", True), "expected a number"),
            (cond("totalSpent", "gte", "NaN"), "expected a finite number"),
            (cond("isHighValue", "eq", "yes"), "expected true or false"),
            (cond("rfmSegment", "eq", "WHALES"), "unknown segment 'WHALES'"),
            (cond("email", "contains", ""), "expected a non-empty string"),
            (cond("tags", "contains", 'v"ip'), "tag may not contain quotes or backslashes"),
            (cond("lastOrderDate", "gt", "yesterday"), "invalid date 'yesterday'"),
            (cond("ordersCount", "between", [5, 1]), "low bound is greater than high bound"),
            (cond("ordersCount", "between", [1]), "expected [low, high]"),
            (cond("ordersCount", "in", []), "expected a non-empty list"),
            (cond("ordersCount", "eq"), "value is required"),
        ],
    )
    def test_bad_values(self, condition, message):
        result = validate_filters(group(condition))

        assert result.errors == [f"conditions[0].value: {message}"]

    def test_list_size_limit(self):
        result = validate_filters(group(cond("ordersCount", "in", list(range(MAX_LIST_VALUES + 1)))))

        assert result.errors == [f"conditions[0].value: at most {MAX_LIST_VALUES} values allowed"]

    def test_nested_errors_carry_full_path(self):
        filters = group(
            cond("totalSpent", "gte", 1),
            group(cond("ordersCount", "gt", 1), cond("ordersCount", "gt", "x"), logic="OR"),
        )

        assert validate_filters(filters).errors == ["conditions[1].conditions[1].value: expected a number"]

    def test_every_problem_is_reported(self):
        filters = group(cond("nope", "eq", 1), cond("totalSpent", "gte", "x"), logic="XOR")

        errors = validate_filters(filters).errors

        assert len(errors) == 3
        assert "filters.logic: expected AND or OR" in errors

    def test_depth_limit(self):
        def nest(levels):
            node = group(cond("ordersCount", "gt", 1))
            for _ in range(levels - 1):
                node = group(node)
            return node

        assert validate_filters(nest(MAX_DEPTH)).valid is True
        errors = validate_filters(nest(MAX_DEPTH + 1)).errors
        assert len(errors) == 1
        assert f"nested deeper than {MAX_DEPTH}" in errors[0]

    def test_non_object_root(self):
        assert validate_filters(["totalSpent"]).errors == ["filters: expected an object"]

    def test_parse_raises_with_error_list(self):
        with pytest.raises(InvalidFilterError) as exc_info:
            parse_filters(group(cond("totalSpent", "gte", "x")))

        assert exc_info.value.errors == ["conditions[0].value: expected a number"]
        assert exc_info.value.status_code == 422


class TestNormalization:
    """Tests for coercion and the stored form."""

    def test_values_are_coerced_and_serialized(self):
        parsed = parse_filters(
            group(
                cond("totalSpent", "gte", "500"),
                cond("avgOrderValue", "lt", "12.5"),
                cond("rfmSegment", "in", ["LOYAL"]),
                cond("lastOrderDate", "gt", "2024-05-01T00:00:00Z"),
                cond("daysSinceLastOrder", "isNull", "ignored"),
                logic="or",
            )
        )

        assert to_raw(parsed) == {
            "logic": "OR",
            "conditions": [
                {"field": "totalSpent", "operator": "gte", "value": 500},
                {"field": "avgOrderValue", "operator": "lt", "value": 12.5},
                {"field": "rfmSegment", "operator": "in", "value": ["LOYAL"]},
                {"field": "lastOrderDate", "operator": "gt", "value": "2024-05-01T00:00:00+00:00"},
                {"field": "daysSinceLastOrder", "operator": "isNull"},
            ],
        }

    def test_missing_logic_defaults_to_and(self):
        assert parse_filters({"conditions": []}).logic == "AND"


# ============================================
# SQL evaluation
# ============================================


@pytest_asyncio.fixture
async def shoppers(db, tenant):
    return {
        "vip": await add_customer(
            db,
            tenant.id,
            "1",
            email="ann@shop.com",
            total_spent=Decimal("600"),
            orders_count=6,
            tags=["vip", "wholesale"],
            rfm_segment=RfmSegment.AT_RISK,
            last_order_date=days_ago(40),
        ),
        "lookalike": await add_customer(
            db,
            tenant.id,
            "2",
            email="bob@shop.com",
            total_spent=Decimal("100"),
            orders_count=2,
            tags=["vipish"],
            rfm_segment=RfmSegment.LOYAL,
            is_high_value=True,
            last_order_date=days_ago(5),
        ),
        "new": await add_customer(
            db, tenant.id, "3", email="cy@Other.com", total_spent=Decimal("50"), tags=[]
        ),
    }


async def matching(db, tenant, filters):
    evaluation = await MembershipService(db).evaluate(tenant.id, filters)
    return set(evaluation.customer_ids)


class TestEvaluation:
    """Tests for filters run as SQL."""

    @pytest.mark.asyncio
    async def test_numeric_comparison(self, db, tenant, shoppers):
        assert await matching(db, tenant, group(cond("totalSpent", "gte", 500))) == {shoppers["vip"].id}

    @pytest.mark.asyncio
    async def test_between_is_inclusive(self, db, tenant, shoppers):
        ids = await matching(db, tenant, group(cond("totalSpent", "between", [50, 100])))

        assert ids == {shoppers["lookalike"].id, shoppers["new"].id}

    @pytest.mark.asyncio
    async def test_tag_contains_matches_whole_tags_only(self, db, tenant, shoppers):
        assert await matching(db, tenant, group(cond("tags", "contains", "vip"))) == {shoppers["vip"].id}

    @pytest.mark.asyncio
    async def test_or_group(self, db, tenant, shoppers):
        filters = group(cond("tags", "contains", "vip"), cond("isHighValue", "eq", True), logic="OR")

        assert await matching(db, tenant, filters) == {shoppers["vip"].id, shoppers["lookalike"].id}

    @pytest.mark.asyncio
    async def test_nested_and_within_or(self, db, tenant, shoppers):
        filters = group(
            group(cond("ordersCount", "gt", 5), cond("rfmSegment", "eq", "AT_RISK")),
            cond("email", "contains", "OTHER"),
            logic="OR",
        )

        assert await matching(db, tenant, filters) == {shoppers["vip"].id, shoppers["new"].id}

    @pytest.mark.asyncio
    async def test_neq_does_not_match_null(self, db, tenant, shoppers):
        assert await matching(db, tenant, group(cond("rfmSegment", "neq", "LOYAL"))) == {shoppers["vip"].id}

    @pytest.mark.asyncio
    async def test_null_checks(self, db, tenant, shoppers):
        assert await matching(db, tenant, group(cond("rfmSegment", "isNull"))) == {shoppers["new"].id}
        assert await matching(db, tenant, group(cond("lastOrderDate", "isNotNull"))) == {
            shoppers["vip"].id,
            shoppers["lookalike"].id,
        }

    @pytest.mark.asyncio
    async def test_not_in(self, db, tenant, shoppers):
        ids = await matching(db, tenant, group(cond("email", "notIn", ["ann@shop.com", "bob@shop.com"])))

        assert ids == {shoppers["new"].id}

    @pytest.mark.asyncio
    async def test_empty_group_matches_everyone(self, db, tenant, shoppers):
        evaluation = await MembershipService(db).evaluate(tenant.id, group())

        assert evaluation.total_count == 3
        assert evaluation.total_spent == Decimal("750")

    @pytest.mark.asyncio
    async def test_other_tenants_are_never_matched(self, db, tenant, shoppers):
        other = Tenant(shop_domain="other.myshopify.com")
        db.add(other)
        await db.commit()
        await add_customer(db, other.id, "1", total_spent=Decimal("9000"))

        assert await matching(db, tenant, group(cond("totalSpent", "gte", 500))) == {shoppers["vip"].id}

    @pytest.mark.asyncio
    async def test_invalid_filters_never_reach_the_database(self, db, tenant, shoppers):
        with pytest.raises(InvalidFilterError):
            await MembershipService(db).evaluate(tenant.id, group(cond("totalSpent", "gte", "x")))
