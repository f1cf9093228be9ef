import pytest

from app.core.errors import NotFoundError, QueryValidationError
from app.core.registry.validator import QueryValidator, classify, tokenize
from app.core.schemas import Complexity, QueryFilters, QueryRequest
from conftest import make_app, make_table


def customers():
    return make_table(
        "ta_customers",
        "Customers",
        {
            "name": {
                "type": "string",
                "name": "name",
                "constraints": {"type": "string", "presence": True},
            },
            "email": "string",
            "age": "number",
            "joined": "datetime",
            "vip": "boolean",
        },
    )


def query(**kwargs) -> QueryRequest:
    return QueryRequest.model_validate(kwargs)


@pytest.fixture
def validator():
    # validate_query / optimize_query never touch the store
    return QueryValidator(store=None)


# ---------------------------------------------------------------------------
# validate_query
# ---------------------------------------------------------------------------


def test_range_on_text_field_is_rejected(validator):
    """Range over a string field names the field and the numeric requirement"""
    table = make_table("ta_1", "People", {"name": "string"})
    result = validator.validate_query(
        table, query(query={"range": {"name": {"low": 1, "high": 5}}})
    )

    assert result.valid is False
    assert len(result.errors) == 1
    assert "name" in result.errors[0]
    assert "numeric" in result.errors[0]
    assert "string" in result.errors[0]


def test_range_on_number_is_valid(validator):
    result = validator.validate_query(
        customers(), query(query={"range": {"age": {"low": 18}}})
    )

    assert result.valid is True
    assert result.errors == []


def test_unknown_field_names_field_and_table(validator):
    result = validator.validate_query(
        customers(), query(query={"equal": {"nickname": "bob"}})
    )

    assert result.valid is False
    assert result.errors == ["Field 'nickname' does not exist in table 'Customers'"]


def test_reserved_fields_are_always_allowed(validator):
    result = validator.validate_query(
        customers(),
        query(
            query={"equal": {"_id": "ro_1", "tableId": "ta_customers"}},
            sort={"createdAt": "descending", "updatedAt": "ascending"},
        ),
    )

    assert result.valid is True


def test_every_violation_is_reported(validator):
    """All errors come back together, not just the first"""
    result = validator.validate_query(
        customers(),
        query(
            query={
                "equal": {"ghost": 1},
                "range": {"email": {"low": 0}},
            },
            sort={"missing": "ascending"},
            limit=5000,
        ),
    )

    assert result.valid is False
    assert len(result.errors) == 4
    assert any("ghost" in error for error in result.errors)
    assert any("email" in error and "numeric" in error for error in result.errors)
    assert any("Sort field 'missing'" in error for error in result.errors)
    assert "Limit must be between 1 and 1000" in result.errors


def test_field_in_several_categories_reported_once(validator):
    result = validator.validate_query(
        customers(),
        query(query={"equal": {"ghost": 1}, "notEmpty": {"ghost": True}}),
    )

    assert result.errors == ["Field 'ghost' does not exist in table 'Customers'"]


@pytest.mark.parametrize("limit", [0, -1, 1001])
def test_limit_out_of_bounds(validator, limit):
    result = validator.validate_query(customers(), query(limit=limit))
    assert result.valid is False


@pytest.mark.parametrize("limit", [1, 50, 1000])
def test_limit_within_bounds(validator, limit):
    result = validator.validate_query(customers(), query(limit=limit))
    assert result.valid is True


def test_text_search_on_non_text_field_warns(validator):
    """string/fuzzy on a number is allowed but flagged"""
    result = validator.validate_query(
        customers(), query(query={"string": {"age": "3"}, "fuzzy": {"email": "gmail"}})
    )

    assert result.valid is True
    assert len(result.warnings) == 1
    assert "age" in result.warnings[0]
    assert "number" in result.warnings[0]


def test_formula_counts_as_text(validator):
    table = make_table("ta_1", "Calc", {"label": "formula"})
    result = validator.validate_query(table, query(query={"string": {"label": "x"}}))

    assert result.warnings == []


def test_unknown_filter_category_is_refused():
    with pytest.raises(ValueError):
        QueryFilters.model_validate({"contains": {"name": "x"}})


# ---------------------------------------------------------------------------
# complexity and optimization
# ---------------------------------------------------------------------------


def test_classify_thresholds():
    assert classify(None) == Complexity.SIMPLE
    assert classify(QueryFilters(equal={"a": 1, "b": 2})) == Complexity.SIMPLE
    assert classify(QueryFilters(equal={"a": 1, "b": 2, "c": 3})) == Complexity.MODERATE
    assert (
        classify(QueryFilters(equal={f"f{i}": i for i in range(6)})) == Complexity.COMPLEX
    )
    assert classify(QueryFilters(fuzzy={"a": "x"})) == Complexity.COMPLEX


def test_default_limits_follow_complexity(validator):
    simple = validator.optimize_query(customers(), query(query={"equal": {"vip": True}}))
    complex_ = validator.optimize_query(customers(), query(query={"fuzzy": {"name": "ad"}}))
    explicit = validator.optimize_query(customers(), query(limit=7))

    assert simple.limit == 50
    assert complex_.limit == 20
    assert complex_.hints.complexity == Complexity.COMPLEX
    assert explicit.limit == 7


def test_single_equality_on_required_field_uses_index(validator):
    optimized = validator.optimize_query(
        customers(), query(query={"equal": {"name": "Ada"}})
    )

    assert optimized.hints.use_index == "name"
    assert optimized.table_id == "ta_customers"


def test_no_index_hint_when_field_optional_or_query_wider(validator):
    optional = validator.optimize_query(customers(), query(query={"equal": {"email": "a"}}))
    wider = validator.optimize_query(
        customers(), query(query={"equal": {"name": "Ada"}, "range": {"age": {"low": 1}}})
    )

    assert optional.hints.use_index is None
    assert wider.hints.use_index is None


def test_payload_leaves_out_hints(validator):
    optimized = validator.optimize_query(
        customers(), query(query={"equal": {"name": "Ada"}}, sort={"age": "ascending"})
    )

    assert optimized.to_payload() == {
        "query": {"equal": {"name": "Ada"}},
        "sort": {"age": "ascending"},
        "limit": 50,
    }


# ---------------------------------------------------------------------------
# build_query (store backed)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_build_query_unknown_table(store):
    validator = QueryValidator(store)

    with pytest.raises(NotFoundError):
        await validator.build_query("ta_missing", QueryRequest())


@pytest.mark.asyncio
async def test_build_query_raises_with_all_errors(store):
    await store.sync_application(make_app("app1"), [customers()])
    validator = QueryValidator(store)

    with pytest.raises(QueryValidationError) as exc_info:
        await validator.build_query(
            "ta_customers", query(query={"equal": {"ghost": 1}}, limit=0)
        )

    assert len(exc_info.value.errors) == 2
    assert str(exc_info.value).startswith("Invalid query: ")


@pytest.mark.asyncio
async def test_build_query_returns_annotated_query(store):
    await store.sync_application(make_app("app1"), [customers()])
    validator = QueryValidator(store)

    optimized = await validator.build_query(
        "ta_customers", query(query={"string": {"age": "4"}})
    )

    assert optimized.limit == 50
    assert optimized.hints.complexity == Complexity.SIMPLE


# ---------------------------------------------------------------------------
# suggest_query
# ---------------------------------------------------------------------------


def test_tokenize_lowercases_words():
    assert tokenize("Show me the LATEST, active_orders!") == [
        "show",
        "me",
        "the",
        "latest",
        "active_orders",
    ]


@pytest.mark.asyncio
async def test_suggestion_for_latest_active_orders(store):
    orders = make_table("ta_orders", "Orders", {"active": "boolean", "createdAt": "datetime"})
    await store.sync_application(make_app("app2"), [orders])
    validator = QueryValidator(store)

    suggestion = await validator.suggest_query("ta_orders", "show me the latest active orders")

    assert suggestion.suggestion.to_payload() == {
        "query": {"equal": {"active": True}},
        "sort": {"createdAt": "descending"},
    }
    assert suggestion.matched_fields == ["active"]
    assert suggestion.requires_confirmation is True


@pytest.mark.asyncio
async def test_suggestion_stubs_per_type(store):
    await store.sync_application(make_app("app1"), [customers()])
    validator = QueryValidator(store)

    suggestion = await validator.suggest_query(
        "ta_customers", "customers by name and email with age"
    )

    assert suggestion.suggestion.to_payload() == {
        "query": {
            "string": {"name": "", "email": ""},
            "range": {"age": {}},
        }
    }
    assert suggestion.suggestion.sort is None


@pytest.mark.asyncio
async def test_recency_without_datetime_field_sorts_on_created_at(store):
    table = make_table("ta_notes", "Notes", {"title": "string"})
    await store.sync_application(make_app("app1"), [table])
    validator = QueryValidator(store)

    suggestion = await validator.suggest_query("ta_notes", "newest notes")

    assert suggestion.suggestion.query is None
    assert suggestion.suggestion.to_payload() == {"sort": {"createdAt": "descending"}}


@pytest.mark.asyncio
async def test_suggestion_for_unknown_table_is_empty(store):
    validator = QueryValidator(store)

    suggestion = await validator.suggest_query("ta_missing", "latest anything")

    assert suggestion.suggestion.to_payload() == {}
    assert suggestion.matched_fields == []
    assert suggestion.requires_confirmation is True


@pytest.mark.asyncio
async def test_suggestion_never_raises(store):
    """Even a broken store only yields an empty suggestion"""
    await store.close()
    validator = QueryValidator(store)

    suggestion = await validator.suggest_query("ta_customers", "latest")

    assert suggestion.suggestion.to_payload() == {}
