import logging
import re
from typing import Any, Dict, List, Optional

from app.core.errors import NotFoundError, QueryValidationError
from app.core.registry.store import SchemaStore
from app.core.schemas import (
    Complexity,
    FieldType,
    OptimizedQuery,
    QueryFilters,
    QueryHints,
    QueryRequest,
    QuerySuggestion,
    RangeFilter,
    SortOrder,
    Table,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# Present on every row without being part of the table schema
RESERVED_FIELDS = frozenset({"_id", "_rev", "tableId", "createdAt", "updatedAt"})

NUMERIC_TYPES = frozenset({FieldType.NUMBER.value})
TEXT_TYPES = frozenset({FieldType.STRING.value, FieldType.FORMULA.value})

MIN_LIMIT = 1
MAX_LIMIT = 1000
DEFAULT_LIMIT = 50
COMPLEX_DEFAULT_LIMIT = 20

RECENCY_WORDS = frozenset({"latest", "recent", "newest"})
FALLBACK_SORT_FIELD = "createdAt"


def classify(filters: Optional[QueryFilters]) -> Complexity:
    if filters is None:
        return Complexity.SIMPLE

    count = filters.predicate_count()
    if count > 5 or filters.fuzzy:
        return Complexity.COMPLEX
    if count > 2:
        return Complexity.MODERATE
    return Complexity.SIMPLE


def tokenize(description: str) -> List[str]:
    return re.findall(r"[a-z0-9_]+", description.lower())


class QueryValidator:
    """
    Checks candidate row searches against the schemas held by a SchemaStore.

    Never syncs on its own: a table missing from the store is reported as
    NotFoundError and the caller decides whether to sync.
    """

    def __init__(self, store: SchemaStore):
        self.store = store

    async def build_query(self, table_id: str, query: QueryRequest) -> OptimizedQuery:
        """
        Validate a partial query and annotate it for execution.

        Raises:
            NotFoundError: the table has not been synced yet.
            QueryValidationError: with every violation found.
        """
        table = await self.store.get_table_schema(table_id)
        if table is None:
            raise NotFoundError(f"Table {table_id} not found in schema registry")

        validation = self.validate_query(table, query)
        if not validation.valid:
            raise QueryValidationError(validation.errors, validation.warnings)

        if validation.warnings:
            logger.warning(
                f"Query on table {table_id} has warnings: {'; '.join(validation.warnings)}"
            )

        return self.optimize_query(table, query)

    def validate_query(self, table: Table, query: QueryRequest) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        schema = table.table_schema

        if query.query is not None:
            categories = query.query.categories()

            referenced = []
            for conditions in categories.values():
                for field in conditions:
                    if field not in referenced:
                        referenced.append(field)

            for field in referenced:
                if field not in schema and field not in RESERVED_FIELDS:
                    errors.append(
                        f"Field '{field}' does not exist in table '{table.name}'"
                    )

            for field in categories.get("range", {}):
                field_def = schema.get(field)
                if field_def is not None and field_def.type not in NUMERIC_TYPES:
                    errors.append(
                        f"Range query on field '{field}' requires numeric type, "
                        f"but field is '{field_def.type}'"
                    )

            text_fields = list(categories.get("string", {})) + list(
                categories.get("fuzzy", {})
            )
            for field in dict.fromkeys(text_fields):
                field_def = schema.get(field)
                if field_def is not None and field_def.type not in TEXT_TYPES:
                    warnings.append(
                        f"Text search on field '{field}' of type '{field_def.type}' "
                        "may not work as expected"
                    )

        for field in query.sort or {}:
            if field not in schema and field not in RESERVED_FIELDS:
                errors.append(
                    f"Sort field '{field}' does not exist in table '{table.name}'"
                )

        if query.limit is not None and not MIN_LIMIT <= query.limit <= MAX_LIMIT:
            errors.append(f"Limit must be between {MIN_LIMIT} and {MAX_LIMIT}")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def optimize_query(self, table: Table, query: QueryRequest) -> OptimizedQuery:
        complexity = classify(query.query)
        hints = QueryHints(complexity=complexity)

        # A lone equality on a required field is the cheapest lookup there is
        if query.query is not None and query.query.predicate_count() == 1:
            equal = query.query.equal or {}
            if len(equal) == 1:
                field = next(iter(equal))
                field_def = table.table_schema.get(field)
                if field_def is not None and field_def.is_required:
                    hints.use_index = field

        limit = query.limit
        if limit is None:
            limit = (
                COMPLEX_DEFAULT_LIMIT if complexity == Complexity.COMPLEX else DEFAULT_LIMIT
            )

        logger.debug(
            f"Query on {table.id}: complexity={complexity.value} use_index={hints.use_index}"
        )
        return OptimizedQuery(
            table_id=table.id,
            query=query.query,
            sort=query.sort,
            limit=limit,
            bookmark=query.bookmark,
            hints=hints,
        )

    async def suggest_query(self, table_id: str, description: str) -> QuerySuggestion:
        """
        Heuristic query proposal from free text.

        Best effort only: field names are matched by substring in both
        directions, so the result must be reviewed before it is run.
        Never raises; an unknown table yields an empty suggestion.
        """
        try:
            table = await self.store.get_table_schema(table_id)
        except Exception as error:
            logger.warning(f"Suggestion for {table_id} without schema: {error}")
            table = None

        if table is None:
            return QuerySuggestion(suggestion=QueryRequest())

        words = tokenize(description)
        filters: Dict[str, Dict[str, Any]] = {}
        matched: List[str] = []

        for field_name, field_def in table.table_schema.items():
            lowered = field_name.lower()
            if not any(word in lowered or lowered in word for word in words):
                continue

            if field_def.type == FieldType.STRING:
                filters.setdefault("string", {})[field_name] = ""
            elif field_def.type in (FieldType.NUMBER, FieldType.DATETIME):
                filters.setdefault("range", {})[field_name] = RangeFilter()
            elif field_def.type == FieldType.BOOLEAN:
                filters.setdefault("equal", {})[field_name] = True
            else:
                continue
            matched.append(field_name)

        suggestion = QueryRequest(query=QueryFilters(**filters) if filters else None)

        if RECENCY_WORDS.intersection(words):
            sort_field = next(
                (
                    name
                    for name, field_def in table.table_schema.items()
                    if field_def.type == FieldType.DATETIME
                ),
                FALLBACK_SORT_FIELD,
            )
            suggestion.sort = {sort_field: SortOrder.DESCENDING}

        return QuerySuggestion(suggestion=suggestion, matched_fields=matched)
