from datetime import datetime
from typing import Optional, List, Dict, Any, Union
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Platform payloads are camelCase; Python side stays snake_case
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =========================
# Enums
# =========================
class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    ATTACHMENT = "attachment"
    LINK = "link"
    FORMULA = "formula"
    AUTO = "auto"
    JSON = "json"


class SortOrder(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


Scalar = Union[int, float, str, None]


# =========================
# FIELD DEFINITIONS
# =========================
class LengthConstraint(CamelModel):
    model_config = ConfigDict(extra="allow")

    minimum: Scalar = None
    maximum: Scalar = None


class NumericBounds(CamelModel):
    model_config = ConfigDict(extra="allow")

    greater_than: Scalar = None
    less_than: Scalar = None


class FieldConstraints(CamelModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    # the platform sends either a flag or {"allowEmpty": false}
    presence: Union[bool, Dict[str, Any], None] = None
    length: Optional[LengthConstraint] = None
    numericality: Optional[NumericBounds] = None


class FieldDef(CamelModel):
    """
    A single column of a remote table.

    Platform-specific attributes not modelled here are kept as extras so
    they survive persistence and take part in change detection.
    """

    model_config = ConfigDict(extra="allow")

    # kept as plain text: platforms add types faster than we enumerate them
    type: str
    name: Optional[str] = None
    constraints: Optional[FieldConstraints] = None
    # one-to-many, many-to-one or many-to-many on link fields
    relationship_type: Optional[str] = None
    table_id: Optional[str] = None
    field_name: Optional[str] = None

    @property
    def is_required(self) -> bool:
        return bool(self.constraints and self.constraints.presence)


Schema = Dict[str, FieldDef]


# =========================
# APPLICATION / TABLE
# =========================
class Application(CamelModel):
    id: str = Field(alias="_id")
    # id as listed by the platform before dev ids are normalized
    metadata_id: Optional[str] = Field(default=None, alias="_metadataId")
    name: str
    url: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    tenant_id: Optional[str] = None
    template: Optional[str] = None

    def metadata_blob(self) -> Dict[str, Any]:
        return {
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tenantId": self.tenant_id,
            "template": self.template,
        }


class Table(CamelModel):
    id: str = Field(alias="_id")
    name: str
    # "table" or "view"
    type: Optional[str] = "table"
    primary_display: Optional[str] = None
    table_schema: Schema = Field(default_factory=dict, alias="schema")
    # owning application, filled in by the registry
    app_id: Optional[str] = None


class ApplicationStatus(CamelModel):
    """Cached registry view of an application."""

    app_id: str
    name: str
    url: Optional[str] = None
    status: Optional[str] = None
    last_synced: Optional[datetime] = None
    metadata: Dict[str, Any] = {}


class SchemaVersion(CamelModel):
    app_id: str
    table_id: str
    version: int
    table_schema: Schema = Field(alias="schema")
    checksum: str
    created_at: Optional[datetime] = None


class SchemaChange(CamelModel):
    app_id: str
    table_id: str
    version: int
    previous_schema: Optional[Schema] = None
    new_schema: Schema


class SyncResult(CamelModel):
    app_id: str
    synced: bool
    changes: List[SchemaChange] = []


# =========================
# QUERIES
# =========================
class RangeFilter(CamelModel):
    low: Scalar = None
    high: Scalar = None


class QueryFilters(CamelModel):
    model_config = ConfigDict(extra="forbid")

    string: Optional[Dict[str, str]] = None
    fuzzy: Optional[Dict[str, str]] = None
    range: Optional[Dict[str, RangeFilter]] = None
    equal: Optional[Dict[str, Any]] = None
    not_equal: Optional[Dict[str, Any]] = None
    empty: Optional[Dict[str, Any]] = None
    not_empty: Optional[Dict[str, Any]] = None

    def categories(self) -> Dict[str, Dict[str, Any]]:
        """Non-empty filter categories keyed by wire name."""
        out = {}
        for name in type(self).model_fields:
            conditions = getattr(self, name)
            if conditions:
                out[to_camel(name)] = conditions
        return out

    def predicate_count(self) -> int:
        return sum(len(conditions) for conditions in self.categories().values())


class QueryRequest(CamelModel):
    query: Optional[QueryFilters] = None
    sort: Optional[Dict[str, SortOrder]] = None
    limit: Optional[int] = None
    bookmark: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Search body as the platform expects it."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            mode="json",
            include={"query", "sort", "limit", "bookmark"},
        )


class QueryHints(CamelModel):
    complexity: Complexity = Complexity.SIMPLE
    use_index: Optional[str] = None


class OptimizedQuery(QueryRequest):
    table_id: str
    hints: QueryHints = Field(default_factory=QueryHints)


class ValidationResult(CamelModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class QuerySuggestion(CamelModel):
    suggestion: QueryRequest
    matched_fields: List[str] = []
    requires_confirmation: bool = True


# =========================
# TOOL LAYER
# =========================
class ToolResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    message: str = ""


class SyncApplicationRequest(CamelModel):
    app_id: str = Field(min_length=1)
    force_sync: bool = False
    # milliseconds between automatic re-syncs
    sync_interval: Optional[int] = Field(default=None, gt=0)


class TableRef(CamelModel):
    table_id: str = Field(min_length=1)


class AppRef(CamelModel):
    app_id: str = Field(min_length=1)


class TableQueryRequest(QueryRequest):
    table_id: str = Field(min_length=1)
    app_id: Optional[str] = None

    def partial_query(self) -> QueryRequest:
        return QueryRequest(
            query=self.query, sort=self.sort, limit=self.limit, bookmark=self.bookmark
        )


class SuggestQueryRequest(CamelModel):
    table_id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    app_id: Optional[str] = None
