import hashlib
import json
from typing import Any, Dict

from pydantic import TypeAdapter

from app.core.schemas import Schema

_schema_adapter = TypeAdapter(Schema)


def schema_to_dict(schema: Schema) -> Dict[str, Any]:
    """Plain JSON-ready form of a schema, None values dropped."""
    return _schema_adapter.dump_python(
        schema, mode="json", by_alias=True, exclude_none=True
    )


def canonical_json(schema: Schema) -> str:
    """
    Serialize a schema with keys sorted at every level.

    Structurally identical schemas always produce the same text, no matter
    in which order the platform listed the fields or their attributes.
    """
    return json.dumps(schema_to_dict(schema), sort_keys=True, separators=(",", ":"))


def checksum(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def schema_checksum(schema: Schema) -> str:
    return checksum(canonical_json(schema))


def parse_schema(raw: str) -> Schema:
    """Parse stored schema text. Raises pydantic.ValidationError when invalid."""
    return _schema_adapter.validate_json(raw)
