import logging

from fastapi import APIRouter, status

from app.api.deps import orchestrator_dep
from app.core import schemas

router = APIRouter(prefix="/tools", tags=["Schema Tools"])


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _table_summary(table: schemas.Table) -> dict:
    return {
        "id": table.id,
        "name": table.name,
        "fieldCount": len(table.table_schema),
    }


# Sync an application into the local registry
@router.post(
    "/sync_application_schema",
    response_model=schemas.ToolResponse,
    status_code=status.HTTP_200_OK,
)
async def sync_application_schema(
    payload: schemas.SyncApplicationRequest, orchestrator: orchestrator_dep
):
    logging.info(f"Syncing application schema {payload.app_id}")
    result = await orchestrator.sync_application(
        payload.app_id,
        force_sync=payload.force_sync,
        sync_interval_ms=payload.sync_interval,
    )
    tables = await orchestrator.get_application_tables(result.app_id)

    return schemas.ToolResponse(
        success=True,
        data={
            "appId": result.app_id,
            "synced": result.synced,
            "changes": [
                {"tableId": change.table_id, "version": change.version}
                for change in result.changes
            ],
            "tablesCount": len(tables),
            "tables": [_table_summary(table) for table in tables],
        },
        message=(
            f"Successfully synced {len(tables)} tables"
            if result.synced
            else f"Schema is up to date ({len(tables)} tables)"
        ),
    )


# Check a query against the stored schema without running it
@router.post("/validate_query", response_model=schemas.ToolResponse)
async def validate_query(
    payload: schemas.TableQueryRequest, orchestrator: orchestrator_dep
):
    result, optimized = await orchestrator.validate_query(
        payload.table_id, payload.partial_query(), app_id=payload.app_id
    )
    data = _dump(result)
    if optimized is not None:
        data["query"] = _dump(optimized)

    return schemas.ToolResponse(
        success=result.valid,
        data=data,
        error=None if result.valid else "; ".join(result.errors),
        message="Query is valid" if result.valid else "Query validation failed",
    )


# Heuristic query proposal, to be confirmed by the caller
@router.post("/suggest_query", response_model=schemas.ToolResponse)
async def suggest_query(
    payload: schemas.SuggestQueryRequest, orchestrator: orchestrator_dep
):
    suggestion = await orchestrator.suggest_query(
        payload.table_id, payload.description, app_id=payload.app_id
    )
    data = _dump(suggestion)
    data["suggestion"] = suggestion.suggestion.to_payload()

    return schemas.ToolResponse(
        success=True,
        data=data,
        message="Query suggestion generated; review it before running query_records",
    )


@router.post("/get_schema_history", response_model=schemas.ToolResponse)
async def get_schema_history(payload: schemas.TableRef, orchestrator: orchestrator_dep):
    history = await orchestrator.get_schema_history(payload.table_id)

    return schemas.ToolResponse(
        success=True,
        data={
            "tableId": payload.table_id,
            "versions": len(history),
            "history": [
                {
                    "version": entry.version,
                    "createdAt": entry.created_at.isoformat() if entry.created_at else None,
                    "checksum": entry.checksum,
                    "fieldCount": len(entry.table_schema),
                }
                for entry in history
            ],
        },
        message=f"Found {len(history)} schema versions",
    )


# Read straight from the local registry, no remote call
@router.post("/get_cached_schema", response_model=schemas.ToolResponse)
async def get_cached_schema(payload: schemas.TableRef, orchestrator: orchestrator_dep):
    table = await orchestrator.get_cached_schema(payload.table_id)

    if table is None:
        return schemas.ToolResponse(
            success=False,
            error="not_found",
            message="Schema not found in cache. Run sync_application_schema first.",
        )

    return schemas.ToolResponse(
        success=True,
        data={
            "table": {
                "id": table.id,
                "appId": table.app_id,
                "name": table.name,
                "type": table.type,
                "primaryDisplay": table.primary_display,
                "fields": [
                    {"name": name, **_dump(field)}
                    for name, field in table.table_schema.items()
                ],
            }
        },
        message="Schema retrieved from cache",
    )


@router.post("/list_cached_tables", response_model=schemas.ToolResponse)
async def list_cached_tables(payload: schemas.AppRef, orchestrator: orchestrator_dep):
    tables = await orchestrator.get_application_tables(payload.app_id)

    return schemas.ToolResponse(
        success=True,
        data={"appId": payload.app_id, "tables": [_table_summary(t) for t in tables]},
        message=f"Found {len(tables)} cached tables",
    )


# Validate, then run on the platform; rows come back untouched
@router.post("/query_records", response_model=schemas.ToolResponse)
async def query_records(
    payload: schemas.TableQueryRequest, orchestrator: orchestrator_dep
):
    response = await orchestrator.query_records_with_validation(
        payload.app_id, payload.table_id, payload.partial_query()
    )
    rows = response.get("data", []) if isinstance(response, dict) else response

    return schemas.ToolResponse(
        success=True,
        data=response,
        message=f"Query returned {len(rows)} records",
    )
