import asyncio
import os
from typing import Any, Dict, List, Optional

# Settings are read at import time, so set them before importing the app
os.environ.setdefault("BUDIBASE_URL", "http://platform.test")
os.environ.setdefault("BUDIBASE_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.api.deps import get_orchestrator
from app.core.errors import NotFoundError
from app.core.registry.orchestrator import SyncOrchestrator
from app.core.registry.store import SchemaStore
from app.core.schemas import Application, FieldDef, OptimizedQuery, Table
from app.main import app


def make_table(
    table_id: str, name: str, fields: Dict[str, Any], kind: str = "table"
) -> Table:
    """fields maps a name to either a type string or a full field definition."""
    schema = {}
    for field_name, spec in fields.items():
        if isinstance(spec, str):
            spec = {"type": spec, "name": field_name}
        schema[field_name] = FieldDef.model_validate(spec)
    return Table(id=table_id, name=name, type=kind, table_schema=schema)


def make_app(app_id: str, name: Optional[str] = None) -> Application:
    return Application(
        id=app_id,
        name=name or app_id.title(),
        url=f"/{app_id}",
        status="published",
        created_at="2024-01-01T00:00:00Z",
        updated_at="2024-01-02T00:00:00Z",
    )


class FakePlatform:
    """In-memory stand-in for the remote platform, counting every call."""

    def __init__(self):
        self.apps: Dict[str, Application] = {}
        self.tables: Dict[str, List[Table]] = {}
        self.rows: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: Dict[str, int] = {
            "get_applications": 0,
            "get_application": 0,
            "get_tables": 0,
            "query_records": 0,
        }
        self.queries: List[OptimizedQuery] = []
        self.delay = 0.0

    def add_app(self, app_id: str, tables: List[Table]) -> None:
        self.apps[app_id] = make_app(app_id)
        self.tables[app_id] = tables

    async def get_applications(self) -> List[Application]:
        self.calls["get_applications"] += 1
        return list(self.apps.values())

    async def get_application(self, app_id: str) -> Application:
        self.calls["get_application"] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        # matched by id or case-insensitive name, like the real client
        for app in self.apps.values():
            if app.id == app_id or app.name.lower() == app_id.lower():
                return app
        raise NotFoundError(f"Application not found: {app_id}")

    async def get_tables(self, app_id: str) -> List[Table]:
        self.calls["get_tables"] += 1
        return [table.model_copy(deep=True) for table in self.tables.get(app_id, [])]

    async def query_records(self, app_id: str, query: OptimizedQuery) -> Dict[str, Any]:
        self.calls["query_records"] += 1
        self.queries.append(query)
        return {"data": self.rows.get(query.table_id, []), "hasNextPage": False}


# Customers lives in app1, Orders in app2
@pytest_asyncio.fixture(scope="function")
async def platform():
    fake = FakePlatform()
    fake.add_app(
        "app1",
        [
            make_table(
                "ta_customers",
                "Customers",
                {
                    "name": {
                        "type": "string",
                        "name": "name",
                        "constraints": {"type": "string", "presence": True},
                    },
                    "age": "number",
                },
            )
        ],
    )
    fake.add_app(
        "app2",
        [
            make_table(
                "ta_orders",
                "Orders",
                {"active": "boolean", "createdAt": "datetime", "total": "number"},
            )
        ],
    )
    fake.rows["ta_customers"] = [{"_id": "ro_1", "name": "Ada", "age": 36}]
    return fake


@pytest_asyncio.fixture(scope="function")
async def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'data' / 'schema-registry.db'}"


@pytest_asyncio.fixture(scope="function")
async def store(database_url):
    registry = SchemaStore(database_url)
    await registry.initialize()
    yield registry
    await registry.close()


@pytest_asyncio.fixture(scope="function")
async def orchestrator(store, platform):
    orch = SyncOrchestrator(store, platform)
    await orch.initialize()
    yield orch
    await orch.close()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
