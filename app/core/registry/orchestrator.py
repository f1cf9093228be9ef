import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional, Protocol, Tuple

from app.core.errors import NotFoundError
from app.core.registry.store import DEFAULT_MAX_AGE_MS, SchemaStore
from app.core.registry.validator import QueryValidator
from app.core.schemas import (
    Application,
    OptimizedQuery,
    QueryRequest,
    QuerySuggestion,
    SchemaChange,
    SchemaVersion,
    SyncResult,
    Table,
    ValidationResult,
)


# -----------------------------------------------------------------------------
# SYNC ORCHESTRATOR
# Purpose: pull structure from the platform into the SchemaStore, keep it
#          fresh on a timer and gate row searches behind validation.
# Why: this is the single entry point the tool layer talks to.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


class Platform(Protocol):
    """Read-only operations the orchestrator needs from the remote platform."""

    async def get_applications(self) -> List[Application]: ...

    async def get_application(self, app_id: str) -> Application: ...

    async def get_tables(self, app_id: str) -> List[Table]: ...

    async def query_records(self, app_id: str, query: OptimizedQuery) -> Dict[str, Any]: ...


class SyncOrchestrator:
    def __init__(
        self,
        store: SchemaStore,
        platform: Platform,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
    ):
        self.store = store
        self.platform = platform
        self.validator = QueryValidator(store)
        self.max_age_ms = max_age_ms

        # one running sync per application; late callers share its outcome
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        # names and dev ids seen by sync_application -> platform id
        self._aliases: Dict[str, str] = {}
        self._unsubscribe = None

    async def initialize(self) -> None:
        await self.store.initialize()
        if self._unsubscribe is None:
            self._unsubscribe = self.store.changes.subscribe(self._log_change)

    @staticmethod
    def _log_change(change: SchemaChange) -> None:
        logger.info(
            f"Schema changed: table {change.table_id} of {change.app_id} "
            f"is now version {change.version}"
        )

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_application(
        self,
        app_id: str,
        force_sync: bool = False,
        sync_interval_ms: Optional[int] = None,
    ) -> SyncResult:
        """
        Bring one application's schema up to date.

        Without force_sync a fresh application is left alone: no remote
        calls, no writes. A call made while another sync of the same
        application is running waits for that sync instead of starting
        its own.

        Args:
            app_id: Application to sync.
            force_sync: Fetch even when the stored schema is fresh.
            sync_interval_ms: When set, (re)start a periodic forced sync.

        Returns:
            SyncResult with the recorded schema changes.
        """
        key = self.canonical_id(app_id)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._sync(app_id, key, force_sync))
            self._in_flight[key] = task
            task.add_done_callback(partial(self._forget, key))
        else:
            logger.debug(f"Joining in-flight sync of {key}")

        result = await asyncio.shield(task)

        if sync_interval_ms:
            self._schedule(result.app_id, sync_interval_ms)
        return result

    def canonical_id(self, app_id: str) -> str:
        """Platform id for a name or dev id already resolved by an earlier sync."""
        return self._aliases.get(app_id, app_id)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _sync(self, app_id: str, key: str, force_sync: bool) -> SyncResult:
        if not force_sync and not self.store.needs_sync(key, self.max_age_ms):
            logger.debug(f"Application {key} schema is up to date")
            return SyncResult(app_id=key, synced=False)

        try:
            app = await self.platform.get_application(app_id)
            if app.id != app_id:
                logger.debug(f"Application {app_id} resolved to {app.id}")
                self._aliases[app_id] = app.id
            tables = await self.platform.get_tables(app.id)
            changes = await self.store.sync_application(app, tables)
        except Exception as error:
            logger.error(f"Failed to sync application {app_id}: {error}")
            raise

        return SyncResult(app_id=app.id, synced=True, changes=changes)

    # =========================================================================
    # Periodic re-sync
    # =========================================================================

    def _schedule(self, app_id: str, interval_ms: int) -> None:
        self.cancel_auto_sync(app_id)
        self._timers[app_id] = asyncio.create_task(
            self._auto_sync(app_id, interval_ms / 1000)
        )
        logger.info(f"Auto-sync enabled for {app_id} every {interval_ms}ms")

    async def _auto_sync(self, app_id: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_application(app_id, force_sync=True)
            except Exception as error:
                logger.error(f"Auto-sync failed for {app_id}: {error}")

    def cancel_auto_sync(self, app_id: str) -> bool:
        timer = self._timers.pop(self.canonical_id(app_id), None)
        if timer is None:
            return False
        timer.cancel()
        return True

    @property
    def auto_synced_apps(self) -> List[str]:
        return list(self._timers)

    # =========================================================================
    # Schema lookup
    # =========================================================================

    async def ensure_schema(self, table_id: str, app_id: Optional[str] = None) -> Table:
        """
        Return the table's schema, syncing its application first when the
        registry does not know the table yet.

        Raises:
            NotFoundError: no application holds this table.
        """
        table = await self.store.get_table_schema(table_id)
        if table is not None:
            return table

        if not app_id:
            app_id = await self._find_application(table_id)

        await self.sync_application(app_id, force_sync=True)

        table = await self.store.get_table_schema(table_id)
        if table is None:
            raise NotFoundError(f"Table {table_id} not found in application {app_id}")
        return table

    async def _find_application(self, table_id: str) -> str:
        # Costs one remote call per application; pass app_id to avoid it
        logger.warning(
            f"No application given for table {table_id}; scanning every application"
        )
        for app in await self.platform.get_applications():
            tables = await self.platform.get_tables(app.id)
            if any(table.id == table_id for table in tables):
                logger.info(f"Table {table_id} belongs to application {app.id}")
                return app.id
        raise NotFoundError(f"Cannot find application for table {table_id}")

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_records_with_validation(
        self, app_id: Optional[str], table_id: str, query: QueryRequest
    ) -> Dict[str, Any]:
        """
        Validate a search against the stored schema and run it remotely.

        The platform's response is returned untouched.
        """
        table = await self.ensure_schema(table_id, app_id)
        optimized = await self.validator.build_query(table_id, query)
        return await self.platform.query_records(table.app_id or app_id, optimized)

    async def validate_query(
        self, table_id: str, query: QueryRequest, app_id: Optional[str] = None
    ) -> Tuple[ValidationResult, Optional[OptimizedQuery]]:
        table = await self.ensure_schema(table_id, app_id)
        result = self.validator.validate_query(table, query)
        if not result.valid:
            return result, None
        return result, self.validator.optimize_query(table, query)

    async def suggest_query(
        self, table_id: str, description: str, app_id: Optional[str] = None
    ) -> QuerySuggestion:
        # A suggestion is best effort: any failure here only leaves it empty
        try:
            await self.ensure_schema(table_id, app_id)
        except Exception as error:
            logger.warning(f"Suggesting for {table_id} without a synced schema: {error}")
        return await self.validator.suggest_query(table_id, description)

    async def get_cached_schema(self, table_id: str) -> Optional[Table]:
        return await self.store.get_table_schema(table_id)

    async def get_schema_history(self, table_id: str) -> List[SchemaVersion]:
        return await self.store.get_schema_history(table_id)

    async def get_application_tables(self, app_id: str) -> List[Table]:
        return await self.store.get_application_tables(app_id)

    async def close(self) -> None:
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()

        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        await self.store.close()
