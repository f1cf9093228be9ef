import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core import models
from app.core.database import Base, create_engine, create_sessionmaker, ensure_database_dir
from app.core.errors import SchemaIntegrityError, TransientIOError
from app.core.registry.checksum import canonical_json, checksum, parse_schema
from app.core.registry.events import SchemaChangeBus
from app.core.schemas import (
    Application,
    ApplicationStatus,
    Schema,
    SchemaChange,
    SchemaVersion,
    Table,
)


# -----------------------------------------------------------------------------
# SCHEMA STORE
# Purpose: persist application/table metadata with an append-only version log,
#          serve schemas through a read-through cache and announce changes.
# Why: queries are checked locally against the last known remote structure.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 3600000


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_to_table(record: models.TableRecord) -> Table:
    try:
        table_schema = parse_schema(record.schema)
    except ValidationError as error:
        raise SchemaIntegrityError(record.table_id, str(error)) from error

    return Table(
        id=record.table_id,
        name=record.name,
        type=record.type,
        primary_display=record.primary_display,
        table_schema=table_schema,
        app_id=record.app_id,
    )


def _record_to_app(record: models.ApplicationRecord) -> ApplicationStatus:
    return ApplicationStatus(
        app_id=record.app_id,
        name=record.name,
        url=record.url,
        status=record.status,
        last_synced=_as_utc(record.last_synced),
        metadata=record.metadata_json or {},
    )


class SchemaStore:
    """
    Versioned registry of remote applications, tables and fields.

    The store owns the single database engine of the process and an
    in-memory cache derived from it. Other components must go through
    these methods; nothing writes to the cache directly.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.changes = SchemaChangeBus()

        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._tables: Dict[str, Table] = {}
        self._apps: Dict[str, ApplicationStatus] = {}
        self._app_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Open the store, create the registry tables and indexes if absent and
        warm the cache with every known application and table.

        Calling it again on an open store does nothing.
        """
        if self._engine is not None:
            return

        ensure_database_dir(self.database_url)
        self._engine = create_engine(self.database_url, echo=self.echo)
        self._sessionmaker = create_sessionmaker(self._engine)

        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            await self._load_cache()
        except SQLAlchemyError as error:
            logger.error(f"Failed to initialize schema store: {error}")
            await self.close()
            raise TransientIOError("Failed to initialize schema store") from error

        logger.info(
            f"Schema store ready: {len(self._apps)} applications, "
            f"{len(self._tables)} tables cached"
        )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        self._tables.clear()
        self._apps.clear()

    def _session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError("Schema store is not initialized")
        return self._sessionmaker()

    async def _load_cache(self) -> None:
        async with self._session() as session:
            apps = (await session.execute(select(models.ApplicationRecord))).scalars().all()
            tables = (await session.execute(select(models.TableRecord))).scalars().all()

        for record in apps:
            self._apps[record.app_id] = _record_to_app(record)

        for record in tables:
            try:
                self._tables[record.table_id] = _record_to_table(record)
            except SchemaIntegrityError as error:
                logger.error(f"{error}; table left out of the cache")

    # =========================================================================
    # Write path
    # =========================================================================

    async def sync_application(
        self, app: Application, tables: List[Table]
    ) -> List[SchemaChange]:
        """
        Store a fresh snapshot of one application and its tables.

        Everything happens in a single transaction: the application row is
        upserted and every table whose canonical checksum differs from its
        latest version gets its row updated and a new version appended.
        Any failure rolls the whole application back.

        Args:
            app: Application as reported by the platform.
            tables: All tables of that application, with field schemas.

        Returns:
            The schema changes that were recorded, in append order.

        Example:
            changes = await store.sync_application(app, tables)
        """
        lock = self._app_locks.setdefault(app.id, asyncio.Lock())
        self._lock_holders[app.id] = self._lock_holders.get(app.id, 0) + 1
        try:
            async with lock:
                return await self._sync_locked(app, tables)
        finally:
            # drop the lock once nobody holds or waits for it
            self._lock_holders[app.id] -= 1
            if not self._lock_holders[app.id]:
                del self._lock_holders[app.id]
                del self._app_locks[app.id]

    async def _sync_locked(
        self, app: Application, tables: List[Table]
    ) -> List[SchemaChange]:
        now = datetime.now(timezone.utc)
        recorded: List[Tuple[Table, Optional[SchemaChange]]] = []

        try:
            async with self._session() as session:
                async with session.begin():
                    await self._upsert_application(session, app, now)

                    for table in tables:
                        entry = await self._record_table(session, app.id, table, now)
                        if entry is not None:
                            recorded.append(entry)
        except SQLAlchemyError as error:
            logger.error(f"Failed to sync application {app.id}: {error}")
            raise TransientIOError(f"Failed to sync application {app.id}") from error
        except Exception as error:
            logger.error(f"Failed to sync application {app.id}: {error}")
            raise

        # Committed: bring the cache in line, then announce
        self._apps[app.id] = ApplicationStatus(
            app_id=app.id,
            name=app.name,
            url=app.url,
            status=app.status,
            last_synced=now,
            metadata=app.metadata_blob(),
        )
        changes = [change for _, change in recorded if change is not None]
        for stored, _ in recorded:
            self._tables[stored.id] = stored
        for change in changes:
            self.changes.publish(change)

        logger.info(
            f"Application {app.id} synced: {len(tables)} tables, "
            f"{len(changes)} schema changes"
        )
        return changes

    async def _upsert_application(
        self, session: AsyncSession, app: Application, now: datetime
    ) -> None:
        record = await session.get(models.ApplicationRecord, app.id)
        if record is None:
            record = models.ApplicationRecord(app_id=app.id, created_at=now)
            session.add(record)

        record.name = app.name
        record.url = app.url
        record.status = app.status
        record.metadata_json = app.metadata_blob()
        record.last_synced = now
        record.updated_at = now
        await session.flush()

    async def _record_table(
        self, session: AsyncSession, app_id: str, table: Table, now: datetime
    ) -> Optional[Tuple[Table, Optional[SchemaChange]]]:
        """
        Returns None when nothing was written, (table, None) when only the
        table row was repaired and (table, change) when a version was added.
        """
        canonical = canonical_json(table.table_schema)
        digest = checksum(canonical)

        latest = await self._latest_version(session, table.id)
        if latest is not None and latest.checksum == digest:
            record = await session.get(models.TableRecord, table.id)
            if record is not None and record.schema == canonical:
                return None

            # Row lost or no longer equal to its latest version: rewrite it
            logger.warning(
                f"Table {table.id} row differs from version {latest.version}; rewriting it"
            )
            self._write_table_row(session, record, app_id, table, canonical, now)
            await session.flush()
            return self._stored_table(app_id, table, canonical), None

        previous_schema = None
        if latest is not None:
            try:
                previous_schema = parse_schema(latest.schema)
            except ValidationError as error:
                logger.error(
                    f"{SchemaIntegrityError(table.id, str(error))}; "
                    "change recorded without previous schema"
                )

        record = await session.get(models.TableRecord, table.id)
        self._write_table_row(session, record, app_id, table, canonical, now)
        await session.flush()

        version = (latest.version if latest is not None else 0) + 1
        session.add(
            models.SchemaVersionRecord(
                app_id=app_id,
                table_id=table.id,
                version=version,
                schema=canonical,
                checksum=digest,
                created_at=now,
            )
        )
        await session.flush()

        stored = self._stored_table(app_id, table, canonical)
        change = SchemaChange(
            app_id=app_id,
            table_id=table.id,
            version=version,
            previous_schema=previous_schema,
            new_schema=stored.table_schema,
        )
        return stored, change

    @staticmethod
    def _write_table_row(
        session: AsyncSession,
        record: Optional[models.TableRecord],
        app_id: str,
        table: Table,
        canonical: str,
        now: datetime,
    ) -> None:
        if record is None:
            record = models.TableRecord(table_id=table.id, created_at=now)
            session.add(record)

        record.app_id = app_id
        record.name = table.name
        record.type = table.type
        record.primary_display = table.primary_display
        record.schema = canonical
        record.last_synced = now
        record.updated_at = now

    @staticmethod
    def _stored_table(app_id: str, table: Table, canonical: str) -> Table:
        # Cache and notify with exactly what was persisted
        return Table(
            id=table.id,
            name=table.name,
            type=table.type,
            primary_display=table.primary_display,
            table_schema=parse_schema(canonical),
            app_id=app_id,
        )

    @staticmethod
    async def _latest_version(
        session: AsyncSession, table_id: str
    ) -> Optional[models.SchemaVersionRecord]:
        query = (
            select(models.SchemaVersionRecord)
            .where(models.SchemaVersionRecord.table_id == table_id)
            .order_by(models.SchemaVersionRecord.version.desc())
            .limit(1)
        )
        result = await session.execute(query)
        return result.scalars().first()

    # =========================================================================
    # Read path
    # =========================================================================

    async def get_table_schema(self, table_id: str) -> Optional[Table]:
        """
        Read-through lookup of a table.

        Returns None when the table was never synced (or its stored schema
        is unreadable); the caller should sync and try again.
        """
        cached = self._tables.get(table_id)
        if cached is not None:
            return cached

        try:
            async with self._session() as session:
                record = await session.get(models.TableRecord, table_id)
        except SQLAlchemyError as error:
            raise TransientIOError(f"Failed to load table {table_id}") from error

        if record is None:
            return None

        try:
            table = _record_to_table(record)
        except SchemaIntegrityError as error:
            logger.error(f"{error}; treating table as not synced")
            return None

        self._tables[table_id] = table
        return table

    async def get_application_tables(self, app_id: str) -> List[Table]:
        """All stored tables of an application, read from the store itself."""
        query = (
            select(models.TableRecord)
            .where(models.TableRecord.app_id == app_id)
            .order_by(models.TableRecord.name)
        )
        try:
            async with self._session() as session:
                records = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as error:
            raise TransientIOError(f"Failed to list tables of {app_id}") from error

        tables = []
        for record in records:
            try:
                tables.append(_record_to_table(record))
            except SchemaIntegrityError as error:
                logger.error(f"{error}; skipped")
        return tables

    async def get_schema_history(self, table_id: str) -> List[SchemaVersion]:
        """Every stored version of a table, newest first."""
        query = (
            select(models.SchemaVersionRecord)
            .where(models.SchemaVersionRecord.table_id == table_id)
            .order_by(models.SchemaVersionRecord.version.desc())
        )
        try:
            async with self._session() as session:
                records = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as error:
            raise TransientIOError(f"Failed to load history of {table_id}") from error

        history = []
        for record in records:
            try:
                table_schema: Schema = parse_schema(record.schema)
            except ValidationError as error:
                logger.error(
                    f"{SchemaIntegrityError(table_id, str(error))} "
                    f"(version {record.version}); skipped"
                )
                continue
            history.append(
                SchemaVersion(
                    app_id=record.app_id,
                    table_id=record.table_id,
                    version=record.version,
                    table_schema=table_schema,
                    checksum=record.checksum,
                    created_at=_as_utc(record.created_at),
                )
            )
        return history

    def get_application(self, app_id: str) -> Optional[ApplicationStatus]:
        return self._apps.get(app_id)

    def needs_sync(self, app_id: str, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> bool:
        """True when the application was never synced or is older than max_age_ms."""
        app = self._apps.get(app_id)
        if app is None or app.last_synced is None:
            return True

        age = datetime.now(timezone.utc) - app.last_synced
        return age > timedelta(milliseconds=max_age_ms)
