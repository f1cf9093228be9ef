from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    TIMESTAMP,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from app.core.database import Base


# =========================
# Application
# =========================
class ApplicationRecord(Base):
    """
    One row per remote application.
    Upserted on every sync; last_synced drives staleness checks.
    """

    __tablename__ = "applications"

    app_id = Column(String, primary_key=True)

    name = Column(String, nullable=False)
    url = Column(String, nullable=True)
    status = Column(String, nullable=True)

    last_synced = Column(TIMESTAMP(timezone=True), nullable=True, index=True)

    # createdAt / updatedAt / tenantId / template as reported by the platform
    metadata_json = Column("metadata", JSON, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Table
# =========================
class TableRecord(Base):
    """
    Current structure of a remote table.
    schema always equals the schema of the latest SchemaVersionRecord.
    """

    __tablename__ = "tables"

    table_id = Column(String, primary_key=True)

    app_id = Column(
        String,
        ForeignKey("applications.app_id"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    type = Column(String, nullable=True)
    primary_display = Column(String, nullable=True)

    # canonical JSON text, parsed on load so corrupt rows can be detected
    schema = Column(Text, nullable=False)

    last_synced = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Schema version (append-only)
# =========================
class SchemaVersionRecord(Base):
    __tablename__ = "schema_versions"
    __table_args__ = (
        UniqueConstraint("table_id", "version", name="uq_schema_versions_table_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    app_id = Column(String, ForeignKey("applications.app_id"), nullable=False)
    table_id = Column(
        String,
        ForeignKey("tables.table_id"),
        nullable=False,
        index=True,
    )

    version = Column(Integer, nullable=False)
    schema = Column(Text, nullable=False)
    checksum = Column(String, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
