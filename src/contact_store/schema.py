"""
Contact Store - Table Definitions
SQLAlchemy Core metadata for leads, contacts, call logs and the migration log.

Column names follow the camelCase naming already used in stored data, so
raw SQL elsewhere in the data layer quotes them.
"""
from datetime import datetime
from typing import Dict, List

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, MetaData, String, Table, Text,
)
import structlog

logger = structlog.get_logger(__name__)

metadata = MetaData()

leads = Table(
    "leads", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("firstName", String(100), nullable=False),
    Column("lastName", String(100), nullable=False),
    Column("email", String(255)),
    Column("phone", String(50), nullable=False),
    Column("alternatePhone", String(50)),
    Column("company", String(200)),
    Column("title", String(150)),
    Column("industry", String(100)),
    Column("website", String(255)),
    Column("status", String(30), nullable=False, default="new"),
    Column("priority", String(20), nullable=False, default="medium"),
    Column("leadSource", String(100)),
    Column("addressCity", String(100)),
    Column("addressState", String(100)),
    Column("addressCountry", String(100)),
    Column("leadScore", Integer, default=0),
    Column("estimatedValue", Float),
    Column("lastContactDate", DateTime),
    Column("nextFollowUpDate", DateTime),
    Column("timeZone", String(50)),
    Column("notes", Text),
    Column("tags", JSON),
    Column("assignedTo", String(100)),
    Column("callAttempts", Integer, default=0),
    Column("doNotCall", Boolean, default=False),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("createdAt", DateTime, nullable=False, default=datetime.utcnow),
    Column("updatedAt", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    Column("deletedAt", DateTime),
)

contacts = Table(
    "contacts", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("leadId", Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(30), nullable=False),
    Column("value", String(255), nullable=False),
    Column("label", String(100)),
    Column("isPrimary", Boolean, nullable=False, default=False),
    Column("isVerified", Boolean, nullable=False, default=False),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("metadata", JSON),
    Column("createdAt", DateTime, nullable=False, default=datetime.utcnow),
    Column("updatedAt", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    Column("deletedAt", DateTime),
)

call_logs = Table(
    "call_logs", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("leadId", Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
    Column("phoneNumber", String(50), nullable=False),
    Column("direction", String(20), nullable=False, default="outbound"),
    Column("status", String(30), nullable=False, default="initiated"),
    Column("outcome", String(50)),
    Column("initiatedAt", DateTime, nullable=False, default=datetime.utcnow),
    Column("answeredAt", DateTime),
    Column("completedAt", DateTime),
    Column("duration", Integer, default=0),
    Column("notes", Text),
    Column("agentId", String(100)),
    Column("agentName", String(150)),
    Column("metadata", JSON),
    Column("followUpRequired", Boolean, default=False),
    Column("createdAt", DateTime, nullable=False, default=datetime.utcnow),
    Column("updatedAt", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
)

migrations = Table(
    "migrations", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("runOn", DateTime, nullable=False, default=datetime.utcnow),
)

# Tables exported by backups, in dependency order
CORE_TABLES: List[str] = ["leads", "contacts", "call_logs", "migrations"]

MIGRATIONS: Dict[str, str] = {
    "001_create_leads_table": "leads",
    "002_create_contacts_table": "contacts",
    "003_create_call_logs_table": "call_logs",
}


async def run_migrations(db) -> List[str]:
    """
    Create missing tables and record applied migrations.

    Returns:
        Names of migrations recorded by this run
    """
    await db.run_sync(metadata.create_all)

    applied = {row["name"] for row in await db.execute('SELECT name FROM migrations')}
    recorded = []
    for name in MIGRATIONS:
        if name in applied:
            continue
        await db.execute(
            'INSERT INTO migrations (name, "runOn") VALUES (:name, :run_on)',
            {"name": name, "run_on": datetime.utcnow()},
        )
        recorded.append(name)

    logger.info("Migrations complete", recorded=len(recorded), total=len(MIGRATIONS))
    return recorded


async def verify_models(db) -> Dict[str, bool]:
    """Check that every model table exists."""
    status = {table: await db.table_exists(table) for table in MIGRATIONS.values()}
    missing = [table for table, exists in status.items() if not exists]
    if missing:
        raise RuntimeError(f"Missing tables: {', '.join(missing)}")
    logger.info("Models verified", tables=list(status))
    return status
