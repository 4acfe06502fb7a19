"""
Auto-migration system for schema changes.

This module automatically detects and applies schema changes when the app starts.
It ensures that all tables and columns defined in models exist in the database.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports when running standalone
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from database import engine, Base
import models  # noqa: F401  (registers every table on Base.metadata)

logger = logging.getLogger(__name__)


async def get_table_columns(engine: AsyncEngine, table_name: str) -> set:
    """Get all column names for a table from the database."""
    async with engine.connect() as conn:
        if engine.dialect.name == "sqlite":
            result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
            return {row[1] for row in result}
        result = await conn.execute(
            text("SELECT column_name FROM information_schema.columns WHERE table_name = :table"),
            {"table": table_name},
        )
        return {row[0] for row in result}


def _default_clause(col) -> str:
    if col.default is None or not hasattr(col.default, "arg") or callable(col.default.arg):
        return ""
    value = col.default.arg
    if isinstance(value, bool):
        return f"DEFAULT {str(value).upper()}"
    if isinstance(value, (int, float)):
        return f"DEFAULT {value}"
    if isinstance(value, str):
        return "DEFAULT '{}'".format(value.replace("'", "''"))
    return ""


async def add_missing_columns(engine: AsyncEngine):
    """
    Check all SQLAlchemy models and add any missing columns to the database.
    This is safe to run multiple times.
    """
    if engine.dialect.name == "sqlite":
        logger.info("ℹ️ Skipping column detection for SQLite. create_all handles table creation.")
        return

    logger.info("🔍 Checking for missing database columns...")
    changes_made = False

    for table_name, table in Base.metadata.tables.items():
        db_columns = await get_table_columns(engine, table_name)
        if not db_columns:
            continue

        missing_columns = {col.name for col in table.columns} - db_columns
        if not missing_columns:
            logger.debug(f"✅ Table '{table_name}' schema is up to date")
            continue

        logger.info(f"📝 Table '{table_name}' is missing columns: {missing_columns}")
        async with engine.begin() as conn:
            for col_name in missing_columns:
                col = table.columns[col_name]
                col_type = col.type.compile(engine.dialect)
                default_clause = _default_clause(col)
                # New NOT NULL columns need a default to backfill existing rows
                nullable = "NOT NULL" if (not col.nullable and default_clause) else "NULL"
                alter_sql = (
                    f"ALTER TABLE {table_name} "
                    f"ADD COLUMN IF NOT EXISTS {col_name} {col_type} {nullable} {default_clause}"
                )
                try:
                    await conn.execute(text(alter_sql))
                    logger.info(f"✅ Added column {table_name}.{col_name}")
                    changes_made = True
                except Exception as e:
                    logger.error(f"❌ Failed to add column {table_name}.{col_name}: {e}")
                    raise

    if changes_made:
        logger.info("✅ Schema migration completed - columns added")
    else:
        logger.info("✅ Schema is up to date - no changes needed")


async def run_migrations():
    """
    Main migration entry point.
    1. Creates missing tables (via create_all)
    2. Adds missing columns to existing tables
    """
    logger.info("=" * 60)
    logger.info("Starting database schema migration...")
    logger.info("=" * 60)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ All tables exist")

    await add_missing_columns(engine)

    logger.info("=" * 60)
    logger.info("Database schema migration finished")
    logger.info("=" * 60)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migrations())
