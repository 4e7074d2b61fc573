"""Database migrations: added columns and indexes for listing and trigger lookup."""

from sqlalchemy import Engine, inspect, text
from ..core.logging import get_logger

logger = get_logger(__name__)


INDEX_STATEMENTS = [
    # Listing executions of a workflow filtered by status
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow_status
       ON workflow_executions(workflow_id, status, created_at DESC)""",
    # Engine statistics by status
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_status
       ON workflow_executions(status)""",
    # Loading an execution's records in order
    """CREATE INDEX IF NOT EXISTS idx_node_records_execution_sequence
       ON node_execution_records(execution_id, sequence)""",
    # Schedule poller and event fan-out
    """CREATE INDEX IF NOT EXISTS idx_workflow_triggers_type_enabled
       ON workflow_triggers(type, enabled)""",
    # Latest definition version lookups
    """CREATE INDEX IF NOT EXISTS idx_workflow_definitions_template
       ON workflow_definitions(is_template, id)""",
    # Active workflow listing
    """CREATE INDEX IF NOT EXISTS idx_workflow_definitions_active
       ON workflow_definitions(is_active, id)""",
    # Cross-workflow execution listing
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_created
       ON workflow_executions(created_at DESC)""",
]

# Columns added after the first release: (table, column, DDL type and default)
ADDED_COLUMNS = [
    ("workflow_definitions", "is_active", "BOOLEAN NOT NULL DEFAULT TRUE"),
]


def add_missing_columns(engine: Engine):
    """Add columns that tables created by an older release lack."""
    try:
        inspector = inspect(engine)
        added = 0
        with engine.connect() as connection:
            for table, column, ddl in ADDED_COLUMNS:
                if not inspector.has_table(table):
                    continue
                existing = {info["name"] for info in inspector.get_columns(table)}
                if column not in existing:
                    connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                    added += 1
            connection.commit()
        if added:
            logger.info(f"Added {added} missing database columns")
    except Exception as e:
        logger.error(f"Failed to add missing database columns: {str(e)}")
        raise


def create_indexes(engine: Engine):
    """Create database indexes used by the definition store queries."""
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
            logger.info(f"Created {len(INDEX_STATEMENTS)} database indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_database(engine: Engine):
    """Apply backend-specific settings."""
    try:
        with engine.connect() as connection:
            if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
                # WAL lets the API read while the dispatcher writes
                connection.execute(text("PRAGMA journal_mode=WAL"))
                connection.execute(text("PRAGMA optimize"))
                logger.info("Applied SQLite optimizations")
            connection.commit()
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Engine):
    """Run all migrations."""
    try:
        logger.info("Starting database migrations")
        add_missing_columns(engine)
        create_indexes(engine)
        optimize_database(engine)
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Database migrations failed: {str(e)}")
        raise
