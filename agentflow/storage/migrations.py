"""Index migrations for execution history queries."""

from sqlalchemy import text

from ..core.logging import get_logger
from .database import get_database_engine

logger = get_logger(__name__)


HISTORY_INDEXES = [
    # Status polling and retention cleanup
    """CREATE INDEX IF NOT EXISTS idx_workflow_exec_status_end
       ON workflow_executions(status, end_time)""",
    # Per-user listing filtered by time range
    """CREATE INDEX IF NOT EXISTS idx_workflow_exec_user_start
       ON workflow_executions(user_id, start_time DESC)""",
    """CREATE INDEX IF NOT EXISTS idx_workflow_exec_mode
       ON workflow_executions(mode)""",
    """CREATE INDEX IF NOT EXISTS idx_workflow_steps_execution
       ON workflow_steps(execution_id, step_number)""",
    """CREATE INDEX IF NOT EXISTS idx_audit_logs_execution_timestamp
       ON audit_logs(execution_id, timestamp)""",
    """CREATE INDEX IF NOT EXISTS idx_audit_logs_action_type
       ON audit_logs(action_type)""",
    """CREATE INDEX IF NOT EXISTS idx_billing_user_period
       ON billing_records(user_id, billing_period)""",
]


def create_indexes_for_history_queries():
    """Create database indexes used by status and time-range listings."""
    engine = get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in HISTORY_INDEXES:
                connection.execute(text(statement))
            connection.commit()
        logger.info("Created database indexes for execution history queries")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite():
    """Apply SQLite pragmas for concurrent readers polling execution status."""
    engine = get_database_engine()
    if "sqlite" not in str(engine.url) or ":memory:" in str(engine.url):
        return
    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode=WAL"))
        connection.execute(text("PRAGMA foreign_keys=ON"))
        connection.commit()
    logger.info("Applied SQLite optimizations")


def run_migrations():
    """Run all index migrations."""
    logger.info("Starting database migrations")
    create_indexes_for_history_queries()
    optimize_sqlite()
    logger.info("Database migrations completed successfully")


if __name__ == "__main__":
    run_migrations()
