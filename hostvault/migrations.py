"""
Database schema setup for Hostvault.

Simple schema handling without requiring Alembic.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from hostvault import db

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ('backup_runs', 'collector_records', 'health_checks')


def init_database_schema(app):
    """
    Create any missing history tables.

    It's designed to be called from multiple Gunicorn workers without conflicts.
    """
    with app.app_context():
        missing = missing_tables()

        if not missing:
            return

        logger.info(f"Creating missing tables: {', '.join(missing)}")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except SQLAlchemyError as e:
            # Another worker may have created the tables concurrently
            logger.warning(f"Failed to create database schema: {e}")
            if missing_tables():
                raise


def missing_tables(inspector=None):
    """Return the names of required tables that don't exist."""
    if inspector is None:
        inspector = inspect(db.engine)
    existing = set(inspector.get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]
