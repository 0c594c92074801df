"""
Database migrations for vwbackup.

Simple migration system to handle schema changes without requiring Alembic:
missing tables are created and model columns missing from an existing table
are added with ALTER TABLE.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from vwbackup import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    This function creates tables if they don't exist and runs any necessary migrations.
    It's designed to be called from multiple Gunicorn workers without conflicts.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        model_tables = set(db.metadata.tables)
        if not model_tables.issubset(existing_tables):
            logger.info("Missing tables found - creating database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except SQLAlchemyError as e:
                # Another worker may have created the tables first
                logger.warning(f"Failed to create database schema: {e}")
            inspector = inspect(db.engine)

        run_migrations(app, inspector)


def run_migrations(app, inspector=None):
    """
    Add model columns that are missing from existing tables.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    added = []
    existing_tables = inspector.get_table_names()

    for table_name, table in db.metadata.tables.items():
        if table_name not in existing_tables:
            continue

        columns = {col['name'] for col in inspector.get_columns(table_name)}
        for column in table.columns:
            if column.name in columns:
                continue

            column_type = column.type.compile(dialect=db.engine.dialect)
            logger.info(f"Running migration: Adding {column.name} column to {table_name} table")
            try:
                db.session.execute(text(
                    f"ALTER TABLE {table_name} ADD COLUMN {column.name} {column_type}"
                ))
                db.session.commit()
                added.append(f"{table_name}.{column.name}")
                logger.info(f"Successfully added {column.name} column")
            except SQLAlchemyError as e:
                logger.error(f"Failed to add {column.name} column to {table_name}: {e}")
                db.session.rollback()

    return added
