"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from flipit.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations(target: Engine):
    """Add columns introduced after a table was first created.

    Only nullable or defaulted columns are added; renames and type changes
    still need a manual migration.
    """
    inspector = inspect(target)
    existing_tables = set(inspector.get_table_names())

    for table in SQLModel.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        columns = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in columns or column.primary_key:
                continue
            col_type = column.type.compile(dialect=target.dialect)
            logger.info(f"Migrating: adding {table.name}.{column.name} ({col_type})")
            with target.connect() as conn:
                conn.execute(text(f'ALTER TABLE {table.name} ADD COLUMN "{column.name}" {col_type}'))
                conn.commit()


def create_db_and_tables(target: Engine | None = None):
    """Create all tables. Called on startup."""
    import flipit.models  # noqa: F401  (registers tables on the metadata)

    target = target or engine
    SQLModel.metadata.create_all(target)
    _run_migrations(target)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
