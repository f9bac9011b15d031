"""
Alembic migration environment for SmartScribe.

Migrations are raw SQL against SQLite, so there is no target metadata. The
URL normally comes from ``database.run_migrations()``; a bare ``alembic``
invocation falls back to the storage layer's configured database path.
"""

from alembic import context
from sqlalchemy import create_engine, pool, text

config = context.config


def get_database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url

    from smartscribe.database.database import get_db_path

    return f"sqlite:///{get_db_path()}"


def run_migrations_offline() -> None:
    """Emit SQL without a database connection."""
    context.configure(
        url=get_database_url(),
        target_metadata=None,
        literal_binds=True,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Apply pending revisions and commit them with the version stamp.

    Foreign keys are off while batch operations rebuild tables. The PRAGMA
    autobegins an outer transaction on SQLAlchemy 2.x, so it has to be
    committed explicitly or the ``alembic_version`` row is rolled back when
    the connection closes.
    """
    engine = create_engine(get_database_url(), poolclass=pool.NullPool)

    with engine.connect() as connection:
        connection.execute(text("PRAGMA foreign_keys=OFF"))
        context.configure(
            connection=connection,
            target_metadata=None,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()
        connection.commit()

        connection.execute(text("PRAGMA foreign_keys=ON"))
        connection.commit()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
