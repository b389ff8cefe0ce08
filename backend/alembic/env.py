"""Alembic environment; the URL always comes from ``DATABASE_URL`` via app settings."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

from app.infra.db import Base
from app.settings import settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def migration_url(database_url: str) -> str:
    """Alembic runs synchronously; psycopg 3 covers both modes so only aiosqlite needs replacing."""
    url = make_url(database_url)
    if url.drivername == "sqlite+aiosqlite":
        url = url.set(drivername="sqlite")
    return url.render_as_string(hide_password=False)


def _run(**configure_options) -> None:  # noqa: ANN003
    context.configure(target_metadata=Base.metadata, **configure_options)
    with context.begin_transaction():
        context.run_migrations()


def main() -> None:
    url = migration_url(settings.database_url)
    if context.is_offline_mode():
        _run(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
        return
    engine = create_engine(url, poolclass=pool.NullPool)
    with engine.connect() as connection:
        _run(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    engine.dispose()


main()
