"""
env.py — Alembic environment for FleetParts

Points Alembic at fleetparts.models.Base.metadata and takes the database
URL from fleetparts settings. `alembic -x url=...` overrides it for
one-off runs against another database.

Business Rules:
- One transaction per migration run
- SQLite runs in batch mode so ALTERs work in local dev
- Column type changes are compared during autogenerate

Called by: alembic CLI
Depends on: fleetparts.models (Base + all tables), fleetparts.config (settings)
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from fleetparts.config import settings
from fleetparts.models import Base  # noqa: F401  (registers every model on Base.metadata)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("url") or settings.database_url


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
