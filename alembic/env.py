"""
Alembic environment for the record store.

Tables: rollout_records, service_revisions, certificate_records. The URL
comes from DatabaseSettings (ENGINE_DATABASE_URL or POSTGRES_*), never from
an ini file.
"""

from logging.config import fileConfig

from alembic import context

from deployment_engine.infrastructure.postgres.config import get_database_settings
from deployment_engine.infrastructure.postgres.database import Base, create_db_engine
from deployment_engine.infrastructure.postgres.models import (  # noqa: F401  registers tables
    CertificateRecordORM,
    RolloutRecordORM,
    ServiceRevisionORM,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

database_url = get_database_settings().database_url
target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # sqlite cannot ALTER most columns in place
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL for review instead of applying it."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_db_engine(database_url)

    try:
        with engine.connect() as connection:
            _configure(connection=connection)

            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
