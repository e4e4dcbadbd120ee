from logging.config import fileConfig

from alembic import context

from multistock.core_settings import get_settings
from multistock.domain.models import PlatformBase
from multistock.infrastructure.db import create_store_engine

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Only the platform tables are migrated; partitions are provisioned per tenant.
target_metadata = PlatformBase.metadata


def run_migrations_offline():
    context.configure(
        url=get_settings().database_url,
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    settings = get_settings()
    engine = create_store_engine(settings.database_url, settings)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
