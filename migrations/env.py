from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from field_outbox.settings import get_settings

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# FIELD_OUTBOX_DATABASE_URL wins over alembic.ini
_url = get_settings().DATABASE_URL
if _url:
    config.set_main_option("sqlalchemy.url", _url.replace("postgresql://", "postgresql+psycopg://", 1))


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=None,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=None)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
