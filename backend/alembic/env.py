import sys
import os
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context

# backend/ on sys.path so db.* and core.* resolve
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from core.config import settings
from db.session import Base
import db.models  # noqa: F401  registers interviews, turns, recordings, usage, cache

target_metadata = Base.metadata

DATABASE_URL = settings.DATABASE_URL
# configparser interpolation
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))

# sqlite cannot ALTER constraints in place
RENDER_AS_BATCH = DATABASE_URL.startswith("sqlite")


def run_migrations_offline():
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=RENDER_AS_BATCH,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=RENDER_AS_BATCH,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
