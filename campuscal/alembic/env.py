from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context

from campuscal.database import DATABASE_URL, engine
from campuscal.models import Base

config = context.config

# The calendar database location comes from campuscal settings, not alembic.ini.
config.set_main_option("sqlalchemy.url", str(DATABASE_URL))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _options(dialect_name: str) -> dict[str, Any]:
    # SQLite cannot ALTER most columns, so calendar tables change via batch copies.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        literal_binds=True,
        **_options(engine.dialect.name),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    with engine.connect() as connection:
        context.configure(connection=connection, **_options(connection.dialect.name))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
