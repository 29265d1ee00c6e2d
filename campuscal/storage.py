"""Database initialization and migrations."""

from __future__ import annotations

import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine, get_session
from .enums import ApprovalChannel, ApprovalMode
from .models import ApprovalChannelConfig


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_channel_configs()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", str(engine.url))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("calendar_events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def ensure_channel_configs() -> int:
    """Make sure the admin channel is configured; returns rows created."""
    with get_session() as session:
        existing = session.query(ApprovalChannelConfig).filter(
            ApprovalChannelConfig.channel_type == ApprovalChannel.ADMIN.value
        ).first()
        if existing:
            return 0
        session.add(
            ApprovalChannelConfig(
                channel_type=ApprovalChannel.ADMIN.value,
                mode=ApprovalMode.REQUIRED.value,
                auto_approve_if_no_resource=False,
            )
        )
        return 1
