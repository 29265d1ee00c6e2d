from __future__ import annotations

import logging

import pytest

from campuscal import database
from campuscal.crud import create_calendar, get_calendars, get_channel_configs
from campuscal.storage import ensure_channel_configs


def test_admin_channel_is_configured_once():
    assert ensure_channel_configs() == 1
    assert ensure_channel_configs() == 0

    session = database.SessionLocal()
    configs = get_channel_configs(session)
    session.close()

    assert [(c.channel_type, c.mode) for c in configs] == [("admin", "required")]


def test_failed_unit_of_work_is_rolled_back_and_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        with pytest.raises(ValueError):
            with database.get_session() as session:
                create_calendar(session, name="Staff")
                raise ValueError("boom")

    assert "Rolled back calendar transaction: boom" in caplog.text
    session = database.SessionLocal()
    assert list(get_calendars(session)) == []
    session.close()
