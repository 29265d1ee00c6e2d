"""Global configuration for campuscal.

Values are read from ``CAMPUSCAL_*`` environment variables first, then from
``campuscal.toml`` and finally from :data:`DEFAULTS`.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ENV_PREFIX = "CAMPUSCAL_"
CONFIG_FILENAME = "campuscal.toml"


def _timezone_name(value: Any) -> str:
    name = str(value).strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone {value!r}") from exc
    return name


def _positive_int(value: Any) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"Expected a positive integer, got {value!r}")
    return number


def _percentage(value: Any) -> int:
    number = int(value)
    if not 0 <= number <= 100:
        raise ValueError(f"Expected a percentage between 0 and 100, got {value!r}")
    return number


# name -> (default, caster)
_OPTIONS: dict[str, tuple[Any, Callable[[Any], Any]]] = {
    "default_timezone": ("America/Chicago", _timezone_name),
    "max_range_days": (400, _positive_int),
    "events_per_page": (50, _positive_int),
    "ics_default_days": (90, _positive_int),
    "seed_calendars": (3, int),
    "seed_events_per_calendar": (8, _positive_int),
    "seed_recurring_percent": (40, _percentage),
    "app_host": ("0.0.0.0", str),
    "app_port": (8000, int),
}
DEFAULTS: dict[str, Any] = {name: default for name, (default, _) in _OPTIONS.items()}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    config_path: Path
    default_timezone: str
    max_range_days: int
    events_per_page: int
    ics_default_days: int
    seed_calendars: int
    seed_events_per_calendar: int
    seed_recurring_percent: int
    app_host: str
    app_port: int

    @property
    def max_range(self) -> timedelta:
        """Widest window a range query may ask for."""
        return timedelta(days=self.max_range_days)


def _cast(name: str, value: Any) -> Any:
    return _OPTIONS[name][1](value)


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _option_value(name: str, file_values: dict[str, Any]) -> Any:
    raw = os.environ.get(ENV_PREFIX + name.upper())
    if raw is not None:
        return _cast(name, raw)
    if name in file_values:
        return _cast(name, file_values[name])
    return DEFAULTS[name]


def _under(base: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base / path


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv(f"{ENV_PREFIX}BASE_DIR", Path.cwd()))
    config_path = Path(
        config_override
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or base_dir / CONFIG_FILENAME
    )
    file_values = _read_toml(config_path)

    data_dir = _under(
        base_dir, os.getenv(f"{ENV_PREFIX}DATA_DIR") or file_values.get("data_dir") or "data"
    )
    db_value = os.getenv(f"{ENV_PREFIX}DB") or file_values.get("database_path")
    database_path = _under(base_dir, db_value) if db_value else data_dir / "campuscal.db"

    loaded = Settings(
        base_dir=base_dir,
        data_dir=data_dir,
        database_path=database_path,
        config_path=config_path,
        **{name: _option_value(name, file_values) for name in _OPTIONS},
    )
    loaded.data_dir.mkdir(parents=True, exist_ok=True)
    return loaded


def settings_as_dict(current: Settings) -> dict[str, Any]:
    """Effective settings as JSON-friendly values."""
    values: dict[str, Any] = {}
    for field in fields(current):
        value = getattr(current, field.name)
        values[field.name] = str(value) if isinstance(value, Path) else value
    return values


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def write_config_file(values: dict[str, Any], *, path: Path) -> None:
    body = "".join(f"{key} = {_toml_value(values[key])}\n" for key in sorted(values))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# campuscal configuration\n" + body, encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Merge known keys from ``updates`` into the TOML file and reload settings.

    Unknown keys are ignored; invalid values raise ``ValueError`` before the
    file is touched.
    """
    global settings
    target = path or settings.config_path
    merged = _read_toml(target)
    merged.update(
        {name: _cast(name, value) for name, value in updates.items() if name in _OPTIONS}
    )
    write_config_file(merged, path=target)
    settings = load_settings(target)
    return settings


settings = load_settings()
