"""Global configuration for EventGallery."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "events_per_page": 20,
    "images_per_page": 20,
    "comments_per_page": 20,
    "max_per_page": 100,
    "search_preview_limit": 10,
    "exact_capacity": True,
    "public_base_url": "/blobs",
    "seed_users": 8,
    "seed_events": 6,
    "seed_private_percent": 30,
    "seed_images_per_event": 4,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "events_per_page": int,
    "images_per_page": int,
    "comments_per_page": int,
    "max_per_page": int,
    "search_preview_limit": int,
    "exact_capacity": bool,
    "public_base_url": str,
    "seed_users": int,
    "seed_events": int,
    "seed_private_percent": int,
    "seed_images_per_event": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    blob_dir: Path
    events_per_page: int
    images_per_page: int
    comments_per_page: int
    max_per_page: int
    search_preview_limit: int
    exact_capacity: bool
    public_base_url: str
    seed_users: int
    seed_events: int
    seed_private_percent: int
    seed_images_per_event: int
    app_host: str
    app_port: int
    config_path: Path


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTGALLERY_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
    blob_dir: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "eventgallery.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    resolved_blobs = Path(blob_dir) if blob_dir else resolved_data / "blobs"
    if not resolved_blobs.is_absolute():
        resolved_blobs = resolved_base / resolved_blobs
    return resolved_base, resolved_data, resolved_db, resolved_blobs


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTGALLERY_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTGALLERY_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventgallery.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value, blob_dir_value = (
        _resolve_paths(
            base_dir=base_dir,
            data_dir=os.getenv("EVENTGALLERY_DATA_DIR", toml_config.get("data_dir")),
            database_path=os.getenv(
                "EVENTGALLERY_DB", toml_config.get("database_path")
            ),
            blob_dir=os.getenv("EVENTGALLERY_BLOB_DIR", toml_config.get("blob_dir")),
        )
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        blob_dir=blob_dir_value,
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "blob_dir": str(settings.blob_dir),
    }
    for key in DEFAULTS:
        payload[key] = getattr(settings, key)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventGallery configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            raise KeyError(key)
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
