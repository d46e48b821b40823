from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


@dataclass(slots=True)
class SourceSettings:
    id: str = "x_api"
    type: str = "x_api"
    url: str = "https://api.x.com/2"
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StorageSettings:
    type: str = "sqlite"
    path: str = "data/knowledge.sqlite"


@dataclass(slots=True)
class TaggingSettings:
    enabled: bool = False
    api_key_env_var: str = "XAI_API_KEY"
    model: str = "grok-3-mini"
    batch_size: int = 20


@dataclass(slots=True)
class HydrationSettings:
    limit: int = 100
    max_attempts: int = 7
    fetch_batch_size: int = 100
    backfill_job: str = "article-content-v1"


@dataclass(slots=True)
class ListingSettings:
    limit: int = 20
    max_limit: int = 100
    snippet_chars: int = 600
    max_total_chars: int = 80000


@dataclass(slots=True)
class AppConfig:
    source: SourceSettings = field(default_factory=SourceSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    tagging: TaggingSettings = field(default_factory=TaggingSettings)
    hydration: HydrationSettings = field(default_factory=HydrationSettings)
    listing: ListingSettings = field(default_factory=ListingSettings)
    log_level: str = "INFO"


def _as_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value

    if isinstance(value, int) and value in {0, 1}:
        return bool(value)

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False

    raise ConfigError(f"{field_name} must be a boolean")


def _as_int(value: Any, *, field_name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _as_mapping(parsed: dict[str, Any], key: str) -> dict[str, Any]:
    raw = parsed.get(key, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{key} must be a mapping")
    return raw


def _as_text(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value).strip() or default


def _resolve_relative_path(config_path: Path, raw_path: str) -> str:
    candidate = Path(raw_path).expanduser()
    if candidate.is_absolute():
        return str(candidate)
    return str((config_path.parent / candidate).resolve())


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        parsed = yaml.safe_load(handle) or {}

    if not isinstance(parsed, dict):
        raise ConfigError("Config root must be a mapping")

    raw_source = _as_mapping(parsed, "source")
    defaults = SourceSettings()
    source_settings = SourceSettings(
        id=_as_text(raw_source.get("id"), defaults.id),
        type=_as_text(raw_source.get("type"), defaults.type),
        url=_as_text(raw_source.get("url"), defaults.url),
        options={
            key: value
            for key, value in raw_source.items()
            if key not in {"id", "type", "url"}
        },
    )
    if source_settings.type == "json_file":
        source_settings.url = _resolve_relative_path(config_path, source_settings.url)

    raw_storage = _as_mapping(parsed, "storage")
    storage_path = _as_text(raw_storage.get("path"), "data/knowledge.sqlite")
    storage_settings = StorageSettings(
        type=_as_text(raw_storage.get("type"), "sqlite"),
        path=_resolve_relative_path(config_path, storage_path),
    )

    raw_tagging = _as_mapping(parsed, "tagging")
    tagging_settings = TaggingSettings(
        enabled=_as_bool(raw_tagging.get("enabled", False), field_name="tagging.enabled"),
        api_key_env_var=_as_text(raw_tagging.get("api_key_env_var"), "XAI_API_KEY"),
        model=_as_text(raw_tagging.get("model"), "grok-3-mini"),
        batch_size=_as_int(
            raw_tagging.get("batch_size", 20),
            field_name="tagging.batch_size",
            minimum=1,
        ),
    )

    raw_hydration = _as_mapping(parsed, "hydration")
    hydration_settings = HydrationSettings(
        limit=_as_int(raw_hydration.get("limit", 100), field_name="hydration.limit", minimum=1),
        max_attempts=_as_int(
            raw_hydration.get("max_attempts", 7),
            field_name="hydration.max_attempts",
            minimum=1,
        ),
        fetch_batch_size=_as_int(
            raw_hydration.get("fetch_batch_size", 100),
            field_name="hydration.fetch_batch_size",
            minimum=1,
        ),
        backfill_job=_as_text(raw_hydration.get("backfill_job"), "article-content-v1"),
    )

    raw_listing = _as_mapping(parsed, "listing")
    listing_settings = ListingSettings(
        limit=_as_int(raw_listing.get("limit", 20), field_name="listing.limit", minimum=1),
        max_limit=_as_int(
            raw_listing.get("max_limit", 100),
            field_name="listing.max_limit",
            minimum=1,
        ),
        snippet_chars=_as_int(
            raw_listing.get("snippet_chars", 600),
            field_name="listing.snippet_chars",
            minimum=1,
        ),
        max_total_chars=_as_int(
            raw_listing.get("max_total_chars", 80000),
            field_name="listing.max_total_chars",
            minimum=1,
        ),
    )

    return AppConfig(
        source=source_settings,
        storage=storage_settings,
        tagging=tagging_settings,
        hydration=hydration_settings,
        listing=listing_settings,
        log_level=str(parsed.get("log_level", "INFO")).upper(),
    )
