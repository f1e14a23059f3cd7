from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "FYLVUR_"


class SchedulerSettings(BaseModel):
    max_concurrent_jobs: int = Field(default=4, ge=1)
    max_queue_depth: int = Field(default=64, ge=0)
    job_timeout_seconds: float = Field(default=30.0, gt=0)
    cancel_grace_seconds: float = Field(default=2.0, ge=0)


class CacheSettings(BaseModel):
    max_bytes: int | None = 256 * 1024 * 1024
    max_entries: int | None = None
    spool_dir: Path = Path("data/cache/previews")

    @model_validator(mode="after")
    def _require_budget(self) -> CacheSettings:
        if self.max_bytes is None and self.max_entries is None:
            raise ValueError("cache needs max_bytes, max_entries, or both")
        return self


class IdentifySettings(BaseModel):
    prefix_bytes: int = Field(default=1024 * 1024, ge=4096)


class FetchSettings(BaseModel):
    block_size: int = Field(default=256 * 1024, ge=4096)
    timeout_seconds: float = 10.0


class ThumbnailSettings(BaseModel):
    max_width: int = 320
    max_height: int = 180
    seek_fraction: float = Field(default=0.1, ge=0, lt=1)
    format: str = "webp"
    quality: int = Field(default=50, ge=1, le=100)


class ClipSettings(BaseModel):
    max_duration_seconds: float = 5.0
    max_fps: float = 24.0
    bitrate: int = 800_000
    max_width: int = 640
    max_height: int = 360


class ProxySettings(BaseModel):
    bitrate: int = 1_500_000
    max_width: int = 854
    max_height: int = 480
    max_fps: float = 30.0
    # Full-length transcodes; replaces scheduler.job_timeout_seconds for proxy jobs.
    job_timeout_seconds: float = Field(default=600.0, gt=0)


class EngineSettings(BaseModel):
    unknown_duration_budget_seconds: float = 10.0
    max_image_bytes: int = 32 * 1024 * 1024
    max_contexts: int | None = None


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    identify: IdentifySettings = Field(default_factory=IdentifySettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    thumbnail: ThumbnailSettings = Field(default_factory=ThumbnailSettings)
    clip: ClipSettings = Field(default_factory=ClipSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if raw_value.lower() in {"none", "null"} and not isinstance(existing_value, str):
        return None
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
