from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from fylvur.config import Settings, load_settings


def test_missing_config_file_falls_back_to_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings.scheduler.max_concurrent_jobs == 4
    assert settings.cache.max_bytes == 256 * 1024 * 1024
    assert settings.thumbnail.format == "webp"
    assert settings.thumbnail.quality == 50
    assert settings.scheduler.job_timeout_seconds == 30.0
    assert settings.proxy.job_timeout_seconds == 600.0


def test_yaml_values_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "fylvur.yaml"
    config_path.write_text(
        "scheduler:\n  max_concurrent_jobs: 2\nclip:\n  max_duration_seconds: 8\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("FYLVUR_SCHEDULER__MAX_CONCURRENT_JOBS", "8")
    monkeypatch.setenv("FYLVUR_CACHE__MAX_ENTRIES", "100")
    monkeypatch.setenv("FYLVUR_ENGINE__MAX_CONTEXTS", "none")
    monkeypatch.setenv("FYLVUR_UNKNOWN__KEY", "ignored")

    settings = load_settings(config_path)

    assert settings.scheduler.max_concurrent_jobs == 8
    assert settings.clip.max_duration_seconds == 8.0
    assert settings.engine.max_contexts is None
    assert settings.cache.max_entries == 100
    assert settings.cache.spool_dir == Path("data/cache/previews")


def test_cache_needs_at_least_one_budget() -> None:
    with pytest.raises(ValidationError):
        Settings(cache={"max_bytes": None, "max_entries": None})


def test_shipped_default_config_matches_model_defaults() -> None:
    shipped = load_settings(Path(__file__).resolve().parents[1] / "configs" / "default.yaml")

    assert shipped.model_dump() == Settings().model_dump()
